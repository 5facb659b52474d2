import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError

from kubepilot.core import config
from kubepilot.core.cluster.clusterfile import Clusterfile
from kubepilot.core.cluster.descriptor import Cluster, HostRole
from kubepilot.core.cluster.paths import ClusterPaths
from kubepilot.core.exceptions import ClusterConfigurationError
from kubepilot.core.remote.base_client import RemoteClient
from kubepilot.core.remote.dispatcher import FanOutDispatcher, FanOutMode
from kubepilot.core.runtime import commands
from kubepilot.core.runtime.registry import resolve_registry_config
from kubepilot.core.utils import setup_logger, unique

REGISTRY_DIR_NAME = 'registry'
SHELL_PLUGIN_TYPE = 'SHELL'


class PluginPhase(StrEnum):
    ORIGINALLY = 'Originally'
    PRE_INIT = 'PreInit'
    PRE_GUEST = 'PreGuest'
    POST_INSTALL = 'PostInstall'
    PRE_CLEAN = 'PreClean'
    POST_CLEAN = 'PostClean'
    PRE_JOIN = 'PreJoin'
    POST_JOIN = 'PostJoin'


class ImageMounter(ABC):
    """Pulls a cluster image and exposes its content under `ClusterPaths.mount`."""

    @abstractmethod
    async def mount_image(self, cluster: Cluster) -> None:
        pass

    @abstractmethod
    async def unmount_image(self, cluster: Cluster) -> None:
        pass


class ConfigDumper(ABC):
    @abstractmethod
    async def dump(self, cluster: Cluster) -> None:
        pass


class FilesystemMounter(ABC):
    @abstractmethod
    async def mount_rootfs(self, cluster: Cluster, hosts: list[str], initial: bool) -> None:
        pass

    @abstractmethod
    async def unmount_rootfs(self, cluster: Cluster, hosts: list[str]) -> None:
        pass

    @abstractmethod
    def clean_local(self, cluster: Cluster) -> None:
        pass


class PluginRunner(ABC):
    @abstractmethod
    def load(self, cluster: Cluster) -> None:
        pass

    @abstractmethod
    async def run(self, cluster: Cluster, hosts: list[str], phase: PluginPhase) -> None:
        pass


class GuestRunner(ABC):
    @abstractmethod
    async def apply(self, cluster: Cluster) -> None:
        pass

    @abstractmethod
    async def delete(self, cluster: Cluster) -> None:
        pass


def persist_image_files(paths: ClusterPaths) -> None:
    """Keeps the image settings the runtime reads in the local rootfs once the image is unmounted.

    Covers `etc/kubeadm.yml`, `etc/registry_config.yml` and `plugins/`. Files the image
    does not ship are removed so a new image does not inherit the old one's settings.
    """
    if not paths.mount.is_dir():
        return

    for target in (paths.image_kubeadm_config, paths.image_registry_config):
        source = paths.mount / target.relative_to(paths.rootfs)

        if source.is_file():
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(source, target)
        else:
            target.unlink(missing_ok=True)

    plugins = paths.mount / paths.image_plugins.relative_to(paths.rootfs)
    if paths.image_plugins.is_dir():
        shutil.rmtree(paths.image_plugins)
    if plugins.is_dir():
        shutil.copytree(plugins, paths.image_plugins)


class RemoteFilesystem(FilesystemMounter):
    """Copies the mounted image content to every host as the cluster rootfs.

    A host whose mount marker names the same image is left untouched, so mounting
    is safe to repeat and a new image is copied over the old one. The image registry
    payload only goes to the registry host.
    """

    def __init__(self, client: RemoteClient, data_dir: Path = config.DATA_DIR) -> None:
        self._logger = setup_logger('RemoteFilesystem')

        self._client = client
        self._data_dir = data_dir
        self._dispatcher = FanOutDispatcher()

    async def _mounted_image(self, host: str, paths: ClusterPaths) -> str:
        marker = paths.mount_marker
        output = await self._client.cmd(host, f'if [ -f {marker} ]; then cat {marker}; fi')
        return output.strip()

    async def mount_rootfs(self, cluster: Cluster, hosts: list[str], initial: bool) -> None:
        paths = ClusterPaths(cluster.name, self._data_dir)
        registry = resolve_registry_config(paths.image_registry_config, cluster.master0)

        if not paths.mount.is_dir():
            raise FileNotFoundError(f'Cluster image of {cluster.name} is not mounted at {paths.mount}')

        entries = [entry for entry in sorted(paths.mount.iterdir()) if entry.name != REGISTRY_DIR_NAME]
        registry_payload = paths.mount / REGISTRY_DIR_NAME

        async def mount(host: str) -> None:
            if await self._mounted_image(host, paths) == cluster.image:
                self._logger.info(f'Rootfs of {cluster.image} is already mounted on {host}, skipping')
                return

            for entry in entries:
                await self._client.copy(host, entry, str(paths.rootfs / entry.name))

            if host == registry.ip and registry_payload.is_dir():
                await self._client.copy(host, registry_payload, str(paths.rootfs / REGISTRY_DIR_NAME))

            mount_commands = []
            if initial:
                mount_commands.append(
                    f'cd {paths.rootfs} && chmod +x scripts/* && cd scripts && '
                    f'bash init.sh /var/lib/docker {registry.domain} {registry.port}'
                )
            mount_commands.append(f"echo '{cluster.image}' > {paths.mount_marker}")

            await self._client.cmd_async(host, *mount_commands)

            self._logger.info(f'Mounted rootfs of {cluster.name} on {host}')

        await self._dispatcher.run(hosts, mount, FanOutMode.FAIL_FAST, 'mount rootfs')

    async def unmount_rootfs(self, cluster: Cluster, hosts: list[str]) -> None:
        paths = ClusterPaths(cluster.name, self._data_dir)

        async def unmount(host: str) -> None:
            await self._client.cmd_async(
                host,
                commands.run_clean_script(str(paths.clean_script)),
                f'rm -rf {paths.rootfs}',
                f'rm -rf {config.DOCKER_CERT_DIR}/{config.DEFAULT_REGISTRY_DOMAIN}*',
            )

            self._logger.info(f'Unmounted rootfs of {cluster.name} on {host}')

        await self._dispatcher.run(hosts, unmount, FanOutMode.FAIL_FAST, 'unmount rootfs')

    def clean_local(self, cluster: Cluster) -> None:
        root = ClusterPaths(cluster.name, self._data_dir).root

        if root.is_dir():
            shutil.rmtree(root)
            self._logger.info(f'Removed local state of {cluster.name} in {root}')


class ShellPlugin(BaseModel):
    name: str
    type: str
    action: str
    on: str = ''
    data: str = ''

    @classmethod
    def from_document(cls, document: dict) -> 'ShellPlugin':
        spec = document.get('spec') or {}

        try:
            return cls(name=(document.get('metadata') or {}).get('name', ''), **spec)
        except (TypeError, ValidationError) as e:
            raise ClusterConfigurationError(f'Invalid plugin document {document!r}: {e}') from e

    @property
    def phases(self) -> list[str]:
        return [phase.strip() for phase in self.action.split('|')]

    def targets(self, cluster: Cluster, hosts: list[str]) -> list[str]:
        """Hosts of `hosts` selected by `on`: empty for all, a role name, or a comma separated IP list."""
        selector = self.on.strip()

        if not selector:
            return hosts

        if selector in (HostRole.MASTER, HostRole.NODE):
            members = cluster.masters if selector == HostRole.MASTER else cluster.nodes
            return [host for host in hosts if host in members]

        selected = {ip.strip() for ip in selector.split(',')}
        return [host for host in hosts if host in selected]


class ShellPluginRunner(PluginRunner):
    """Runs SHELL plugins declared in the Clusterfile or shipped in the image `plugins/` dir."""

    def __init__(self, client: RemoteClient, data_dir: Path = config.DATA_DIR) -> None:
        self._logger = setup_logger('ShellPluginRunner')

        self._client = client
        self._data_dir = data_dir
        self._dispatcher = FanOutDispatcher()
        self._plugins: list[ShellPlugin] = []

    @property
    def plugins(self) -> list[ShellPlugin]:
        return self._plugins

    def load(self, cluster: Cluster) -> None:
        documents = list(Clusterfile.from_cluster(cluster).plugins)

        plugin_dir = ClusterPaths(cluster.name, self._data_dir).image_plugins
        if plugin_dir.is_dir():
            for plugin_file in sorted(plugin_dir.iterdir()):
                if plugin_file.suffix not in ('.yaml', '.yml'):
                    continue

                try:
                    loaded = list(yaml.safe_load_all(plugin_file.read_text()))
                except yaml.YAMLError as e:
                    raise ClusterConfigurationError(f'Invalid plugin file {plugin_file}: {e}') from e

                documents.extend(doc for doc in loaded if isinstance(doc, dict) and doc.get('kind') == 'Plugin')

        self._plugins = [ShellPlugin.from_document(document) for document in documents]

        self._logger.debug(f'Loaded {len(self._plugins)} plugin(s) for {cluster.name}')

    async def run(self, cluster: Cluster, hosts: list[str], phase: PluginPhase) -> None:
        hosts = unique(hosts)

        for plugin in self._plugins:
            if phase not in plugin.phases:
                continue

            if plugin.type != SHELL_PLUGIN_TYPE:
                raise ClusterConfigurationError(f'Plugin type not registered: {plugin.type}')

            targets = plugin.targets(cluster, hosts)
            if not targets:
                continue

            self._logger.info(f'Running plugin {plugin.name} at phase {phase} on {targets}')

            async def execute(host: str, data: str = plugin.data) -> None:
                await self._client.cmd_async(host, data)

            await self._dispatcher.run(targets, execute, FanOutMode.FAIL_FAST, f'plugin {plugin.name}')


class ShellGuest(GuestRunner):
    """Starts the workloads of a cluster image from Master0."""

    def __init__(self, client: RemoteClient, data_dir: Path = config.DATA_DIR) -> None:
        self._logger = setup_logger('ShellGuest')

        self._client = client
        self._data_dir = data_dir

    async def apply(self, cluster: Cluster) -> None:
        rootfs = ClusterPaths(cluster.name, self._data_dir).rootfs

        guest_commands = cluster.cmd or ['if [ -d manifests ]; then kubectl apply -f manifests; fi']

        await self._client.cmd_async(cluster.master0, *(f'cd {rootfs} && {command}' for command in guest_commands))

        self._logger.info(f'Applied workloads of {cluster.image} on {cluster.name}')

    async def delete(self, cluster: Cluster) -> None:
        rootfs = ClusterPaths(cluster.name, self._data_dir).rootfs

        await self._client.cmd_async(
            cluster.master0,
            f'cd {rootfs} && if [ -d manifests ]; then kubectl delete -f manifests --ignore-not-found; fi',
        )

        self._logger.info(f'Deleted workloads of {cluster.image} from {cluster.name}')


@dataclass
class Collaborators:
    """Everything a processor drives besides the runtime itself."""

    client: RemoteClient
    image_mounter: ImageMounter
    config_dumper: ConfigDumper
    filesystem: FilesystemMounter
    plugins: PluginRunner
    guest: GuestRunner
    data_dir: Path = config.DATA_DIR

    @classmethod
    def with_defaults(
        cls,
        client: RemoteClient,
        image_mounter: ImageMounter,
        config_dumper: ConfigDumper,
        data_dir: Path = config.DATA_DIR,
    ) -> 'Collaborators':
        return cls(
            client=client,
            image_mounter=image_mounter,
            config_dumper=config_dumper,
            filesystem=RemoteFilesystem(client, data_dir),
            plugins=ShellPluginRunner(client, data_dir),
            guest=ShellGuest(client, data_dir),
            data_dir=data_dir,
        )

    def paths(self, cluster: Cluster) -> ClusterPaths:
        return ClusterPaths(cluster.name, self.data_dir)
