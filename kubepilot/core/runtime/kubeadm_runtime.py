from pathlib import Path

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_incrementing

from kubepilot.core import config
from kubepilot.core.cluster.clusterfile import ClusterfileStore
from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.cluster.paths import ClusterPaths
from kubepilot.core.exceptions import InvalidStateTransitionError, RemoteConnectionError
from kubepilot.core.remote.base_client import RemoteClient
from kubepilot.core.remote.dispatcher import FanOutDispatcher, FanOutMode
from kubepilot.core.runtime import commands
from kubepilot.core.runtime.certs import KUBECONFIG_USERS, CertificateManager
from kubepilot.core.runtime.kubeadm_config import CGROUP_DRIVER_CGROUPFS, CGROUP_DRIVER_SYSTEMD, KubeadmConfig
from kubepilot.core.runtime.lvscare import lvscare_image, render_lvscare_pod
from kubepilot.core.runtime.registry import RegistryConfig, RegistryManager, resolve_registry_config
from kubepilot.core.runtime.runtime_config import RuntimeConfiguration
from kubepilot.core.runtime.runtime_state import RuntimeState
from kubepilot.core.runtime.token import JoinToken, parse_certificate_key, parse_init_output, parse_join_command
from kubepilot.core.template_loader import content_to_temp_file
from kubepilot.core.utils import is_local_host, setup_logger, unique


class KubeadmRuntime:
    """Bootstraps, scales, upgrades and resets one kubeadm cluster.

    The runtime composes the cluster descriptor, the kubeadm documents, the shared
    RuntimeConfiguration and the registry settings, and keeps an explicit lifecycle
    state so that e.g. joining before init fails before any join command is sent.
    """

    def __init__(
        self,
        cluster: Cluster,
        client: RemoteClient,
        paths: ClusterPaths | None = None,
        kubeadm_config: KubeadmConfig | None = None,
        registry: RegistryConfig | None = None,
    ) -> None:
        self._logger = setup_logger('KubeadmRuntime')

        self.cluster = cluster
        self._client = client
        self._paths = paths or ClusterPaths(cluster.name)
        self._dispatcher = FanOutDispatcher()
        self._store = ClusterfileStore(self._paths)
        self._certs = CertificateManager(self._paths.pki)

        registry = registry or resolve_registry_config(self._paths.image_registry_config, cluster.master0)
        self._registry = RegistryManager(client, self._paths, registry)

        self.config = RuntimeConfiguration(
            apiserver_domain=cluster.apiserver_domain, vip=cluster.vip, registry_port=registry.port
        )

        self.kubeadm = kubeadm_config or KubeadmConfig.load(cluster, self._paths.image_kubeadm_config)
        self.kubeadm.apply_cluster_defaults(cluster, self.config)

        self.state = RuntimeState.UNINITIALIZED

    @property
    def registry(self) -> RegistryConfig:
        return self._registry.registry

    @property
    def _master0(self) -> str:
        return self.cluster.master0

    @property
    def _copy_kubeconfig(self) -> str:
        if self.cluster.ssh.user == 'root':
            return commands.COPY_KUBECONFIG

        return commands.NON_ROOT_COPY_KUBECONFIG

    def _set_state(self, state: RuntimeState) -> None:
        self._logger.debug(f'Runtime state {self.state} -> {state}')
        self.state = state

    async def ensure_stable(self) -> None:
        if self.state == RuntimeState.STABLE:
            return

        if self.state != RuntimeState.UNINITIALIZED:
            raise InvalidStateTransitionError(f'Cluster {self.cluster.name} is {self.state}, expected stable')

        if not await self.is_initialized():
            raise InvalidStateTransitionError(
                f'Cluster {self.cluster.name} is not initialized on {self._master0}, run init first'
            )

        self._set_state(RuntimeState.STABLE)

    async def is_initialized(self) -> bool:
        output = await self._client.cmd(self._master0, commands.CLUSTER_INITIALIZED)
        return output.strip() == 'yes'

    async def _remote_file_exists(self, host: str, path: str) -> bool:
        output = await self._client.cmd(host, commands.file_exists(path))
        return output.strip() == 'yes'

    async def _hostname(self, host: str) -> str:
        return (await self._client.cmd(host, commands.HOSTNAME)).strip()

    async def _send_content(self, host: str, content: str, remote_path: str | Path) -> None:
        with content_to_temp_file(content) as local_path:
            await self._client.copy(host, local_path, str(remote_path))

    async def _send_pki(self, host: str, local_dir: Path) -> None:
        staging = self._paths.rootfs / 'pki'

        await self._client.cmd_async(host, f'rm -rf {staging}')
        await self._client.copy(host, local_dir, str(staging))
        await self._client.cmd_async(
            host, f'mkdir -p {config.KUBERNETES_PKI_DIR} && cp -rf {staging}/. {config.KUBERNETES_PKI_DIR}/'
        )

    async def _send_kubeconfigs(self, host: str) -> None:
        for file_name in KUBECONFIG_USERS:
            await self._client.copy(host, self._paths.kubeconfig(file_name), f'{config.KUBERNETES_DIR}/{file_name}')

    async def _register_clean_steps(self, host: str, *steps: str) -> None:
        script = str(self._paths.clean_script)
        await self._client.cmd_async(host, *(commands.append_clean_step(script, step) for step in steps))

    async def _copy_statics(self, host: str) -> None:
        await self._client.cmd_async(host, commands.copy_statics(str(self._paths.statics)))

    async def wait_ssh_ready(self, hosts: list[str]) -> None:
        @retry(
            retry=retry_if_exception_type(RemoteConnectionError),
            wait=wait_incrementing(start=config.SSH_READY_BACKOFF, increment=config.SSH_READY_BACKOFF),
            stop=stop_after_attempt(config.SSH_READY_ATTEMPTS),
            reraise=True,
        )
        async def ping(host: str) -> None:
            await self._client.ping(host)

        async def check_ssh(host: str) -> None:
            try:
                await ping(host)
            except RemoteConnectionError as e:
                raise RemoteConnectionError(host, f'wait for [{host}] ssh ready timeout') from e

        await self._dispatcher.run(hosts, check_ssh, FanOutMode.FAIL_FAST, 'wait for ssh ready')

    async def init(self) -> None:
        if self.state != RuntimeState.UNINITIALIZED:
            raise InvalidStateTransitionError(f'Cannot init cluster {self.cluster.name} in state {self.state}')

        master0 = self._master0

        await self.wait_ssh_ready([master0])

        if await self.is_initialized():
            self._logger.info(f'Cluster {self.cluster.name} is already initialized on {master0}, skipping init')
            self._set_state(RuntimeState.STABLE)
            return

        self._set_state(RuntimeState.BOOTSTRAPPING)

        try:
            await self._bootstrap_master0(master0)
        except Exception:
            self._set_state(RuntimeState.UNINITIALIZED)
            raise

        self._set_state(RuntimeState.STABLE)

    async def _bootstrap_master0(self, master0: str) -> None:
        domain = self.config.apiserver_domain

        self._logger.info(f'Start to init master0 {master0}')

        await self._send_content(master0, self.kubeadm.render_init(), self._paths.kubeadm_init_config)

        await self.generate_cert(master0)
        await self._send_kubeconfigs(master0)
        await self._copy_statics(master0)

        await self.apply_registry()
        await self._registry.send_cert(master0)

        await self._client.cmd_async(master0, commands.add_hosts_entry(master0, domain))
        await self._register_clean_steps(
            master0, *self._registry.remove_hosts_commands(), commands.remove_hosts_entry(domain)
        )

        output = await self._client.cmd(
            master0,
            commands.kubeadm_init(
                self.kubeadm.kubernetes_version, str(self._paths.kubeadm_init_config), self.config.vlog
            ),
        )
        self.config.apply_token(parse_init_output(output))

        await self._client.cmd_async(master0, self._copy_kubeconfig)

        self._logger.info(f'Succeeded in initializing master0 {master0}')

    async def generate_cert(self, master0: str) -> None:
        """Issues cluster CAs, Master0's member certificates and kubeconfigs, then sends them to Master0."""
        hostname = await self._hostname(master0)

        self._certs.generate_member_certs(
            self._paths.pki,
            hostname,
            master0,
            self.kubeadm.cert_sans,
            self.kubeadm.service_cidr,
            self.kubeadm.dns_domain,
        )
        self._certs.generate_kubeconfigs(
            self._paths.root, f'https://{self.config.apiserver_domain}:{config.APISERVER_PORT}'
        )

        await self._send_pki(master0, self._paths.pki)

    async def apply_registry(self) -> None:
        registry = self.registry

        self._certs.generate_registry_cert(
            self._registry.local_cert, self._registry.local_key, registry.domain, registry.ip
        )

        await self._registry.apply(self._master0)

    async def send_registry_cert(self, hosts: list[str]) -> None:
        await self._dispatcher.run(hosts, self._registry.send_cert, FanOutMode.FAIL_FAST, 'send registry cert')

    async def add_registry_hosts(self, hosts: list[str]) -> None:
        async def add(host: str) -> None:
            await self._client.cmd_async(host, *self._registry.add_hosts_commands())

        await self._dispatcher.run(hosts, add, FanOutMode.FAIL_FAST, 'add registry hosts')

    async def get_join_token_hash_and_key(self) -> JoinToken:
        master0 = self._master0
        vlog = self.config.vlog

        certificate_key = parse_certificate_key(await self._client.cmd(master0, commands.upload_certs(vlog)))
        token = parse_join_command(await self._client.cmd(master0, commands.create_join_token(vlog)))

        self.config.apply_token(JoinToken(token.token, token.ca_cert_hash, certificate_key))

        return self.config.snapshot()

    async def _cgroup_driver(self, host: str) -> str:
        output = await self._client.cmd(host, commands.CGROUP_DRIVER)

        return CGROUP_DRIVER_SYSTEMD if CGROUP_DRIVER_SYSTEMD in output else CGROUP_DRIVER_CGROUPFS

    async def _send_join_config(self, host: str, token: JoinToken, master: bool) -> None:
        cgroup_driver = await self._cgroup_driver(host)

        if master:
            endpoint = f'{self._master0}:{config.APISERVER_PORT}'
        else:
            endpoint = f'{self.config.vip}:{config.APISERVER_PORT}'

        async with self.config.lock:
            self.kubeadm.set_join_host(host if master else None, cgroup_driver)
            content = self.kubeadm.render_join(token, endpoint)

        await self._send_content(host, content, self._paths.kubeadm_join_config)

    def _join_command(self, token: JoinToken, master: bool) -> str:
        endpoint = self._master0 if master else self.config.vip

        return commands.kubeadm_join(
            self.kubeadm.kubernetes_version,
            str(self._paths.kubeadm_join_config),
            self.config.vlog,
            master,
            endpoint=f'{endpoint}:{config.APISERVER_PORT}',
            token=token.token,
            ca_cert_hash=token.ca_cert_hash,
            certificate_key=token.certificate_key or '',
        )

    async def _pending_hosts(self, hosts: list[str]) -> list[str]:
        joined = set()

        async def check(host: str) -> None:
            if await self._remote_file_exists(host, commands.KUBELET_CONF):
                self._logger.info(f'{host} has already joined the cluster, skipping')
                joined.add(host)

        await self._dispatcher.run(hosts, check, FanOutMode.FAIL_FAST, 'check join state')

        return [host for host in hosts if host not in joined]

    async def join_masters(self, masters: list[str]) -> None:
        masters = [m for m in unique(masters) if m != self._master0]

        if not masters:
            return

        await self.ensure_stable()
        self._set_state(RuntimeState.JOINING)

        try:
            await self.wait_ssh_ready(masters)

            pending = await self._pending_hosts(masters)

            if pending:
                if not self.config.has_master_join_token:
                    await self.get_join_token_hash_and_key()

                token = self.config.snapshot()

                await self._dispatcher.run(pending, self._copy_statics, FanOutMode.FAIL_FAST, 'copy static files')

                async def send_join_config(host: str) -> None:
                    await self._send_join_config(host, token, master=True)

                await self._dispatcher.run(pending, send_join_config, FanOutMode.FAIL_FAST, 'send join config')

                for master in pending:
                    await self._join_master(master, token)

            self.cluster = self.cluster.with_hosts([*self.cluster.masters, *masters], self.cluster.nodes)
        finally:
            self._set_state(RuntimeState.STABLE)

        self._store.save(self.cluster)

    async def _join_master(self, master: str, token: JoinToken) -> None:
        domain = self.config.apiserver_domain
        master0 = self._master0

        self._logger.info(f'Start to join {master} as master')

        if (self._paths.pki / 'ca.crt').is_file():
            hostname = await self._hostname(master)
            host_pki = self._paths.host_pki(master)

            self._certs.generate_member_certs(
                host_pki,
                hostname,
                master,
                self.kubeadm.cert_sans,
                self.kubeadm.service_cidr,
                self.kubeadm.dns_domain,
            )
            self._certs.generate_kubeconfigs(self._paths.root, f'https://{domain}:{config.APISERVER_PORT}')

            await self._send_pki(master, host_pki)
            await self._send_kubeconfigs(master)
            await self._registry.send_cert(master)
        else:
            self._logger.warning(
                f'No local certificate authority in {self._paths.pki}, {master} will fetch control-plane '
                'certificates with the certificate key'
            )

        await self._registry.send_password(master)
        await self._client.cmd_async(
            master,
            *self._registry.add_hosts_commands(),
            commands.add_hosts_entry(master0, domain),
            *self._registry.login_commands(),
            self._join_command(token, master=True),
            commands.update_hosts_entry(f'{master0} {domain}', f'{master} {domain}'),
            self._copy_kubeconfig,
        )
        await self._register_clean_steps(
            master, *self._registry.remove_hosts_commands(), commands.remove_hosts_entry(domain)
        )

        self._logger.info(f'Succeeded in joining {master} as master')

    async def join_nodes(self, nodes: list[str]) -> None:
        nodes = [n for n in unique(nodes) if n not in self.cluster.masters]

        if not nodes:
            return

        await self.ensure_stable()
        self._set_state(RuntimeState.JOINING)

        try:
            await self.wait_ssh_ready(nodes)

            pending = await self._pending_hosts(nodes)

            if pending:
                if not self.config.has_join_token:
                    await self.get_join_token_hash_and_key()

                token = self.config.snapshot()
                manifest = render_lvscare_pod(self.config.vip, self.cluster.masters, lvscare_image(self.registry.url))

                async def join(node: str) -> None:
                    await self._join_node(node, token, manifest)

                await self._dispatcher.run(pending, join, FanOutMode.FAIL_FAST, 'join node')

            self.cluster = self.cluster.with_hosts(self.cluster.masters, [*self.cluster.nodes, *nodes])
        finally:
            self._set_state(RuntimeState.STABLE)

    async def _join_node(self, node: str, token: JoinToken, manifest: str) -> None:
        vip = self.config.vip

        self._logger.info(f'Start to join {node} as node')

        if self._registry.local_cert.is_file():
            await self._registry.send_cert(node)

        await self._send_join_config(node, token, master=False)
        await self._registry.send_password(node)

        await self._client.cmd_async(
            node,
            *self._registry.add_hosts_commands(),
            commands.add_hosts_entry(vip, self.config.apiserver_domain),
            commands.lvscare_ipvs_rule(vip, self.cluster.masters),
            *self._registry.login_commands(),
            self._join_command(token, master=False),
        )
        await self._send_content(node, manifest, commands.LVSCARE_MANIFEST)
        await self._register_clean_steps(
            node,
            *self._registry.remove_hosts_commands(),
            commands.remove_hosts_entry(self.config.apiserver_domain),
            commands.delete_vip_route(vip, node),
        )

        self._logger.info(f'Succeeded in joining {node} as node')

    async def _node_name(self, master: str, host: str) -> str | None:
        hostname = (await self._hostname(host)).lower()
        names = (await self._client.cmd(master, commands.LIST_NODE_NAMES)).split()

        return next((name for name in names if name.lower() == hostname), None)

    def _clean_commands(self, host: str, apiserver_host: str | None = None) -> list[str]:
        clean = [
            commands.run_clean_script(str(self._paths.clean_script)),
            commands.clean_host(self.config.vlog),
            commands.remove_hosts_entry(self.config.apiserver_domain),
        ]

        # kubectl and ~/.kube stay on the machine running kubepilot, pointed at `apiserver_host`
        if not is_local_host(host):
            clean.append(commands.REMOVE_KUBECONFIG)
        elif apiserver_host is not None:
            clean.append(commands.add_hosts_entry(apiserver_host, self.config.apiserver_domain))

        return clean

    async def _delete_host(self, host: str, remaining_master0: str | None) -> None:
        node_name = None
        if remaining_master0 is not None:
            node_name = await self._node_name(remaining_master0, host)

        await self._client.cmd_async(host, *self._clean_commands(host, remaining_master0))

        if remaining_master0 is None:
            return

        if node_name is None:
            self._logger.warning(f'Could not find a node object for {host}, skipping node deletion')
            return

        await self._client.cmd_async(remaining_master0, commands.delete_node(node_name))

    async def delete_masters(self, masters: list[str]) -> None:
        masters = [m for m in unique(masters) if m in self.cluster.masters]

        if not masters:
            return

        await self.ensure_stable()
        self._set_state(RuntimeState.LEAVING)

        try:
            remaining = [m for m in self.cluster.masters if m not in masters]
            remaining_master0 = remaining[0] if remaining else None

            async def delete(master: str) -> None:
                self._logger.info(f'Start to delete master {master}')
                await self._delete_host(master, remaining_master0)
                self._logger.info(f'Succeeded in deleting master {master}')

            await self._dispatcher.run(masters, delete, FanOutMode.BEST_EFFORT, 'delete master')

            nodes = self.cluster.nodes
            if remaining and nodes:
                manifest = render_lvscare_pod(self.config.vip, remaining, lvscare_image(self.registry.url))

                async def refresh_lvscare(node: str) -> None:
                    await self._client.cmd_async(node, commands.REMOVE_LVSCARE_STATIC_POD)
                    await self._send_content(node, manifest, commands.LVSCARE_MANIFEST)

                await self._dispatcher.run(nodes, refresh_lvscare, FanOutMode.FAIL_FAST, 'update lvscare static pod')

            self.cluster = self.cluster.with_hosts(remaining, nodes)
        finally:
            self._set_state(RuntimeState.STABLE)

    async def delete_nodes(self, nodes: list[str]) -> None:
        nodes = [n for n in unique(nodes) if n in self.cluster.nodes]

        if not nodes:
            return

        await self.ensure_stable()
        self._set_state(RuntimeState.LEAVING)

        try:
            master0 = self._master0

            async def delete(node: str) -> None:
                self._logger.info(f'Start to delete worker {node}')
                await self._delete_host(node, master0)
                await self._client.cmd_async(node, commands.delete_vip_route(self.config.vip, node))
                self._logger.info(f'Succeeded in deleting worker {node}')

            await self._dispatcher.run(nodes, delete, FanOutMode.FAIL_FAST, 'delete node')

            self.cluster = self.cluster.with_hosts(
                self.cluster.masters, [n for n in self.cluster.nodes if n not in nodes]
            )
        finally:
            self._set_state(RuntimeState.STABLE)

    def _remove_local_hosts_entry(self) -> None:
        domain = self.config.apiserver_domain
        hosts_file = config.HOSTS_FILE

        try:
            lines = hosts_file.read_text().splitlines(keepends=True)
            kept = [line for line in lines if domain not in line]

            if len(kept) != len(lines):
                hosts_file.write_text(''.join(kept))
                self._logger.info(f'Removed {domain} from local {hosts_file}')
        except OSError as e:
            self._logger.warning(f'Could not remove {domain} from local {hosts_file}: {e}')

    async def reset(self) -> None:
        self._set_state(RuntimeState.RESETTING)

        async def clean(host: str) -> None:
            await self._client.cmd_async(host, *self._clean_commands(host))

        await self._dispatcher.run(self.cluster.nodes, clean, FanOutMode.BEST_EFFORT, 'reset node')
        await self._dispatcher.run(self.cluster.masters, clean, FanOutMode.BEST_EFFORT, 'reset master')

        self._remove_local_hosts_entry()

        async def delete_route(node: str) -> None:
            await self._client.cmd_async(node, commands.delete_vip_route(self.config.vip, node))

        await self._dispatcher.run(self.cluster.nodes, delete_route, FanOutMode.BEST_EFFORT, 'delete vip route')

        try:
            await self._registry.delete()
        except Exception as e:
            self._logger.error(f'Failed to delete registry on {self.registry.ip}: {e}')

        self._set_state(RuntimeState.RESET)

    async def upgrade(self) -> None:
        await self.ensure_stable()
        self._set_state(RuntimeState.UPGRADING)

        try:
            version = self.kubeadm.kubernetes_version
            master0 = self._master0
            vlog = self.config.vlog

            await self.wait_ssh_ready(self.cluster.all_ips)

            self._logger.info(f'Start to upgrade cluster {self.cluster.name} to {version}')

            await self._upgrade_master(master0, commands.upgrade_apply(version, vlog))

            for master in self.cluster.masters[1:]:
                await self._upgrade_master(master, commands.upgrade_node(vlog))

            async def upgrade_node(node: str) -> None:
                await self._client.cmd_async(
                    node, commands.replace_binaries(str(self._paths.rootfs)), commands.RESTART_KUBELET
                )
                self._logger.info(f'Succeeded in upgrading node {node}')

            await self._dispatcher.run(self.cluster.nodes, upgrade_node, FanOutMode.FAIL_FAST, 'upgrade node')

            self._logger.info(f'Succeeded in upgrading cluster {self.cluster.name} to {version}')
        finally:
            self._set_state(RuntimeState.STABLE)

    async def _upgrade_master(self, master: str, upgrade_command: str) -> None:
        master0 = self._master0
        node_name = await self._node_name(master0, master) or await self._hostname(master)

        self._logger.info(f'Start to upgrade master {master}')

        await self._client.cmd_async(master0, commands.drain_node(node_name))
        await self._client.cmd_async(
            master, commands.replace_binaries(str(self._paths.rootfs)), upgrade_command, commands.RESTART_KUBELET
        )
        await self._client.cmd_async(master0, commands.uncordon_node(node_name))

        self._logger.info(f'Succeeded in upgrading master {master}')
