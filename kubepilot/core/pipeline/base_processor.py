from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from kubepilot.core.cluster.clusterfile import ClusterfileStore
from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.cluster.paths import ClusterPaths
from kubepilot.core.pipeline.collaborators import Collaborators, PluginPhase, persist_image_files
from kubepilot.core.remote.base_client import RemoteClient
from kubepilot.core.runtime.kubeadm_runtime import KubeadmRuntime
from kubepilot.core.runtime.registry import resolve_registry_config
from kubepilot.core.utils import setup_logger, unique

RuntimeFactory = Callable[[Cluster, RemoteClient, ClusterPaths], KubeadmRuntime]


@dataclass(frozen=True)
class PipelineStep:
    name: str
    func: Callable[[Cluster], Awaitable[None]]


class Processor(ABC):
    """One cluster operation expressed as an ordered list of steps.

    Every step takes the desired descriptor and checks the actual state of the hosts
    before acting, so a failed pipeline can be run again from the top.
    """

    name: str
    # whether mounting keeps the settings of the image in the local rootfs
    cluster_image = True

    def __init__(self, collaborators: Collaborators, runtime_factory: RuntimeFactory = KubeadmRuntime) -> None:
        self._logger = setup_logger(self.__class__.__name__)

        self._collaborators = collaborators
        self._runtime_factory = runtime_factory
        self._runtime: KubeadmRuntime | None = None

    @abstractmethod
    def get_pipeline(self) -> list[PipelineStep]:
        pass

    def runtime(self, cluster: Cluster) -> KubeadmRuntime:
        """Runtime bound to `cluster`, built on first use once the image is mounted."""
        if self._runtime is None:
            self._runtime = self._runtime_factory(
                cluster, self._collaborators.client, self._collaborators.paths(cluster)
            )

        return self._runtime

    def _store(self, cluster: Cluster) -> ClusterfileStore:
        return ClusterfileStore(self._collaborators.paths(cluster))

    def _hosts_with_registry(self, cluster: Cluster, hosts: list[str]) -> list[str]:
        registry = resolve_registry_config(self._collaborators.paths(cluster).image_registry_config, cluster.master0)

        return unique([*hosts, registry.ip])

    def plugin_step(self, phase: PluginPhase, hosts: Callable[[Cluster], list[str]] | None = None) -> PipelineStep:
        async def run_plugins(cluster: Cluster) -> None:
            targets = hosts(cluster) if hosts is not None else cluster.all_ips
            await self._collaborators.plugins.run(cluster, targets, phase)

        return PipelineStep(f'plugins {phase}', run_plugins)

    async def save_clusterfile(self, cluster: Cluster) -> None:
        self._store(cluster).save(cluster)

    async def load_plugins(self, cluster: Cluster) -> None:
        self._collaborators.plugins.load(cluster)

    async def mount_image(self, cluster: Cluster) -> None:
        await self._collaborators.image_mounter.mount_image(cluster)

        if self.cluster_image:
            persist_image_files(self._collaborators.paths(cluster))
            self._collaborators.plugins.load(cluster)

    async def unmount_image(self, cluster: Cluster) -> None:
        await self._collaborators.image_mounter.unmount_image(cluster)

    async def run_config(self, cluster: Cluster) -> None:
        await self._collaborators.config_dumper.dump(cluster)
