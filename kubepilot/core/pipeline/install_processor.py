"""Application images: workloads installed onto an already running cluster."""
from typing import override

from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.pipeline.base_processor import PipelineStep, Processor
from kubepilot.core.pipeline.collaborators import PluginPhase


class InstallProcessor(Processor):
    name = 'install'
    cluster_image = False

    @override
    def get_pipeline(self) -> list[PipelineStep]:
        return [
            PipelineStep('check cluster', self.check_cluster),
            PipelineStep('load plugins', self.load_plugins),
            PipelineStep('mount image', self.mount_image),
            PipelineStep('dump configs', self.run_config),
            PipelineStep('mount rootfs', self.mount_rootfs),
            self.plugin_step(PluginPhase.PRE_GUEST, lambda cluster: [cluster.master0]),
            PipelineStep('run guest', self.run_guest),
            PipelineStep('unmount image', self.unmount_image),
            self.plugin_step(PluginPhase.POST_INSTALL, lambda cluster: [cluster.master0]),
        ]

    async def check_cluster(self, cluster: Cluster) -> None:
        await self.runtime(cluster).ensure_stable()

    async def mount_rootfs(self, cluster: Cluster) -> None:
        await self._collaborators.filesystem.mount_rootfs(cluster, [cluster.master0], False)

    async def run_guest(self, cluster: Cluster) -> None:
        await self._collaborators.guest.apply(cluster)


class UninstallProcessor(Processor):
    name = 'uninstall'
    cluster_image = False

    @override
    def get_pipeline(self) -> list[PipelineStep]:
        return [
            PipelineStep('check cluster', self.check_cluster),
            PipelineStep('mount image', self.mount_image),
            PipelineStep('mount rootfs', self.mount_rootfs),
            PipelineStep('delete guest', self.delete_guest),
            PipelineStep('unmount image', self.unmount_image),
        ]

    async def check_cluster(self, cluster: Cluster) -> None:
        await self.runtime(cluster).ensure_stable()

    async def mount_rootfs(self, cluster: Cluster) -> None:
        await self._collaborators.filesystem.mount_rootfs(cluster, [cluster.master0], False)

    async def delete_guest(self, cluster: Cluster) -> None:
        await self._collaborators.guest.delete(cluster)
