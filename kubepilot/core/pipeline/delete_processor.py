from typing import override

from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.pipeline.base_processor import PipelineStep, Processor
from kubepilot.core.pipeline.collaborators import PluginPhase


class DeleteProcessor(Processor):
    name = 'delete'

    @override
    def get_pipeline(self) -> list[PipelineStep]:
        return [
            PipelineStep('load plugins', self.load_plugins),
            self.plugin_step(PluginPhase.PRE_CLEAN),
            PipelineStep('reset hosts', self.reset),
            self.plugin_step(PluginPhase.POST_CLEAN),
            PipelineStep('unmount rootfs', self.unmount_rootfs),
            PipelineStep('unmount image', self.unmount_image),
            PipelineStep('clean local state', self.clean_local),
        ]

    async def reset(self, cluster: Cluster) -> None:
        await self.runtime(cluster).reset()

    async def unmount_rootfs(self, cluster: Cluster) -> None:
        hosts = self._hosts_with_registry(cluster, cluster.all_ips)
        await self._collaborators.filesystem.unmount_rootfs(cluster, hosts)

    async def clean_local(self, cluster: Cluster) -> None:
        self._collaborators.filesystem.clean_local(cluster)
