from typing import override

from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.pipeline.base_processor import PipelineStep, Processor
from kubepilot.core.pipeline.collaborators import PluginPhase


class CreateProcessor(Processor):
    name = 'create'

    @override
    def get_pipeline(self) -> list[PipelineStep]:
        return [
            PipelineStep('save Clusterfile', self.save_clusterfile),
            PipelineStep('load plugins', self.load_plugins),
            self.plugin_step(PluginPhase.ORIGINALLY),
            PipelineStep('mount image', self.mount_image),
            PipelineStep('dump configs', self.run_config),
            PipelineStep('mount rootfs', self.mount_rootfs),
            self.plugin_step(PluginPhase.PRE_INIT),
            PipelineStep('init master0', self.init),
            PipelineStep('join hosts', self.join),
            self.plugin_step(PluginPhase.PRE_GUEST),
            PipelineStep('run guest', self.run_guest),
            PipelineStep('unmount image', self.unmount_image),
            self.plugin_step(PluginPhase.POST_INSTALL),
        ]

    async def mount_rootfs(self, cluster: Cluster) -> None:
        hosts = self._hosts_with_registry(cluster, cluster.all_ips)
        await self._collaborators.filesystem.mount_rootfs(cluster, hosts, True)

    async def init(self, cluster: Cluster) -> None:
        await self.runtime(cluster).init()

    async def join(self, cluster: Cluster) -> None:
        runtime = self.runtime(cluster)

        await runtime.join_masters(cluster.masters[1:])
        await runtime.join_nodes(cluster.nodes)

        await self.save_clusterfile(runtime.cluster)

    async def run_guest(self, cluster: Cluster) -> None:
        await self._collaborators.guest.apply(cluster)
