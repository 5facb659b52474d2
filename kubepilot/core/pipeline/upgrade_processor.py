from typing import override

from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.pipeline.base_processor import PipelineStep, Processor


class UpgradeProcessor(Processor):
    name = 'upgrade'

    @override
    def get_pipeline(self) -> list[PipelineStep]:
        return [
            PipelineStep('mount image', self.mount_image),
            PipelineStep('mount rootfs', self.mount_rootfs),
            PipelineStep('upgrade cluster', self.upgrade),
            PipelineStep('save Clusterfile', self.save_clusterfile),
            PipelineStep('unmount image', self.unmount_image),
        ]

    async def mount_rootfs(self, cluster: Cluster) -> None:
        # hosts already carrying this image are skipped
        await self._collaborators.filesystem.mount_rootfs(cluster, cluster.all_ips, False)

    async def upgrade(self, cluster: Cluster) -> None:
        await self.runtime(cluster).upgrade()
