from typing import override

from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.pipeline.base_processor import PipelineStep, Processor


class GenerateProcessor(Processor):
    """Takes over a cluster that was bootstrapped by other means.

    The cluster already runs, so the rootfs is copied without running its init script
    and only the registry is brought up.
    """

    name = 'generate'

    @override
    def get_pipeline(self) -> list[PipelineStep]:
        return [
            PipelineStep('save Clusterfile', self.save_clusterfile),
            PipelineStep('mount image', self.mount_image),
            PipelineStep('mount rootfs', self.mount_rootfs),
            PipelineStep('apply registry', self.apply_registry),
            PipelineStep('unmount image', self.unmount_image),
            PipelineStep('add registry hosts', self.add_registry_hosts),
        ]

    async def mount_rootfs(self, cluster: Cluster) -> None:
        hosts = self._hosts_with_registry(cluster, cluster.all_ips)
        await self._collaborators.filesystem.mount_rootfs(cluster, hosts, False)

    async def apply_registry(self, cluster: Cluster) -> None:
        runtime = self.runtime(cluster)

        await runtime.apply_registry()
        await runtime.send_registry_cert(cluster.all_ips)

    async def add_registry_hosts(self, cluster: Cluster) -> None:
        await self.runtime(cluster).add_registry_hosts(cluster.all_ips)
