from typing import override

from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.exceptions import ScaleArgumentsError
from kubepilot.core.pipeline.base_processor import PipelineStep, Processor, RuntimeFactory
from kubepilot.core.pipeline.collaborators import Collaborators, PluginPhase
from kubepilot.core.runtime.kubeadm_runtime import KubeadmRuntime
from kubepilot.core.utils import unique


def validate_scale_args(
    cluster: Cluster,
    masters_to_join: list[str] | None = None,
    masters_to_delete: list[str] | None = None,
    nodes_to_join: list[str] | None = None,
    nodes_to_delete: list[str] | None = None,
) -> tuple[list[str], list[str], list[str], list[str]]:
    """Checks a scale request against the observed cluster and returns it with duplicates removed."""
    masters_to_join = unique(masters_to_join or [])
    masters_to_delete = unique(masters_to_delete or [])
    nodes_to_join = unique(nodes_to_join or [])
    nodes_to_delete = unique(nodes_to_delete or [])

    if not any((masters_to_join, masters_to_delete, nodes_to_join, nodes_to_delete)):
        raise ScaleArgumentsError('Nothing to scale: all join and delete lists are empty')

    current = set(cluster.all_ips)

    already_joined = [ip for ip in [*masters_to_join, *nodes_to_join] if ip in current]
    if already_joined:
        raise ScaleArgumentsError(f'Hosts {already_joined} are already part of cluster {cluster.name}')

    both_roles = set(masters_to_join) & set(nodes_to_join)
    if both_roles:
        raise ScaleArgumentsError(f'Hosts {sorted(both_roles)} cannot join as master and node at once')

    if cluster.master0 in masters_to_delete:
        raise ScaleArgumentsError(f'Master0 {cluster.master0} of cluster {cluster.name} cannot be deleted')

    unknown = [ip for ip in masters_to_delete if ip not in cluster.masters]
    unknown += [ip for ip in nodes_to_delete if ip not in cluster.nodes]
    if unknown:
        raise ScaleArgumentsError(f'Hosts {unknown} to delete do not hold that role in cluster {cluster.name}')

    return masters_to_join, masters_to_delete, nodes_to_join, nodes_to_delete


class ScaleProcessor(Processor):
    """Joins or removes hosts of a running cluster, never both in one run.

    The runtime is bound to the observed cluster, whose host lists it refreshes as
    hosts join or leave. A request carrying join and delete lists scales up only.
    """

    name = 'scale'

    def __init__(
        self,
        current: Cluster,
        collaborators: Collaborators,
        masters_to_join: list[str] | None = None,
        masters_to_delete: list[str] | None = None,
        nodes_to_join: list[str] | None = None,
        nodes_to_delete: list[str] | None = None,
        runtime_factory: RuntimeFactory = KubeadmRuntime,
    ) -> None:
        super().__init__(collaborators, runtime_factory)

        self._current = current
        (
            self.masters_to_join,
            self.masters_to_delete,
            self.nodes_to_join,
            self.nodes_to_delete,
        ) = validate_scale_args(current, masters_to_join, masters_to_delete, nodes_to_join, nodes_to_delete)

        self.is_scale_up = bool(self.masters_to_join or self.nodes_to_join)

        if self.is_scale_up and (self.masters_to_delete or self.nodes_to_delete):
            self._logger.warning(
                f'Scale request for {current.name} both joins and deletes hosts, scaling up only; '
                f'ignored deletes: masters {self.masters_to_delete}, nodes {self.nodes_to_delete}'
            )
            self.masters_to_delete = []
            self.nodes_to_delete = []

    @property
    def observed(self) -> Cluster:
        """The cluster as it stands after the steps run so far."""
        if self._runtime is not None:
            return self._runtime.cluster

        return self._current

    @property
    def _join_hosts(self) -> list[str]:
        return [*self.masters_to_join, *self.nodes_to_join]

    @property
    def _delete_hosts(self) -> list[str]:
        return [*self.masters_to_delete, *self.nodes_to_delete]

    @override
    def get_pipeline(self) -> list[PipelineStep]:
        if self.is_scale_up:
            return [
                PipelineStep('load plugins', self.load_plugins),
                self.plugin_step(PluginPhase.ORIGINALLY, lambda _: self._join_hosts),
                PipelineStep('mount image', self.mount_image),
                PipelineStep('dump configs', self.run_config),
                PipelineStep('mount rootfs', self.mount_rootfs),
                self.plugin_step(PluginPhase.PRE_JOIN, lambda _: self._join_hosts),
                PipelineStep('join hosts', self.join),
                self.plugin_step(PluginPhase.PRE_GUEST, lambda _: self._join_hosts),
                PipelineStep('unmount image', self.unmount_image),
                self.plugin_step(PluginPhase.POST_JOIN, lambda _: self._join_hosts),
            ]

        return [
            PipelineStep('load plugins', self.load_plugins),
            self.plugin_step(PluginPhase.PRE_CLEAN, lambda _: self._delete_hosts),
            PipelineStep('delete hosts', self.delete),
            self.plugin_step(PluginPhase.POST_CLEAN, lambda _: self._delete_hosts),
            PipelineStep('unmount rootfs', self.unmount_rootfs),
        ]

    async def mount_rootfs(self, cluster: Cluster) -> None:
        await self._collaborators.filesystem.mount_rootfs(cluster, self._join_hosts, True)

    async def unmount_rootfs(self, cluster: Cluster) -> None:
        await self._collaborators.filesystem.unmount_rootfs(cluster, self._delete_hosts)

    async def join(self, cluster: Cluster) -> None:
        runtime = self.runtime(self._current)

        await runtime.join_masters(self.masters_to_join)
        await runtime.join_nodes(self.nodes_to_join)

        await self.save_clusterfile(runtime.cluster)

    async def delete(self, cluster: Cluster) -> None:
        runtime = self.runtime(self._current)

        await runtime.delete_masters(self.masters_to_delete)
        await runtime.delete_nodes(self.nodes_to_delete)

        await self.save_clusterfile(runtime.cluster)
