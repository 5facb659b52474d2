from kubepilot.core.cluster.clusterfile import ClusterfileStore
from kubepilot.core.cluster.descriptor import Cluster, diff_hosts
from kubepilot.core.exceptions import ClusterConfigurationError
from kubepilot.core.pipeline.base_processor import Processor, RuntimeFactory
from kubepilot.core.pipeline.collaborators import Collaborators
from kubepilot.core.pipeline.create_processor import CreateProcessor
from kubepilot.core.pipeline.delete_processor import DeleteProcessor
from kubepilot.core.pipeline.executor import Executor
from kubepilot.core.pipeline.generate_processor import GenerateProcessor
from kubepilot.core.pipeline.install_processor import InstallProcessor, UninstallProcessor
from kubepilot.core.pipeline.scale_processor import ScaleProcessor
from kubepilot.core.pipeline.upgrade_processor import UpgradeProcessor
from kubepilot.core.runtime.kubeadm_runtime import KubeadmRuntime
from kubepilot.core.utils import setup_logger


class ClusterApplier:
    """Converges a cluster towards a desired descriptor.

    The observed descriptor comes from the caller or from the saved Clusterfile and is
    refreshed after every scale pipeline, so a later pipeline sees the hosts as they
    are at that point.
    """

    def __init__(
        self,
        desired: Cluster,
        collaborators: Collaborators,
        current: Cluster | None = None,
        runtime_factory: RuntimeFactory = KubeadmRuntime,
    ) -> None:
        self._logger = setup_logger('ClusterApplier')

        self.desired = desired
        self._collaborators = collaborators
        self._runtime_factory = runtime_factory
        self._store = ClusterfileStore(collaborators.paths(desired))

        self.current = current if current is not None else self._store.load()

    async def _execute(self, processor: Processor, cluster: Cluster) -> None:
        await Executor(processor).execute(cluster)

    async def apply(self) -> None:
        desired = self.desired

        if self.current is None:
            self._logger.info(f'Cluster {desired.name} does not exist yet, creating it')
            await self._execute(CreateProcessor(self._collaborators, self._runtime_factory), desired)
            self.current = desired
            return

        if self.current.master0 != desired.master0:
            raise ClusterConfigurationError(
                f'Master0 of cluster {desired.name} cannot change from {self.current.master0} to {desired.master0}'
            )

        scaled = await self._scale_to_desired()

        if self.current.image != desired.image:
            self._logger.info(f'Upgrading cluster {desired.name} from {self.current.image} to {desired.image}')
            upgrade_target = self.current.model_copy(update={'image': desired.image})
            await self._execute(UpgradeProcessor(self._collaborators, self._runtime_factory), upgrade_target)
            self.current = upgrade_target
        elif not scaled:
            self._logger.info(f'Cluster {desired.name} already matches the desired state')

    async def _scale_to_desired(self) -> bool:
        desired = self.desired

        masters_to_join, masters_to_delete = diff_hosts(self.current.masters, desired.masters)
        nodes_to_join, nodes_to_delete = diff_hosts(self.current.nodes, desired.nodes)

        scaled = False

        if masters_to_join or nodes_to_join:
            self._logger.info(f'Scaling up {desired.name}: masters {masters_to_join}, nodes {nodes_to_join}')
            await self._run_scale(desired, masters_to_join=masters_to_join, nodes_to_join=nodes_to_join)
            scaled = True

        if masters_to_delete or nodes_to_delete:
            self._logger.info(f'Scaling down {desired.name}: masters {masters_to_delete}, nodes {nodes_to_delete}')
            await self._run_scale(desired, masters_to_delete=masters_to_delete, nodes_to_delete=nodes_to_delete)
            scaled = True

        return scaled

    async def _run_scale(self, target: Cluster, **hosts: list[str]) -> None:
        processor = ScaleProcessor(self.current, self._collaborators, runtime_factory=self._runtime_factory, **hosts)

        await self._execute(processor, target)

        self.current = processor.observed

    async def scale(
        self,
        masters_to_join: list[str] | None = None,
        masters_to_delete: list[str] | None = None,
        nodes_to_join: list[str] | None = None,
        nodes_to_delete: list[str] | None = None,
    ) -> None:
        """Explicit join or delete of hosts on the saved cluster."""
        if self.current is None:
            raise ClusterConfigurationError(f'Cluster {self.desired.name} has no saved Clusterfile to scale')

        processor = ScaleProcessor(
            self.current,
            self._collaborators,
            masters_to_join,
            masters_to_delete,
            nodes_to_join,
            nodes_to_delete,
            self._runtime_factory,
        )

        if processor.is_scale_up:
            target = self.current.with_hosts(
                [*self.current.masters, *processor.masters_to_join], [*self.current.nodes, *processor.nodes_to_join]
            )
        else:
            target = self.current.with_hosts(
                [m for m in self.current.masters if m not in processor.masters_to_delete],
                [n for n in self.current.nodes if n not in processor.nodes_to_delete],
            )

        await self._execute(processor, target)

        self.current = processor.observed

    async def delete(self) -> None:
        cluster = self.current or self.desired

        await self._execute(DeleteProcessor(self._collaborators, self._runtime_factory), cluster)

        self.current = None

    async def generate(self) -> None:
        await self._execute(GenerateProcessor(self._collaborators, self._runtime_factory), self.desired)

        self.current = self.desired

    async def install(self, image: str) -> None:
        cluster = (self.current or self.desired).model_copy(update={'image': image})
        await self._execute(InstallProcessor(self._collaborators, self._runtime_factory), cluster)

    async def uninstall(self, image: str) -> None:
        cluster = (self.current or self.desired).model_copy(update={'image': image})
        await self._execute(UninstallProcessor(self._collaborators, self._runtime_factory), cluster)
