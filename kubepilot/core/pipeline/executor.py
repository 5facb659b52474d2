from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.pipeline.base_processor import Processor
from kubepilot.core.utils import setup_logger


class Executor:
    """Runs a processor's pipeline top to bottom and stops at the first failing step.

    Nothing is rolled back or retried here; the failing step's exception reaches the
    caller unchanged.
    """

    def __init__(self, processor: Processor) -> None:
        self._logger = setup_logger('Executor')
        self._processor = processor

    async def execute(self, cluster: Cluster) -> None:
        name = self._processor.name
        pipeline = self._processor.get_pipeline()

        self._logger.info(f'Running {name} pipeline for cluster {cluster.name} ({len(pipeline)} steps)')

        for index, step in enumerate(pipeline, start=1):
            self._logger.debug(f'[{name}] step {index}/{len(pipeline)}: {step.name}')

            try:
                await step.func(cluster)
            except Exception as e:
                self._logger.error(f'[{name}] step {step.name} failed for cluster {cluster.name}: {e}')
                raise

        self._logger.info(f'{name} pipeline for cluster {cluster.name} finished')
