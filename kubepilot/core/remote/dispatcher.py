import asyncio
from collections.abc import Awaitable, Callable, Iterable
from enum import StrEnum

from kubepilot.core.exceptions import FanOutError
from kubepilot.core.utils import setup_logger, unique


class FanOutMode(StrEnum):
    FAIL_FAST = 'fail_fast'
    BEST_EFFORT = 'best_effort'


class FanOutDispatcher:
    """Runs one unit of work per host concurrently and waits for every unit.

    FAIL_FAST raises FanOutError once all units have finished and at least one failed.
    BEST_EFFORT only logs failures and hands them back to the caller.
    """

    def __init__(self) -> None:
        self._logger = setup_logger('FanOutDispatcher')

    async def run(
        self,
        hosts: Iterable[str],
        work: Callable[[str], Awaitable[None]],
        mode: FanOutMode = FanOutMode.FAIL_FAST,
        operation: str = 'fan-out',
    ) -> dict[str, Exception]:
        hosts = unique(hosts)

        if not hosts:
            return {}

        results = await asyncio.gather(*(work(host) for host in hosts), return_exceptions=True)

        failures = {}
        for host, result in zip(hosts, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, Exception):
                self._logger.error(f'[{host}] {operation} failed: {result}')
                failures[host] = result

        if failures and mode == FanOutMode.FAIL_FAST:
            raise FanOutError(operation, failures)

        if failures:
            self._logger.warning(f'{operation} finished with {len(failures)} failed host(s), continuing')

        return failures
