from abc import ABC, abstractmethod
from pathlib import Path


class RemoteClient(ABC):
    """Shell access to cluster hosts, addressed by IP."""

    @abstractmethod
    async def cmd(self, host: str, command: str) -> str:
        """Runs a command and returns its stdout. Non-zero exit raises RemoteCommandError."""

    @abstractmethod
    async def cmd_async(self, host: str, *commands: str) -> None:
        """Runs commands one after another, stopping at the first failure."""

    @abstractmethod
    async def copy(self, host: str, local_path: Path, remote_path: str) -> None:
        pass

    @abstractmethod
    async def ping(self, host: str) -> None:
        pass
