from pathlib import Path, PurePosixPath

import asyncssh

from kubepilot.core import config
from kubepilot.core.cluster.descriptor import Cluster, SSHConfig
from kubepilot.core.exceptions import RemoteCommandError, RemoteConnectionError
from kubepilot.core.remote.base_client import RemoteClient
from kubepilot.core.utils import setup_logger


class SSHClient(RemoteClient):
    def __init__(self, default_ssh: SSHConfig, host_ssh: dict[str, SSHConfig] | None = None) -> None:
        self._logger = setup_logger('SSHClient')

        self._default_ssh = default_ssh
        self._host_ssh = host_ssh or {}

    @classmethod
    def from_cluster(cls, cluster: Cluster, *others: Cluster) -> 'SSHClient':
        """Client for every host of `cluster`, plus hosts of `others` not already covered."""
        host_ssh = {}
        for source in (*reversed(others), cluster):
            host_ssh.update({ip: source.ssh_for(ip) for ip in source.all_ips})

        return cls(cluster.ssh, host_ssh)

    def _connect(self, host: str) -> asyncssh.SSHClientConnection:
        ssh = self._host_ssh.get(host, self._default_ssh)

        options = {
            'port': ssh.port,
            'username': ssh.user,
            'known_hosts': None,
            'connect_timeout': config.SSH_CONNECT_TIMEOUT,
        }

        if ssh.private_key:
            options['client_keys'] = [Path(ssh.private_key).expanduser()]
            options['passphrase'] = ssh.private_key_password
        if ssh.password:
            options['password'] = ssh.password

        return asyncssh.connect(host, **options)

    async def _run(self, connection: asyncssh.SSHClientConnection, host: str, command: str) -> str:
        self._logger.debug(f'[{host}] {command}')

        try:
            result = await connection.run(command, check=True)
        except asyncssh.ProcessError as e:
            raise RemoteCommandError(host, command, e.exit_status, str(e.stderr or '')) from e

        return str(result.stdout or '')

    async def cmd(self, host: str, command: str) -> str:
        try:
            async with self._connect(host) as connection:
                return await self._run(connection, host, command)
        except (OSError, asyncssh.Error) as e:
            raise RemoteConnectionError(host, f'[{host}] ssh session failed: {e}') from e

    async def cmd_async(self, host: str, *commands: str) -> None:
        try:
            async with self._connect(host) as connection:
                for command in commands:
                    await self._run(connection, host, command)
        except (OSError, asyncssh.Error) as e:
            raise RemoteConnectionError(host, f'[{host}] ssh session failed: {e}') from e

    async def copy(self, host: str, local_path: Path, remote_path: str) -> None:
        if not local_path.exists():
            raise FileNotFoundError(f'{local_path} does not exist')

        parent = PurePosixPath(remote_path).parent

        try:
            async with self._connect(host) as connection:
                await self._run(connection, host, f'mkdir -p {parent}')
                await asyncssh.scp(str(local_path), (connection, remote_path), recurse=True, preserve=True)
        except (OSError, asyncssh.Error) as e:
            raise RemoteConnectionError(host, f'[{host}] copy of {local_path} to {remote_path} failed: {e}') from e

        self._logger.debug(f'[{host}] copied {local_path} to {remote_path}')

    async def ping(self, host: str) -> None:
        await self.cmd(host, 'true')
