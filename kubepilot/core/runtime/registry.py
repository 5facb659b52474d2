from pathlib import Path

import yaml
from pydantic import BaseModel, ValidationError

from kubepilot.core import config
from kubepilot.core.cluster.paths import ClusterPaths
from kubepilot.core.exceptions import ClusterConfigurationError
from kubepilot.core.remote.base_client import RemoteClient
from kubepilot.core.runtime import commands
from kubepilot.core.template_loader import content_to_temp_file
from kubepilot.core.utils import encrypt_password, setup_logger

REGISTRY_FIELDS = ('ip', 'domain', 'port', 'username', 'password')


class RegistryConfig(BaseModel):
    ip: str
    domain: str = config.DEFAULT_REGISTRY_DOMAIN
    port: int = config.DEFAULT_REGISTRY_PORT
    username: str | None = None
    password: str | None = None

    @property
    def url(self) -> str:
        return f'{self.domain}:{self.port}'

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


def resolve_registry_config(override_file: Path, master0: str) -> RegistryConfig:
    """Registry settings from the override file, each missing field falling back to its default."""
    overrides = {}

    if override_file.is_file():
        try:
            data = yaml.safe_load(override_file.read_text()) or {}
        except yaml.YAMLError as e:
            raise ClusterConfigurationError(f'Invalid registry config {override_file}: {e}') from e

        if not isinstance(data, dict):
            raise ClusterConfigurationError(f'Registry config {override_file} must be a mapping')

        overrides = {k: v for k, v in data.items() if k in REGISTRY_FIELDS and v not in (None, '')}

    try:
        return RegistryConfig(**{'ip': master0, **overrides})
    except ValidationError as e:
        raise ClusterConfigurationError(f'Invalid registry config {override_file}: {e}') from e


def delete_registry_command() -> str:
    name = config.REGISTRY_CONTAINER_NAME
    return f'if docker inspect {name} > /dev/null 2>&1;then docker rm -f {name};fi'


class RegistryManager:
    def __init__(self, client: RemoteClient, paths: ClusterPaths, registry: RegistryConfig) -> None:
        self._logger = setup_logger('RegistryManager')

        self._client = client
        self._paths = paths
        self.registry = registry

    def hosts_entries(self) -> list[tuple[str, str]]:
        entries = [(self.registry.ip, self.registry.domain)]

        if self.registry.domain != config.DEFAULT_REGISTRY_DOMAIN:
            entries.append((self.registry.ip, config.DEFAULT_REGISTRY_DOMAIN))

        return entries

    def add_hosts_commands(self) -> list[str]:
        return [commands.add_hosts_entry(ip, domain) for ip, domain in self.hosts_entries()]

    def remove_hosts_commands(self) -> list[str]:
        return [commands.remove_hosts_entry(domain) for _, domain in self.hosts_entries()]

    def login_commands(self) -> list[str]:
        if not self.registry.has_credentials:
            return []

        password_file = self._paths.registry_password

        # reads the file uploaded by send_password
        return [
            f'docker login {self.registry.url} -u {self.registry.username} --password-stdin < {password_file}; '
            f'status=$?; rm -f {password_file}; [ $status -eq 0 ] && '
            'mkdir -p /var/lib/kubelet && cp /root/.docker/config.json /var/lib/kubelet && systemctl restart kubelet'
        ]

    async def send_password(self, host: str) -> None:
        if not self.registry.has_credentials:
            return

        with content_to_temp_file(self.registry.password) as password_file:
            await self._client.copy(host, password_file, str(self._paths.registry_password))

    @property
    def local_cert(self) -> Path:
        return self._paths.local_certs / f'{self.registry.domain}.crt'

    @property
    def local_key(self) -> Path:
        return self._paths.local_certs / f'{self.registry.domain}.key'

    async def send_cert(self, host: str) -> None:
        target = f'{config.DOCKER_CERT_DIR}/{self.registry.url}/ca.crt'

        await self._client.copy(host, self.local_cert, target)

    async def apply(self, master0: str) -> None:
        registry = self.registry
        rootfs = self._paths.rootfs

        self._logger.info(f'Bringing up registry {registry.url} on {registry.ip}')

        await self._client.copy(registry.ip, self.local_cert, str(self._paths.remote_certs / f'{registry.domain}.crt'))
        await self._client.copy(registry.ip, self.local_key, str(self._paths.remote_certs / f'{registry.domain}.key'))

        if registry.has_credentials:
            with content_to_temp_file(encrypt_password(registry.username, registry.password)) as htpasswd:
                await self._client.copy(registry.ip, htpasswd, str(self._paths.registry_htpasswd))

        await self._client.cmd_async(
            registry.ip,
            f'cd {rootfs}/scripts && sh init-registry.sh {registry.port} {rootfs}/registry {registry.domain}',
        )

        await self.send_password(master0)
        await self._client.cmd_async(master0, *self.add_hosts_commands(), *self.login_commands())

    async def delete(self) -> None:
        self._logger.info(f'Removing registry container on {self.registry.ip}')

        await self._client.cmd_async(self.registry.ip, delete_registry_command())
