import ipaddress
from enum import StrEnum

from pydantic import BaseModel, Field, field_validator, model_validator

from kubepilot.core import config
from kubepilot.core.exceptions import ClusterConfigurationError
from kubepilot.core.utils import unique

VIP_ANNOTATION = 'kubepilot.io/vip'
APISERVER_DOMAIN_ANNOTATION = 'kubepilot.io/apiserver-domain'
CLUSTERFILE_ANNOTATION = 'kubepilot.io/clusterfile'


class HostRole(StrEnum):
    MASTER = 'master'
    NODE = 'node'


class SSHConfig(BaseModel):
    user: str = 'root'
    password: str | None = None
    private_key: str | None = None
    private_key_password: str | None = None
    port: int = 22


class HostGroup(BaseModel):
    ips: list[str]
    roles: list[HostRole]
    ssh: SSHConfig | None = None

    @field_validator('ips')
    @classmethod
    def _validate_ips(cls, ips: list[str]) -> list[str]:
        for ip in ips:
            ipaddress.ip_address(ip)

        return unique(ips)


class Cluster(BaseModel):
    """Desired state of one cluster, as read from a Clusterfile."""

    name: str
    image: str
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    hosts: list[HostGroup] = Field(default_factory=list)
    cmd: list[str] = Field(default_factory=list)
    annotations: dict[str, str] = Field(default_factory=dict)

    @field_validator('name', 'image')
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError('must not be empty')

        return value

    @model_validator(mode='after')
    def _validate_masters(self) -> 'Cluster':
        if not self.masters:
            raise ValueError(f'cluster {self.name} has no master hosts')

        return self

    @classmethod
    def from_dict(cls, data: dict) -> 'Cluster':
        try:
            return cls.model_validate(data)
        except ValueError as e:
            raise ClusterConfigurationError(f'Invalid cluster descriptor: {e}') from e

    def _ips_with_role(self, role: HostRole) -> list[str]:
        return unique(ip for group in self.hosts if role in group.roles for ip in group.ips)

    @property
    def masters(self) -> list[str]:
        return self._ips_with_role(HostRole.MASTER)

    @property
    def nodes(self) -> list[str]:
        masters = set(self.masters)
        return [ip for ip in self._ips_with_role(HostRole.NODE) if ip not in masters]

    @property
    def master0(self) -> str:
        return self.masters[0]

    @property
    def all_ips(self) -> list[str]:
        return unique([*self.masters, *self.nodes])

    @property
    def vip(self) -> str:
        return self.annotations.get(VIP_ANNOTATION, config.DEFAULT_VIP)

    @property
    def apiserver_domain(self) -> str:
        return self.annotations.get(APISERVER_DOMAIN_ANNOTATION, config.DEFAULT_APISERVER_DOMAIN)

    def ssh_for(self, ip: str) -> SSHConfig:
        for group in self.hosts:
            if ip in group.ips and group.ssh is not None:
                overrides = group.ssh.model_dump(exclude_unset=True)
                return self.ssh.model_copy(update=overrides)

        return self.ssh

    def with_hosts(self, masters: list[str], nodes: list[str]) -> 'Cluster':
        """Returns a copy whose host groups hold exactly the given masters and nodes.

        Groups keep their SSH overrides. New IPs go to the first group carrying the
        role, or to a fresh group when there is none.
        """
        wanted = {HostRole.MASTER: unique(masters), HostRole.NODE: unique(nodes)}
        placed: set[tuple[str, HostRole]] = set()
        groups = []

        for group in self.hosts:
            ips = []
            for ip in group.ips:
                if any(ip in wanted[role] for role in group.roles):
                    ips.append(ip)
                    placed.update((ip, role) for role in group.roles)
            groups.append(group.model_copy(update={'ips': ips}))

        for role, ips in wanted.items():
            missing = [ip for ip in ips if (ip, role) not in placed]
            if not missing:
                continue

            target = next((g for g in groups if g.roles == [role]), None)
            if target is None:
                groups.append(HostGroup(ips=missing, roles=[role]))
            else:
                target.ips.extend(missing)

        return self.model_copy(update={'hosts': [g for g in groups if g.ips]})


def diff_hosts(current: list[str], desired: list[str]) -> tuple[list[str], list[str]]:
    """Returns (to_join, to_delete) between two host lists."""
    to_join = [ip for ip in unique(desired) if ip not in current]
    to_delete = [ip for ip in unique(current) if ip not in desired]

    return to_join, to_delete
