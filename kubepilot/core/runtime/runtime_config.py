import asyncio
from dataclasses import dataclass, field

from kubepilot.core import config
from kubepilot.core.runtime.token import JoinToken

V1150 = 'v1.15.0'
V1200 = 'v1.20.0'
V1230 = 'v1.23.0'


def parse_version(version: str) -> tuple[int, ...]:
    core = version.strip().lstrip('v').split('-')[0].split('+')[0]

    try:
        return tuple(int(part) for part in core.split('.'))
    except ValueError as e:
        raise ValueError(f'Invalid kubernetes version: {version}') from e


def version_at_least(version: str, minimum: str) -> bool:
    return parse_version(version) >= parse_version(minimum)


@dataclass
class RuntimeConfiguration:
    """State shared by every host operation of one runtime instance.

    `lock` guards per-host join configuration generation, which writes host fields
    into the shared kubeadm documents right before they are serialised.
    """

    apiserver_domain: str
    vip: str
    registry_port: int = config.DEFAULT_REGISTRY_PORT
    vlog: int = config.KUBEADM_VLOG
    join_token: str | None = None
    token_ca_cert_hash: str | None = None
    certificate_key: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def has_join_token(self) -> bool:
        return bool(self.join_token and self.token_ca_cert_hash)

    @property
    def has_master_join_token(self) -> bool:
        return self.has_join_token and bool(self.certificate_key)

    def apply_token(self, token: JoinToken) -> None:
        self.join_token = token.token
        self.token_ca_cert_hash = token.ca_cert_hash

        if token.certificate_key:
            self.certificate_key = token.certificate_key

    def snapshot(self) -> JoinToken:
        return JoinToken(self.join_token, self.token_ca_cert_hash, self.certificate_key)
