import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.cluster.paths import ClusterPaths
from kubepilot.core.exceptions import RemoteCommandError, RemoteConnectionError
from kubepilot.core.pipeline.collaborators import (
    Collaborators,
    ConfigDumper,
    FilesystemMounter,
    GuestRunner,
    ImageMounter,
    PluginRunner,
)
from kubepilot.core.remote.base_client import RemoteClient
from kubepilot.core.runtime import certs, commands

MASTER0 = '192.168.0.2'
MASTER1 = '192.168.0.3'
MASTER2 = '192.168.0.4'
NODE1 = '192.168.0.5'
NODE2 = '192.168.0.6'

CERTIFICATE_KEY = '0123456789abcdef' * 4

INIT_OUTPUT = f"""
Your Kubernetes control-plane has initialized successfully!

You can now join any number of the control-plane node running the following command on each as root:

  kubeadm join apiserver.cluster.local:6443 --token abcdef.0123456789abcdef \\
    --discovery-token-ca-cert-hash sha256:4ce5e5a5d5d1c0bd2e33a0d0c6f5e2b6 \\
    --control-plane --certificate-key {CERTIFICATE_KEY}

Please note that the certificate-key gives access to cluster sensitive data, keep it secret!

Then you can join any number of worker nodes by running the following on each as root:

kubeadm join apiserver.cluster.local:6443 --token abcdef.0123456789abcdef \\
    --discovery-token-ca-cert-hash sha256:4ce5e5a5d5d1c0bd2e33a0d0c6f5e2b6
"""

UPLOAD_CERTS_OUTPUT = f"""[upload-certs] Storing the certificates in Secret "kubeadm-certs" in the "kube-system" Namespace
[upload-certs] Using certificate key:
{CERTIFICATE_KEY}
"""

TOKEN_CREATE_OUTPUT = (
    'kubeadm join apiserver.cluster.local:6443 --token fresh1.0123456789abcdef '
    '--discovery-token-ca-cert-hash sha256:4ce5e5a5d5d1c0bd2e33a0d0c6f5e2b6 \n'
)

HOSTNAMES = {
    MASTER0: 'master-0',
    MASTER1: 'master-1',
    MASTER2: 'master-2',
    NODE1: 'node-1',
    NODE2: 'node-2',
}

Response = str | Callable[[str], str]


class FakeRemoteClient(RemoteClient):
    """Records every command and copy; answers commands from substring-keyed responses."""

    def __init__(self, responses: dict[str, Response] | None = None) -> None:
        self.responses: dict[str, Response] = dict(responses or {})
        self.unreachable: set[str] = set()
        self.failing: set[tuple[str, str]] = set()
        # yield to the event loop on every command so concurrent hosts interleave
        self.interleave = False

        self.commands: list[tuple[str, str]] = []
        self.copies: list[tuple[str, Path, str]] = []
        self.files: dict[tuple[str, str], str] = {}
        self.pings: dict[str, int] = {}

    def _check_reachable(self, host: str) -> None:
        if host in self.unreachable:
            raise RemoteConnectionError(host, f'[{host}] ssh session failed: connection refused')

    async def cmd(self, host: str, command: str) -> str:
        self._check_reachable(host)
        if self.interleave:
            await asyncio.sleep(0)
        self.commands.append((host, command))

        for host_and_substring in self.failing:
            failing_host, substring = host_and_substring
            if failing_host == host and substring in command:
                raise RemoteCommandError(host, command, 1, 'boom')

        for substring, response in self.responses.items():
            if substring in command:
                return response(host) if callable(response) else response

        return ''

    async def cmd_async(self, host: str, *commands: str) -> None:
        for command in commands:
            await self.cmd(host, command)

    async def copy(self, host: str, local_path: Path, remote_path: str) -> None:
        self._check_reachable(host)
        if self.interleave:
            await asyncio.sleep(0)
        self.copies.append((host, local_path, remote_path))

        if local_path.is_file():
            self.files[(host, remote_path)] = local_path.read_text()

    async def ping(self, host: str) -> None:
        self.pings[host] = self.pings.get(host, 0) + 1
        self._check_reachable(host)

    def commands_on(self, host: str) -> list[str]:
        return [command for h, command in self.commands if h == host]

    def ran(self, host: str, substring: str) -> bool:
        return any(substring in command for command in self.commands_on(host))

    def index_of(self, host: str, substring: str) -> int:
        return next(i for i, command in enumerate(self.commands_on(host)) if substring in command)


def runtime_responses(initialized: bool = False) -> dict[str, Response]:
    return {
        commands.CLUSTER_INITIALIZED: 'yes' if initialized else 'no',
        commands.LIST_NODE_NAMES: '\n'.join(HOSTNAMES.values()),
        commands.HOSTNAME: lambda host: HOSTNAMES[host],
        'kubeadm init --config': INIT_OUTPUT,
        'kubeadm init phase upload-certs': UPLOAD_CERTS_OUTPUT,
        'kubeadm token create': TOKEN_CREATE_OUTPUT,
        'CgroupDriver': 'systemd\n',
    }


@pytest.fixture
def cluster() -> Cluster:
    return Cluster.from_dict(
        {
            'name': 'demo',
            'image': 'kubernetes:v1.22.15',
            'ssh': {'password': 'secret'},
            'hosts': [
                {'ips': [MASTER0, MASTER1, MASTER2], 'roles': ['master']},
                {'ips': [NODE1, NODE2], 'roles': ['node']},
            ],
        }
    )


@pytest.fixture
def paths(tmp_path) -> ClusterPaths:
    return ClusterPaths('demo', tmp_path / 'data')


@pytest.fixture
def client() -> FakeRemoteClient:
    return FakeRemoteClient(runtime_responses())


@pytest.fixture(scope='session')
def shared_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def fast_keys(monkeypatch, shared_key):
    """Reuses one RSA key for every certificate issued during a test."""
    monkeypatch.setattr(certs, 'new_private_key', lambda: shared_key)


class FakeRuntime:
    """Stands in for KubeadmRuntime in pipeline tests; host lists change the way a real runtime's would."""

    def __init__(self, cluster: Cluster, client: RemoteClient, paths: ClusterPaths) -> None:
        self.cluster = cluster
        self.client = client
        self.paths = paths
        self.calls: list[tuple] = []

    async def ensure_stable(self) -> None:
        self.calls.append(('ensure_stable',))

    async def init(self) -> None:
        self.calls.append(('init',))

    async def join_masters(self, masters: list[str]) -> None:
        self.calls.append(('join_masters', list(masters)))
        self.cluster = self.cluster.with_hosts([*self.cluster.masters, *masters], self.cluster.nodes)

    async def join_nodes(self, nodes: list[str]) -> None:
        self.calls.append(('join_nodes', list(nodes)))
        self.cluster = self.cluster.with_hosts(self.cluster.masters, [*self.cluster.nodes, *nodes])

    async def delete_masters(self, masters: list[str]) -> None:
        self.calls.append(('delete_masters', list(masters)))
        self.cluster = self.cluster.with_hosts(
            [m for m in self.cluster.masters if m not in masters], self.cluster.nodes
        )

    async def delete_nodes(self, nodes: list[str]) -> None:
        self.calls.append(('delete_nodes', list(nodes)))
        self.cluster = self.cluster.with_hosts(self.cluster.masters, [n for n in self.cluster.nodes if n not in nodes])

    async def reset(self) -> None:
        self.calls.append(('reset',))

    async def upgrade(self) -> None:
        self.calls.append(('upgrade',))

    async def apply_registry(self) -> None:
        self.calls.append(('apply_registry',))

    async def send_registry_cert(self, hosts: list[str]) -> None:
        self.calls.append(('send_registry_cert', list(hosts)))

    async def add_registry_hosts(self, hosts: list[str]) -> None:
        self.calls.append(('add_registry_hosts', list(hosts)))


class RuntimeRecorder:
    """Runtime factory that keeps every FakeRuntime it builds."""

    def __init__(self) -> None:
        self.runtimes: list[FakeRuntime] = []

    def __call__(self, cluster: Cluster, client: RemoteClient, paths: ClusterPaths) -> FakeRuntime:
        runtime = FakeRuntime(cluster, client, paths)
        self.runtimes.append(runtime)
        return runtime

    @property
    def calls(self) -> list[tuple]:
        return [call for runtime in self.runtimes for call in runtime.calls]


@pytest.fixture
def runtime_factory() -> RuntimeRecorder:
    return RuntimeRecorder()


@pytest.fixture
def collaborators(tmp_path) -> Collaborators:
    return Collaborators(
        client=FakeRemoteClient(),
        image_mounter=MagicMock(spec=ImageMounter),
        config_dumper=MagicMock(spec=ConfigDumper),
        filesystem=MagicMock(spec=FilesystemMounter),
        plugins=MagicMock(spec=PluginRunner),
        guest=MagicMock(spec=GuestRunner),
        data_dir=tmp_path / 'data',
    )
