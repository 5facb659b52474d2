import copy
from pathlib import Path

import yaml

from kubepilot.core import config
from kubepilot.core.cluster.clusterfile import KUBEADM_KINDS, Clusterfile
from kubepilot.core.cluster.descriptor import Cluster
from kubepilot.core.exceptions import ClusterConfigurationError
from kubepilot.core.runtime.runtime_config import V1200, V1230, RuntimeConfiguration, version_at_least
from kubepilot.core.runtime.token import JoinToken
from kubepilot.core.template_loader import template_loader
from kubepilot.core.utils import setup_logger, unique

DEFAULT_KUBERNETES_VERSION = 'v1.22.15'
DEFAULT_IMAGE_REPOSITORY = f'{config.DEFAULT_REGISTRY_DOMAIN}:{config.DEFAULT_REGISTRY_PORT}/library'
DEFAULT_POD_CIDR = '100.64.0.0/10'

CONTAINERD_SOCKET = '/run/containerd/containerd.sock'
DOCKERSHIM_SOCKET = '/var/run/dockershim.sock'

CGROUP_DRIVER_SYSTEMD = 'systemd'
CGROUP_DRIVER_CGROUPFS = 'cgroupfs'

JOIN_DISCOVERY_TIMEOUT = '5m0s'


def deep_merge(base: dict, override: dict) -> dict:
    """Merges `override` into a copy of `base`; nested maps merge, everything else is replaced."""
    merged = copy.deepcopy(base)

    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged


def _section(document: dict, *keys: str) -> dict:
    for key in keys:
        if not isinstance(document.get(key), dict):
            document[key] = {}
        document = document[key]

    return document


class KubeadmConfig:
    def __init__(self, documents: dict[str, dict]) -> None:
        self._logger = setup_logger('KubeadmConfig')
        self._documents = {kind: copy.deepcopy(documents.get(kind, {'kind': kind})) for kind in KUBEADM_KINDS}

    @classmethod
    def default(cls) -> 'KubeadmConfig':
        rendered = template_loader.render_template(
            'kubeadm.yaml',
            'kubeadm',
            values={
                'kubernetes_version': DEFAULT_KUBERNETES_VERSION,
                'image_repository': DEFAULT_IMAGE_REPOSITORY,
                'dns_domain': config.DEFAULT_DNS_DOMAIN,
                'pod_cidr': DEFAULT_POD_CIDR,
                'service_cidr': config.DEFAULT_SERVICE_CIDR,
            },
        )

        return cls(parse_documents(rendered))

    @classmethod
    def load(cls, cluster: Cluster, image_config: Path | None = None) -> 'KubeadmConfig':
        """Defaults, then the image's etc/kubeadm.yml, then the Clusterfile documents."""
        kubeadm_config = cls.default()

        if image_config is not None and image_config.is_file():
            kubeadm_config.merge(parse_documents(image_config.read_text()))

        kubeadm_config.merge(Clusterfile.from_cluster(cluster).kubeadm_documents)

        return kubeadm_config

    def merge(self, documents: dict[str, dict]) -> None:
        for kind, document in documents.items():
            if kind in self._documents:
                self._documents[kind] = deep_merge(self._documents[kind], document)

    def document(self, kind: str) -> dict:
        return self._documents[kind]

    @property
    def kubernetes_version(self) -> str:
        version = self._documents['ClusterConfiguration'].get('kubernetesVersion')

        if not version:
            raise ClusterConfigurationError('kubernetesVersion is not set in ClusterConfiguration')

        return str(version)

    @property
    def api_version(self) -> str:
        if version_at_least(self.kubernetes_version, V1230):
            return 'kubeadm.k8s.io/v1beta3'

        return 'kubeadm.k8s.io/v1beta2'

    @property
    def cri_socket(self) -> str:
        return CONTAINERD_SOCKET if version_at_least(self.kubernetes_version, V1200) else DOCKERSHIM_SOCKET

    @property
    def dns_domain(self) -> str:
        networking = self._documents['ClusterConfiguration'].get('networking') or {}
        return networking.get('dnsDomain') or config.DEFAULT_DNS_DOMAIN

    @property
    def service_cidr(self) -> str:
        networking = self._documents['ClusterConfiguration'].get('networking') or {}
        return networking.get('serviceSubnet') or config.DEFAULT_SERVICE_CIDR

    @property
    def cert_sans(self) -> list[str]:
        api_server = self._documents['ClusterConfiguration'].get('apiServer') or {}
        return list(api_server.get('certSANs') or [])

    def apply_cluster_defaults(self, cluster: Cluster, runtime_config: RuntimeConfiguration) -> None:
        masters = cluster.masters

        init = self._documents['InitConfiguration']
        _section(init, 'localAPIEndpoint')['advertiseAddress'] = cluster.master0
        _section(init, 'localAPIEndpoint').setdefault('bindPort', config.APISERVER_PORT)
        _section(init, 'nodeRegistration').setdefault('criSocket', self.cri_socket)

        cluster_configuration = self._documents['ClusterConfiguration']
        cluster_configuration['controlPlaneEndpoint'] = f'{runtime_config.apiserver_domain}:{config.APISERVER_PORT}'
        _section(cluster_configuration, 'networking').setdefault('dnsDomain', config.DEFAULT_DNS_DOMAIN)

        api_server = _section(cluster_configuration, 'apiServer')
        api_server['certSANs'] = unique(
            ['127.0.0.1', runtime_config.apiserver_domain, runtime_config.vip, *masters, *self.cert_sans]
        )
        _section(api_server, 'extraArgs')['etcd-servers'] = ','.join(f'https://{m}:2379' for m in masters)

        ipvs = _section(self._documents['KubeProxyConfiguration'], 'ipvs')
        ipvs['excludeCIDRs'] = unique([*(ipvs.get('excludeCIDRs') or []), f'{runtime_config.vip}/32'])

    def set_join_host(self, advertise_address: str | None, cgroup_driver: str) -> None:
        """Writes the per-host fields of the shared join documents. Callers hold the runtime lock."""
        join = self._documents['JoinConfiguration']

        if advertise_address is None:
            join.pop('controlPlane', None)
        else:
            local_endpoint = _section(join, 'controlPlane', 'localAPIEndpoint')
            local_endpoint['advertiseAddress'] = advertise_address
            local_endpoint['bindPort'] = config.APISERVER_PORT

        self._documents['KubeletConfiguration']['cgroupDriver'] = cgroup_driver

    def render_join(self, token: JoinToken, api_server_endpoint: str) -> str:
        join = copy.deepcopy(self._documents['JoinConfiguration'])
        join['apiVersion'] = self.api_version
        join['kind'] = 'JoinConfiguration'
        join.setdefault('caCertPath', f'{config.KUBERNETES_PKI_DIR}/ca.crt')

        discovery = _section(join, 'discovery')
        discovery['bootstrapToken'] = {
            'apiServerEndpoint': api_server_endpoint,
            'token': token.token,
            'caCertHashes': [token.ca_cert_hash],
        }
        discovery.setdefault('timeout', JOIN_DISCOVERY_TIMEOUT)

        _section(join, 'nodeRegistration').setdefault('criSocket', self.cri_socket)

        if 'controlPlane' in join and token.certificate_key:
            join['controlPlane']['certificateKey'] = token.certificate_key

        return dump_documents([join, self._documents['KubeletConfiguration']])

    def render_init(self) -> str:
        init = dict(self._documents['InitConfiguration'], apiVersion=self.api_version)
        cluster_configuration = dict(self._documents['ClusterConfiguration'], apiVersion=self.api_version)

        return dump_documents(
            [
                init,
                cluster_configuration,
                self._documents['KubeProxyConfiguration'],
                self._documents['KubeletConfiguration'],
            ]
        )


def parse_documents(text: str) -> dict[str, dict]:
    try:
        documents = [doc for doc in yaml.safe_load_all(text) if isinstance(doc, dict)]
    except yaml.YAMLError as e:
        raise ClusterConfigurationError(f'Invalid kubeadm configuration: {e}') from e

    return {doc['kind']: doc for doc in documents if doc.get('kind') in KUBEADM_KINDS}


def dump_documents(documents: list[dict]) -> str:
    return yaml.safe_dump_all(documents, sort_keys=False)
