from dataclasses import dataclass, field
from pathlib import Path

import yaml

from kubepilot.core.cluster.descriptor import CLUSTERFILE_ANNOTATION, Cluster
from kubepilot.core.cluster.paths import ClusterPaths
from kubepilot.core.exceptions import ClusterConfigurationError
from kubepilot.core.utils import setup_logger

KUBEADM_KINDS = (
    'InitConfiguration',
    'ClusterConfiguration',
    'JoinConfiguration',
    'KubeletConfiguration',
    'KubeProxyConfiguration',
)


@dataclass
class Clusterfile:
    cluster: Cluster
    kubeadm_documents: dict[str, dict] = field(default_factory=dict)
    plugins: list[dict] = field(default_factory=list)

    @classmethod
    def parse(cls, text: str) -> 'Clusterfile':
        try:
            documents = [doc for doc in yaml.safe_load_all(text) if doc]
        except yaml.YAMLError as e:
            raise ClusterConfigurationError(f'Clusterfile is not valid YAML: {e}') from e

        cluster_data = None
        kubeadm_documents = {}
        plugins = []

        for document in documents:
            if not isinstance(document, dict):
                raise ClusterConfigurationError(f'Unexpected Clusterfile document: {document!r}')

            kind = document.get('kind')

            if kind == 'Cluster':
                if cluster_data is not None:
                    raise ClusterConfigurationError('Clusterfile contains more than one Cluster document')
                cluster_data = document
            elif kind in KUBEADM_KINDS:
                kubeadm_documents[kind] = document
            elif kind == 'Plugin':
                plugins.append(document)

        if cluster_data is None:
            raise ClusterConfigurationError('Clusterfile does not contain a Cluster document')

        spec = cluster_data.get('spec') or {}
        annotations = {
            **((cluster_data.get('metadata') or {}).get('annotations') or {}),
            CLUSTERFILE_ANNOTATION: text,
        }

        cluster = Cluster.from_dict(
            {
                'name': (cluster_data.get('metadata') or {}).get('name', ''),
                'image': spec.get('image', ''),
                'ssh': spec.get('ssh') or {},
                'hosts': spec.get('hosts') or [],
                'cmd': spec.get('cmd') or [],
                'annotations': annotations,
            }
        )

        return cls(cluster=cluster, kubeadm_documents=kubeadm_documents, plugins=plugins)

    @classmethod
    def load(cls, path: Path) -> 'Clusterfile':
        if not path.is_file():
            raise ClusterConfigurationError(f'Clusterfile {path} does not exist')

        return cls.parse(path.read_text())

    @classmethod
    def from_cluster(cls, cluster: Cluster) -> 'Clusterfile':
        """Re-reads kubeadm and plugin documents carried in the cluster annotations."""
        raw = cluster.annotations.get(CLUSTERFILE_ANNOTATION)

        if not raw:
            return cls(cluster=cluster)

        parsed = cls.parse(raw)

        return cls(cluster=cluster, kubeadm_documents=parsed.kubeadm_documents, plugins=parsed.plugins)

    def dump(self) -> str:
        cluster = self.cluster
        annotations = {k: v for k, v in cluster.annotations.items() if k != CLUSTERFILE_ANNOTATION}

        metadata = {'name': cluster.name}
        if annotations:
            metadata['annotations'] = annotations

        cluster_document = {
            'apiVersion': 'kubepilot.io/v1',
            'kind': 'Cluster',
            'metadata': metadata,
            'spec': {
                'image': cluster.image,
                'ssh': cluster.ssh.model_dump(exclude_none=True),
                'hosts': [group.model_dump(mode='json', exclude_none=True) for group in cluster.hosts],
            },
        }

        if cluster.cmd:
            cluster_document['spec']['cmd'] = cluster.cmd

        documents = [cluster_document, *self.kubeadm_documents.values(), *self.plugins]

        return yaml.safe_dump_all(documents, sort_keys=False)


class ClusterfileStore:
    def __init__(self, paths: ClusterPaths) -> None:
        self._logger = setup_logger('ClusterfileStore')
        self._paths = paths

    def save(self, cluster: Cluster) -> Path:
        path = self._paths.clusterfile
        path.parent.mkdir(parents=True, exist_ok=True)

        path.write_text(Clusterfile.from_cluster(cluster).dump())

        self._logger.info(f'Saved Clusterfile of {cluster.name} to {path}')

        return path

    def load(self) -> Cluster | None:
        path = self._paths.clusterfile

        if not path.is_file():
            return None

        return Clusterfile.load(path).cluster
