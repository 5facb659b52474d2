from dataclasses import dataclass
from pathlib import Path

from kubepilot.core import config

CLEAN_SCRIPT_NAME = 'kubepilot-clean.sh'
MOUNT_MARKER_NAME = '.kubepilot-mounted'


@dataclass(frozen=True)
class ClusterPaths:
    """Per-cluster directory layout, identical on the executing machine and on hosts."""

    name: str
    data_dir: Path = config.DATA_DIR

    @property
    def root(self) -> Path:
        return self.data_dir / self.name

    @property
    def rootfs(self) -> Path:
        return self.root / 'rootfs'

    @property
    def mount(self) -> Path:
        return self.root / 'mount'

    @property
    def pki(self) -> Path:
        return self.root / 'pki'

    @property
    def clusterfile(self) -> Path:
        return self.root / 'Clusterfile'

    def host_pki(self, ip: str) -> Path:
        return self.root / 'hosts' / ip / 'pki'

    def kubeconfig(self, name: str) -> Path:
        return self.root / name

    @property
    def kubeadm_init_config(self) -> Path:
        return self.rootfs / 'etc' / 'kubeadm-config.yaml'

    @property
    def kubeadm_join_config(self) -> Path:
        return self.rootfs / 'etc' / 'kubeadm-join-config.yaml'

    @property
    def image_kubeadm_config(self) -> Path:
        return self.rootfs / 'etc' / 'kubeadm.yml'

    @property
    def registry_htpasswd(self) -> Path:
        return self.rootfs / 'etc' / 'registry_htpasswd'

    @property
    def registry_password(self) -> Path:
        return self.rootfs / 'etc' / 'registry_password'

    @property
    def statics(self) -> Path:
        return self.rootfs / 'statics'

    @property
    def scripts(self) -> Path:
        return self.rootfs / 'scripts'

    @property
    def clean_script(self) -> Path:
        return self.scripts / CLEAN_SCRIPT_NAME

    @property
    def mount_marker(self) -> Path:
        return self.rootfs / MOUNT_MARKER_NAME

    @property
    def image_registry_config(self) -> Path:
        return self.rootfs / 'etc' / 'registry_config.yml'

    @property
    def image_plugins(self) -> Path:
        return self.rootfs / 'plugins'

    @property
    def local_certs(self) -> Path:
        return self.root / 'certs'

    @property
    def remote_certs(self) -> Path:
        return self.rootfs / 'certs'
