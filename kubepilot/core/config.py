from pathlib import Path
from dotenv import load_dotenv
import os

load_dotenv(Path(Path(__file__).parent.parent.parent.absolute(), '.env'))

DATA_DIR = Path(os.getenv('KUBEPILOT_DATA_DIR', '/var/lib/kubepilot/data'))

DEFAULT_VIP = os.getenv('KUBEPILOT_VIP', '10.103.97.2')
DEFAULT_APISERVER_DOMAIN = os.getenv('KUBEPILOT_APISERVER_DOMAIN', 'apiserver.cluster.local')
DEFAULT_DNS_DOMAIN = 'cluster.local'
DEFAULT_SERVICE_CIDR = '10.96.0.0/12'
APISERVER_PORT = 6443

DEFAULT_REGISTRY_DOMAIN = 'sea.hub'
DEFAULT_REGISTRY_PORT = 5000
REGISTRY_CONTAINER_NAME = 'kubepilot-registry'
DOCKER_CERT_DIR = '/etc/docker/certs.d'

KUBEADM_VLOG = int(os.getenv('KUBEPILOT_VLOG', '0'))

SSH_READY_ATTEMPTS = int(os.getenv('KUBEPILOT_SSH_READY_ATTEMPTS', '6'))
SSH_READY_BACKOFF = float(os.getenv('KUBEPILOT_SSH_READY_BACKOFF', '1'))
SSH_CONNECT_TIMEOUT = float(os.getenv('KUBEPILOT_SSH_CONNECT_TIMEOUT', '30'))

LVSCARE_IMAGE = os.getenv('KUBEPILOT_LVSCARE_IMAGE', 'sealer/lvscare:v1.1.3-beta.8')

HOSTS_FILE = Path('/etc/hosts')

KUBERNETES_DIR = '/etc/kubernetes'
KUBERNETES_PKI_DIR = '/etc/kubernetes/pki'
STATIC_POD_DIR = '/etc/kubernetes/manifests'
