"""Shell commands run on cluster hosts."""
from kubepilot.core import config
from kubepilot.core.runtime.runtime_config import V1150, version_at_least

INIT_PREFLIGHT_IGNORES = 'SystemVerification,Port-10250,DirAvailable--etc-kubernetes-manifests'
NODE_PREFLIGHT_IGNORES = 'Port-10250,DirAvailable--etc-kubernetes-manifests'

LVSCARE_MANIFEST = f'{config.STATIC_POD_DIR}/kube-sealyun-lvscare.yaml'

COPY_KUBECONFIG = 'rm -rf .kube/config && mkdir -p /root/.kube && cp /etc/kubernetes/admin.conf /root/.kube/config'
NON_ROOT_COPY_KUBECONFIG = (
    'rm -rf ${HOME}/.kube/config && mkdir -p ${HOME}/.kube && '
    'cp /etc/kubernetes/admin.conf ${HOME}/.kube/config && chown $(id -u):$(id -g) ${HOME}/.kube/config'
)
REMOVE_KUBECONFIG = 'rm -rf /usr/bin/kube* && rm -rf ~/.kube/'
REMOVE_LVSCARE_STATIC_POD = f'rm -rf {config.STATIC_POD_DIR}/kube-sealyun-lvscare*'
LIST_NODE_NAMES = "kubectl get nodes | grep -v NAME | awk '{print $1}'"
HOSTNAME = 'hostname'
RESTART_KUBELET = 'systemctl daemon-reload && systemctl restart kubelet'
CLUSTER_INITIALIZED = (
    'kubectl --kubeconfig /etc/kubernetes/admin.conf get nodes > /dev/null 2>&1 && echo yes || echo no'
)
KUBELET_CONF = f'{config.KUBERNETES_DIR}/kubelet.conf'
CGROUP_DRIVER = (
    'if command -v docker > /dev/null 2>&1; then docker info -f "{{.CgroupDriver}}"; '
    "else containerd config dump 2>/dev/null | grep -q 'SystemdCgroup = true' && echo systemd || echo cgroupfs; fi"
)


def vlog_suffix(vlog: int) -> str:
    return f' -v {vlog}' if vlog > 0 else ''


def file_exists(path: str) -> str:
    return f'if [ -f {path} ]; then echo yes; else echo no; fi'


def add_hosts_entry(ip: str, domain: str) -> str:
    entry = f'{ip} {domain}'
    return f"cat /etc/hosts |grep '{entry}' || echo '{entry}' >> /etc/hosts"


def update_hosts_entry(old: str, new: str) -> str:
    return f'sed "s/{old}/{new}/g" < /etc/hosts > hosts && cp -f hosts /etc/hosts'


def remove_hosts_entry(domain: str) -> str:
    return f'sed -i "/{domain}/d" /etc/hosts'


def clean_host(vlog: int) -> str:
    return (
        f'if which kubeadm > /dev/null 2>&1;then kubeadm reset -f{vlog_suffix(vlog)};fi && '
        'modprobe -r ipip; '
        'rm -rf /etc/kubernetes/ && '
        'rm -rf /etc/systemd/system/kubelet.service.d && rm -rf /etc/systemd/system/kubelet.service && '
        'rm -rf /usr/bin/kubeadm && rm -rf /usr/bin/kubelet-pre-start.sh && '
        'rm -rf /usr/bin/kubelet && rm -rf /usr/bin/crictl && '
        'rm -rf /var/lib/kubelet/* && rm -rf /etc/sysctl.d/k8s.conf && '
        'rm -rf /etc/cni && rm -rf /opt/cni && '
        'rm -rf /var/lib/etcd && rm -rf /var/etcd'
    )


def copy_statics(statics_dir: str) -> str:
    return (
        f'if [ -d {statics_dir} ]; then mkdir -p {config.KUBERNETES_DIR} && '
        f'cp -rf {statics_dir}/. {config.KUBERNETES_DIR}/; fi'
    )


def kubeadm_init(version: str, config_path: str, vlog: int) -> str:
    upload_flag = '--upload-certs' if version_at_least(version, V1150) else '--experimental-upload-certs'

    return (
        f'kubeadm init --config={config_path} {upload_flag}{vlog_suffix(vlog)} '
        f'--ignore-preflight-errors={INIT_PREFLIGHT_IGNORES}'
    )


def kubeadm_join(
    version: str,
    config_path: str,
    vlog: int,
    master: bool,
    endpoint: str = '',
    token: str = '',
    ca_cert_hash: str = '',
    certificate_key: str = '',
) -> str:
    if version_at_least(version, V1150):
        command = f'kubeadm join --config={config_path}'
    elif master:
        command = (
            f'kubeadm join {endpoint} --token {token} --discovery-token-ca-cert-hash {ca_cert_hash} '
            f'--experimental-control-plane --certificate-key {certificate_key}'
        )
    else:
        command = f'kubeadm join {endpoint} --token {token} --discovery-token-ca-cert-hash {ca_cert_hash}'

    ignores = INIT_PREFLIGHT_IGNORES if master else NODE_PREFLIGHT_IGNORES

    return f'{command}{vlog_suffix(vlog)} --ignore-preflight-errors={ignores}'


def upload_certs(vlog: int) -> str:
    return f'kubeadm init phase upload-certs --upload-certs{vlog_suffix(vlog)}'


def create_join_token(vlog: int) -> str:
    return f'kubeadm token create --print-join-command{vlog_suffix(vlog)}'


def delete_node(name: str) -> str:
    return f'kubectl delete node {name}'


def lvscare_ipvs_rule(vip: str, masters: list[str], port: int = config.APISERVER_PORT) -> str:
    real_servers = ' '.join(f'--rs {master}:{port}' for master in masters)

    return f'lvscare care --vs {vip}:{port} {real_servers} --health-path /healthz --health-schem https --run-once'


def delete_vip_route(vip: str, gateway: str) -> str:
    return (
        'if command -v seautil > /dev/null 2>&1; then '
        f'seautil route del --host {vip} --gateway {gateway}; fi'
    )


def drain_node(name: str) -> str:
    return f'kubectl drain {name} --ignore-daemonsets --delete-emptydir-data --force'


def uncordon_node(name: str) -> str:
    return f'kubectl uncordon {name}'


def replace_binaries(rootfs: str) -> str:
    return f'cp -rf {rootfs}/bin/* /usr/bin/'


def upgrade_apply(version: str, vlog: int) -> str:
    return f'kubeadm upgrade apply -y {version}{vlog_suffix(vlog)}'


def upgrade_node(vlog: int) -> str:
    return f'kubeadm upgrade node{vlog_suffix(vlog)}'


def append_clean_step(script: str, step: str) -> str:
    """Appends a teardown line to the clean-up script unless it is already there."""
    escaped = step.replace("'", "'\\''")

    return (
        f"mkdir -p $(dirname {script}) && touch {script} && "
        f"(grep -qxF '{escaped}' {script} || echo '{escaped}' >> {script})"
    )


def run_clean_script(script: str) -> str:
    return f'if [ -f {script} ]; then sh {script}; fi'
