from kubepilot.core import config
from kubepilot.core.template_loader import template_loader

LVSCARE_POD_NAME = 'kube-lvscare'


def lvscare_image(registry_url: str) -> str:
    return f'{registry_url}/{config.LVSCARE_IMAGE}'


def render_lvscare_pod(
    vip: str, masters: list[str], image: str, port: int = config.APISERVER_PORT, pod_name: str = LVSCARE_POD_NAME
) -> str:
    """Static pod that keeps the IPVS virtual server on `vip` pointed at every master."""
    return template_loader.render_template(
        'lvscare.yaml',
        'kubernetes',
        values={'pod_name': pod_name, 'vip': vip, 'port': port, 'masters': masters, 'image': image},
    )
