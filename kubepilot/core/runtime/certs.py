import base64
import ipaddress
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from kubepilot.core import config
from kubepilot.core.template_loader import template_loader
from kubepilot.core.utils import is_ip, setup_logger, unique

CERT_VALIDITY = timedelta(days=365 * 100)
KEY_SIZE = 2048

SERVER_AUTH = ExtendedKeyUsageOID.SERVER_AUTH
CLIENT_AUTH = ExtendedKeyUsageOID.CLIENT_AUTH


@dataclass(frozen=True)
class AuthoritySpec:
    path: str
    common_name: str


@dataclass(frozen=True)
class CertificateSpec:
    path: str
    ca: str
    common_name: str
    organizations: tuple[str, ...] = ()
    usages: tuple[x509.ObjectIdentifier, ...] = (CLIENT_AUTH,)
    alt_names: tuple[str, ...] = field(default=())


AUTHORITIES = (
    AuthoritySpec('ca', 'kubernetes'),
    AuthoritySpec('front-proxy-ca', 'front-proxy-ca'),
    AuthoritySpec('etcd/ca', 'etcd-ca'),
)

KUBECONFIG_USERS = {
    'admin.conf': ('kubernetes-admin', ('system:masters',)),
    'controller-manager.conf': ('system:kube-controller-manager', ()),
    'scheduler.conf': ('system:kube-scheduler', ()),
}


def new_private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=KEY_SIZE)


def _key_pem(key: rsa.RSAPrivateKey) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _write_pair(directory: Path, name: str, certificate: x509.Certificate, key: rsa.RSAPrivateKey) -> None:
    cert_path = directory / f'{name}.crt'
    key_path = directory / f'{name}.key'
    cert_path.parent.mkdir(parents=True, exist_ok=True)

    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(_key_pem(key))
    key_path.chmod(0o600)


def _load_pair(directory: Path, name: str) -> tuple[x509.Certificate, rsa.RSAPrivateKey] | None:
    cert_path = directory / f'{name}.crt'
    key_path = directory / f'{name}.key'

    if not cert_path.is_file() or not key_path.is_file():
        return None

    certificate = x509.load_pem_x509_certificate(cert_path.read_bytes())
    key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)

    return certificate, key


def _subject(common_name: str, organizations: tuple[str, ...] = ()) -> x509.Name:
    attributes = [x509.NameAttribute(NameOID.ORGANIZATION_NAME, o) for o in organizations]
    attributes.append(x509.NameAttribute(NameOID.COMMON_NAME, common_name))

    return x509.Name(attributes)


def _alt_names(names: tuple[str, ...]) -> x509.SubjectAlternativeName:
    entries = []
    for name in unique(names):
        if is_ip(name):
            entries.append(x509.IPAddress(ipaddress.ip_address(name)))
        else:
            entries.append(x509.DNSName(name))

    return x509.SubjectAlternativeName(entries)


def self_signed_authority(
    common_name: str, key: rsa.RSAPrivateKey, alt_names: tuple[str, ...] = ()
) -> x509.Certificate:
    now = datetime.now(timezone.utc)
    subject = _subject(common_name)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
    )

    if alt_names:
        builder = builder.add_extension(_alt_names(alt_names), critical=False)

    return builder.sign(key, hashes.SHA256())


def signed_certificate(
    spec: CertificateSpec, key: rsa.RSAPrivateKey, ca_cert: x509.Certificate, ca_key: rsa.RSAPrivateKey
) -> x509.Certificate:
    now = datetime.now(timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(_subject(spec.common_name, spec.organizations))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage(list(spec.usages)), critical=False)
        .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False)
    )

    if spec.alt_names:
        builder = builder.add_extension(_alt_names(spec.alt_names), critical=False)

    return builder.sign(ca_key, hashes.SHA256())


def member_certificates(
    node_name: str, node_ip: str, apiserver_alt_names: list[str], service_cidr: str, dns_domain: str
) -> list[CertificateSpec]:
    service_ip = str(ipaddress.ip_network(service_cidr, strict=False)[1])

    apiserver_names = (
        'localhost',
        'kubernetes',
        'kubernetes.default',
        'kubernetes.default.svc',
        f'kubernetes.default.svc.{dns_domain}',
        '127.0.0.1',
        service_ip,
        node_ip,
        node_name,
        *apiserver_alt_names,
    )
    etcd_names = (node_name, 'localhost', node_ip, '127.0.0.1', '::1')

    return [
        CertificateSpec('apiserver', 'ca', 'kube-apiserver', usages=(SERVER_AUTH,), alt_names=apiserver_names),
        CertificateSpec('apiserver-kubelet-client', 'ca', 'kube-apiserver-kubelet-client', ('system:masters',)),
        CertificateSpec('front-proxy-client', 'front-proxy-ca', 'front-proxy-client'),
        CertificateSpec('apiserver-etcd-client', 'etcd/ca', 'kube-apiserver-etcd-client', ('system:masters',)),
        CertificateSpec('etcd/server', 'etcd/ca', node_name, usages=(SERVER_AUTH, CLIENT_AUTH), alt_names=etcd_names),
        CertificateSpec('etcd/peer', 'etcd/ca', node_name, usages=(SERVER_AUTH, CLIENT_AUTH), alt_names=etcd_names),
        CertificateSpec('etcd/healthcheck-client', 'etcd/ca', 'kube-etcd-healthcheck-client', ('system:masters',)),
    ]


class CertificateManager:
    """Owns the cluster CAs under `pki_dir` and issues host certificates and kubeconfigs from them."""

    def __init__(self, pki_dir: Path) -> None:
        self._logger = setup_logger('CertificateManager')
        self._pki_dir = pki_dir

    @property
    def pki_dir(self) -> Path:
        return self._pki_dir

    def _authority(self, name: str) -> tuple[x509.Certificate, rsa.RSAPrivateKey]:
        pair = _load_pair(self._pki_dir, name)

        if pair is None:
            raise FileNotFoundError(f'Certificate authority {name} not found in {self._pki_dir}')

        return pair

    def ensure_authorities(self) -> None:
        for authority in AUTHORITIES:
            if _load_pair(self._pki_dir, authority.path) is not None:
                self._logger.debug(f'Reusing certificate authority {authority.path}')
                continue

            key = new_private_key()
            _write_pair(self._pki_dir, authority.path, self_signed_authority(authority.common_name, key), key)

            self._logger.info(f'Generated certificate authority {authority.path}')

        self._ensure_service_account_keys()

    def _ensure_service_account_keys(self) -> None:
        key_path = self._pki_dir / 'sa.key'
        pub_path = self._pki_dir / 'sa.pub'

        if key_path.is_file() and pub_path.is_file():
            return

        key = new_private_key()
        key_path.write_bytes(_key_pem(key))
        key_path.chmod(0o600)
        pub_path.write_bytes(
            key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )

    def _copy_shared_material(self, output_dir: Path) -> None:
        if output_dir.resolve() == self._pki_dir.resolve():
            return

        shared = [f'{a.path}.{ext}' for ext in ('crt', 'key') for a in AUTHORITIES] + ['sa.key', 'sa.pub']

        for name in shared:
            target = output_dir / name
            target.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(self._pki_dir / name, target)

    def generate_member_certs(
        self,
        output_dir: Path,
        node_name: str,
        node_ip: str,
        apiserver_alt_names: list[str],
        service_cidr: str = config.DEFAULT_SERVICE_CIDR,
        dns_domain: str = config.DEFAULT_DNS_DOMAIN,
    ) -> None:
        self.ensure_authorities()
        self._copy_shared_material(output_dir)

        for spec in member_certificates(node_name, node_ip, apiserver_alt_names, service_cidr, dns_domain):
            if _load_pair(output_dir, spec.path) is not None:
                continue

            ca_cert, ca_key = self._authority(spec.ca)
            key = new_private_key()
            _write_pair(output_dir, spec.path, signed_certificate(spec, key, ca_cert, ca_key), key)

        self._logger.info(f'Certificates for {node_name} ({node_ip}) written to {output_dir}')

    def _kubeconfig(self, common_name: str, organizations: tuple[str, ...], server: str) -> str:
        ca_cert, ca_key = self._authority('ca')
        key = new_private_key()
        spec = CertificateSpec('kubeconfig', 'ca', common_name, organizations)
        certificate = signed_certificate(spec, key, ca_cert, ca_key)

        def encode(data: bytes) -> str:
            return base64.b64encode(data).decode('ascii')

        return template_loader.render_template(
            'kubeconfig.yaml',
            'kubernetes',
            values={
                'cluster_name': 'kubernetes',
                'server': server,
                'user': common_name,
                'ca_data': encode(ca_cert.public_bytes(serialization.Encoding.PEM)),
                'cert_data': encode(certificate.public_bytes(serialization.Encoding.PEM)),
                'key_data': encode(_key_pem(key)),
            },
        )

    def generate_kubeconfigs(self, output_dir: Path, server: str) -> list[Path]:
        """Writes admin, controller-manager and scheduler kubeconfigs, keeping existing ones."""
        self.ensure_authorities()
        output_dir.mkdir(parents=True, exist_ok=True)

        paths = []
        for file_name, (common_name, organizations) in KUBECONFIG_USERS.items():
            path = output_dir / file_name
            if not path.is_file():
                path.write_text(self._kubeconfig(common_name, organizations, server))
                path.chmod(0o600)
            paths.append(path)

        return paths

    def generate_registry_cert(self, cert_path: Path, key_path: Path, domain: str, ip: str) -> None:
        if cert_path.is_file() and key_path.is_file():
            return

        key = new_private_key()
        certificate = self_signed_authority(domain, key, alt_names=(domain, ip))

        cert_path.parent.mkdir(parents=True, exist_ok=True)
        cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
        key_path.write_bytes(_key_pem(key))
        key_path.chmod(0o600)

        self._logger.info(f'Generated registry certificate for {domain}')
