import base64
import ipaddress

import pytest
import yaml
from cryptography import x509
from cryptography.x509.oid import NameOID

from kubepilot.core.runtime.certs import AUTHORITIES, KUBECONFIG_USERS, CertificateManager

SERVER = 'https://apiserver.cluster.local:6443'


def load_cert(path):
    return x509.load_pem_x509_certificate(path.read_bytes())


def common_name(certificate):
    return certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value


def alt_names(certificate):
    extension = certificate.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    return set(extension.get_values_for_type(x509.DNSName)), set(extension.get_values_for_type(x509.IPAddress))


@pytest.fixture
def manager(tmp_path, fast_keys):
    return CertificateManager(tmp_path / 'pki')


class TestAuthorities:
    def test_authorities_and_service_account_keys(self, manager):
        manager.ensure_authorities()

        for authority in AUTHORITIES:
            certificate = load_cert(manager.pki_dir / f'{authority.path}.crt')
            assert common_name(certificate) == authority.common_name
            assert certificate.extensions.get_extension_for_class(x509.BasicConstraints).value.ca

        assert (manager.pki_dir / 'sa.key').is_file()
        assert (manager.pki_dir / 'sa.pub').is_file()

    def test_existing_authorities_are_reused(self, manager):
        manager.ensure_authorities()
        before = (manager.pki_dir / 'ca.crt').read_bytes()

        manager.ensure_authorities()

        assert (manager.pki_dir / 'ca.crt').read_bytes() == before

    def test_missing_authority(self, manager):
        with pytest.raises(FileNotFoundError, match='Certificate authority ca not found'):
            manager._authority('ca')


class TestMemberCertificates:
    def test_apiserver_alt_names(self, manager):
        manager.generate_member_certs(
            manager.pki_dir, 'master-0', '192.168.0.2', ['apiserver.cluster.local', '10.103.97.2']
        )

        apiserver = load_cert(manager.pki_dir / 'apiserver.crt')
        dns_names, ips = alt_names(apiserver)

        assert {'kubernetes.default.svc.cluster.local', 'master-0', 'apiserver.cluster.local'} <= dns_names
        assert {ipaddress.ip_address(ip) for ip in ('10.96.0.1', '192.168.0.2', '10.103.97.2')} <= ips
        assert apiserver.issuer == load_cert(manager.pki_dir / 'ca.crt').subject

    def test_etcd_certificates_are_signed_by_etcd_ca(self, manager):
        manager.generate_member_certs(manager.pki_dir, 'master-0', '192.168.0.2', [])

        etcd_ca = load_cert(manager.pki_dir / 'etcd' / 'ca.crt')

        for name in ('server', 'peer', 'healthcheck-client'):
            assert load_cert(manager.pki_dir / 'etcd' / f'{name}.crt').issuer == etcd_ca.subject

    def test_host_directory_gets_shared_material(self, manager, tmp_path):
        host_pki = tmp_path / 'hosts' / '192.168.0.3' / 'pki'

        manager.generate_member_certs(host_pki, 'master-1', '192.168.0.3', [])

        assert (host_pki / 'ca.crt').read_bytes() == (manager.pki_dir / 'ca.crt').read_bytes()
        assert (host_pki / 'etcd' / 'ca.key').is_file()
        assert (host_pki / 'sa.pub').is_file()
        assert common_name(load_cert(host_pki / 'etcd' / 'server.crt')) == 'master-1'


class TestKubeconfigs:
    def test_kubeconfig_contents(self, manager, tmp_path):
        paths = manager.generate_kubeconfigs(tmp_path / 'kubeconfigs', SERVER)

        assert [path.name for path in paths] == list(KUBECONFIG_USERS)

        admin = yaml.safe_load(paths[0].read_text())
        user = admin['users'][0]
        certificate = x509.load_pem_x509_certificate(base64.b64decode(user['user']['client-certificate-data']))
        organizations = certificate.subject.get_attributes_for_oid(NameOID.ORGANIZATION_NAME)

        assert admin['clusters'][0]['cluster']['server'] == SERVER
        assert user['name'] == 'kubernetes-admin'
        assert [o.value for o in organizations] == ['system:masters']

    def test_existing_kubeconfigs_are_kept(self, manager, tmp_path):
        output_dir = tmp_path / 'kubeconfigs'
        output_dir.mkdir()
        (output_dir / 'admin.conf').write_text('custom')

        manager.generate_kubeconfigs(output_dir, SERVER)

        assert (output_dir / 'admin.conf').read_text() == 'custom'
        assert (output_dir / 'scheduler.conf').is_file()


class TestRegistryCert:
    def test_registry_cert_names(self, manager, tmp_path):
        cert_path = tmp_path / 'certs' / 'sea.hub.crt'
        key_path = tmp_path / 'certs' / 'sea.hub.key'

        manager.generate_registry_cert(cert_path, key_path, 'sea.hub', '192.168.0.2')
        first = cert_path.read_bytes()
        manager.generate_registry_cert(cert_path, key_path, 'sea.hub', '192.168.0.2')

        dns_names, ips = alt_names(load_cert(cert_path))

        assert dns_names == {'sea.hub'}
        assert ips == {ipaddress.ip_address('192.168.0.2')}
        assert cert_path.read_bytes() == first
