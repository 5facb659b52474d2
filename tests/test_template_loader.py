import re
import tempfile
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from jinja2.exceptions import TemplateNotFound

from kubepilot.core.template_loader import TemplateLoader, content_to_temp_file, template_loader as packaged_loader


@pytest.fixture
def temp_templates_dir_root():
    """
    Creates a temporary directory that will serve as the 'templates' root for tests.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        templates_root = Path(tmpdir)

        (templates_root / 'kubeadm').mkdir()
        (templates_root / 'kubernetes').mkdir()

        (templates_root / 'kubeadm' / 'init.yaml').write_text(
            'apiVersion: kubeadm.k8s.io/v1beta2\nkind: ClusterConfiguration\nkubernetesVersion: {{ version }}'
        )
        (templates_root / 'kubernetes' / 'pod.yaml').write_text(
            'apiVersion: v1\nkind: Pod\nmetadata:\n  name: {{ pod_name }}'
        )
        (templates_root / 'simple.txt').write_text('Hello, {{ name }}!')
        (templates_root / 'no_vars.txt').write_text('This is a test.')

        yield templates_root


@pytest.fixture
def template_loader(temp_templates_dir_root):
    return TemplateLoader(templates_dir=temp_templates_dir_root)


@pytest.fixture(autouse=True)
def mock_setup_logger():
    with patch('kubepilot.core.utils.setup_logger') as mock_logger:
        mock_logger.return_value = MagicMock()
        yield


class TestTemplateLoader:
    def test_init_templates_dir_not_found(self):
        non_existent_path = Path('/path/to/nonexistent/templates_xyz')

        with pytest.raises(FileNotFoundError, match=f'Templates directory not found at: {non_existent_path}.'):
            TemplateLoader(templates_dir=non_existent_path)

    @pytest.mark.parametrize('module', ['kubeadm', 'kubernetes'])
    def test_validate_template_module_valid(self, template_loader, module):
        assert template_loader._validate_template_module(module) == module

    def test_validate_template_module_none(self, template_loader):
        assert template_loader._validate_template_module(None) == '.'

    def test_validate_template_module_invalid(self, template_loader):
        with pytest.raises(
            ValueError,
            match=r"Invalid template module: 'invalid'. Must be one of \('kubeadm', 'kubernetes'\) or None.",
        ):
            template_loader._validate_template_module('invalid')

    def test_render_template_no_variables(self, template_loader):
        assert template_loader.render_template('no_vars.txt') == 'This is a test.'

    def test_render_template_with_variables(self, template_loader):
        assert template_loader.render_template('simple.txt', values={'name': 'World'}) == 'Hello, World!'

    def test_render_template_with_module_and_variables(self, template_loader):
        rendered_content = template_loader.render_template(
            'init.yaml', template_module='kubeadm', values={'version': 'v1.22.15'}
        )

        assert 'kubernetesVersion: v1.22.15' in rendered_content
        assert 'kind: ClusterConfiguration' in rendered_content

    def test_render_template_missing_variables(self, template_loader):
        message = (
            "There are variables in the template './simple.txt' "
            "that are not provided in the 'values' dictionary: {'name'}"
        )

        with pytest.raises(ValueError, match=re.escape(message)):
            template_loader.render_template('simple.txt', values={'another_var': 'something'})

    def test_render_template_not_found(self, template_loader):
        with pytest.raises(TemplateNotFound, match="Template 'kubernetes/non_existent.yaml' not found."):
            template_loader.render_template('non_existent.yaml', 'kubernetes')

    def test_render_template_invalid_module(self, template_loader):
        with pytest.raises(ValueError):
            template_loader.render_template('simple.txt', 'invalid')

    def test_render_template_values_not_dict(self, template_loader):
        with pytest.raises(TypeError, match='Template values must be a dictionary'):
            template_loader.render_template('simple.txt', values='not_a_dict')

    def test_render_template_from_kubernetes_module(self, template_loader):
        rendered = template_loader.render_template('pod.yaml', 'kubernetes', {'pod_name': 'kube-lvscare'})

        assert rendered.endswith('name: kube-lvscare')


class TestContentToTempFile:
    def test_file_is_removed_after_use(self):
        with content_to_temp_file('admin:$2b$12$hash') as path:
            assert path.read_text() == 'admin:$2b$12$hash'

        assert not path.exists()

    def test_file_is_removed_on_error(self):
        with pytest.raises(RuntimeError):
            with content_to_temp_file('data') as path:
                raise RuntimeError('copy failed')

        assert not path.exists()


class TestPackagedTemplates:
    def test_kubeadm_defaults_render(self):
        rendered = packaged_loader.render_template(
            'kubeadm.yaml',
            'kubeadm',
            values={
                'kubernetes_version': 'v1.22.15',
                'image_repository': 'sea.hub:5000/library',
                'dns_domain': 'cluster.local',
                'pod_cidr': '100.64.0.0/10',
                'service_cidr': '10.96.0.0/12',
            },
        )

        assert 'kind: KubeletConfiguration' in rendered
        assert 'imageRepository: sea.hub:5000/library' in rendered
