import pytest

from kubepilot.core.cluster.descriptor import CLUSTERFILE_ANNOTATION
from kubepilot.core.exceptions import ClusterConfigurationError, FanOutError
from kubepilot.core.pipeline.collaborators import (
    PluginPhase,
    RemoteFilesystem,
    ShellGuest,
    ShellPlugin,
    ShellPluginRunner,
    persist_image_files,
)
from tests.conftest import MASTER0, MASTER1, MASTER2, NODE1, NODE2, FakeRemoteClient


@pytest.fixture
def client():
    return FakeRemoteClient()


@pytest.fixture
def mounted_image(paths):
    for name in ('bin', 'scripts', 'registry', 'etc'):
        (paths.mount / name).mkdir(parents=True)
    (paths.mount / 'Kubefile').write_text('FROM scratch')

    return paths.mount


def plugin_document(name, action, data, on=''):
    return {
        'kind': 'Plugin',
        'metadata': {'name': name},
        'spec': {'type': 'SHELL', 'action': action, 'on': on, 'data': data},
    }


class TestRemoteFilesystem:
    @pytest.fixture
    def filesystem(self, client, paths):
        return RemoteFilesystem(client, paths.data_dir)

    @pytest.mark.asyncio
    async def test_requires_mounted_image(self, filesystem, cluster):
        with pytest.raises(FileNotFoundError, match='is not mounted'):
            await filesystem.mount_rootfs(cluster, [MASTER0], True)

    @pytest.mark.asyncio
    async def test_registry_payload_only_on_registry_host(self, filesystem, client, cluster, paths, mounted_image):
        await filesystem.mount_rootfs(cluster, [MASTER0, NODE1], True)

        master_targets = {remote for host, _, remote in client.copies if host == MASTER0}
        node_targets = {remote for host, _, remote in client.copies if host == NODE1}

        assert str(paths.rootfs / 'registry') in master_targets
        assert str(paths.rootfs / 'registry') not in node_targets
        assert {str(paths.rootfs / name) for name in ('bin', 'scripts', 'etc', 'Kubefile')} <= node_targets

        assert client.ran(NODE1, 'bash init.sh /var/lib/docker sea.hub 5000')
        assert client.ran(NODE1, f"echo 'kubernetes:v1.22.15' > {paths.mount_marker}")

    @pytest.mark.asyncio
    async def test_same_image_is_skipped(self, filesystem, client, cluster, paths, mounted_image):
        client.responses[f'cat {paths.mount_marker}'] = 'kubernetes:v1.22.15\n'

        await filesystem.mount_rootfs(cluster, [MASTER0, NODE1], True)

        assert client.copies == []
        assert not client.ran(MASTER0, 'init.sh')

    @pytest.mark.asyncio
    async def test_new_image_is_copied_without_init(self, filesystem, client, cluster, paths, mounted_image):
        client.responses[f'cat {paths.mount_marker}'] = 'kubernetes:v1.22.15\n'
        upgraded = cluster.model_copy(update={'image': 'kubernetes:v1.23.1'})

        await filesystem.mount_rootfs(upgraded, [NODE1], False)

        assert client.copies
        assert not client.ran(NODE1, 'init.sh')
        assert client.ran(NODE1, f"echo 'kubernetes:v1.23.1' > {paths.mount_marker}")

    @pytest.mark.asyncio
    async def test_failed_host_fails_the_mount(self, filesystem, client, cluster, mounted_image):
        client.unreachable.add(NODE1)

        with pytest.raises(FanOutError) as exc_info:
            await filesystem.mount_rootfs(cluster, [MASTER0, NODE1], True)

        assert list(exc_info.value.failures) == [NODE1]
        assert client.ran(MASTER0, 'init.sh')

    @pytest.mark.asyncio
    async def test_unmount(self, filesystem, client, cluster, paths):
        await filesystem.unmount_rootfs(cluster, [MASTER0, NODE1])

        for host in (MASTER0, NODE1):
            assert client.ran(host, f'sh {paths.clean_script}')
            assert client.ran(host, f'rm -rf {paths.rootfs}')
            assert client.ran(host, 'rm -rf /etc/docker/certs.d/sea.hub*')

    def test_clean_local(self, filesystem, cluster, paths, mounted_image):
        filesystem.clean_local(cluster)
        filesystem.clean_local(cluster)

        assert not paths.root.exists()


class TestPersistImageFiles:
    def test_keeps_settings_and_plugins(self, paths, mounted_image):
        (mounted_image / 'etc' / 'registry_config.yml').write_text('domain: hub.example\n')
        (mounted_image / 'etc' / 'kubeadm.yml').write_text('kind: ClusterConfiguration\n')
        (mounted_image / 'plugins').mkdir()
        (mounted_image / 'plugins' / 'clean.yaml').write_text('kind: Plugin\n')

        persist_image_files(paths)

        assert paths.image_registry_config.read_text() == 'domain: hub.example\n'
        assert paths.image_kubeadm_config.read_text() == 'kind: ClusterConfiguration\n'
        assert (paths.image_plugins / 'clean.yaml').is_file()

    def test_drops_settings_the_new_image_lacks(self, paths, mounted_image):
        paths.image_registry_config.parent.mkdir(parents=True)
        paths.image_registry_config.write_text('domain: old.example\n')
        paths.image_plugins.mkdir()
        (paths.image_plugins / 'old.yaml').write_text('kind: Plugin\n')

        persist_image_files(paths)

        assert not paths.image_registry_config.exists()
        assert not paths.image_plugins.exists()

    def test_without_mounted_image(self, paths):
        paths.image_registry_config.parent.mkdir(parents=True)
        paths.image_registry_config.write_text('domain: hub.example\n')

        persist_image_files(paths)

        assert paths.image_registry_config.read_text() == 'domain: hub.example\n'


class TestShellPlugin:
    def test_phases(self):
        plugin = ShellPlugin.from_document(plugin_document('p', 'PreInit| PostInstall', 'date'))

        assert plugin.phases == ['PreInit', 'PostInstall']

    @pytest.mark.parametrize(
        'on, expected',
        [
            ('', [MASTER0, NODE1, NODE2]),
            ('master', [MASTER0]),
            ('node', [NODE1, NODE2]),
            (f'{NODE2}, {MASTER1}', [NODE2]),
        ],
    )
    def test_targets(self, cluster, on, expected):
        plugin = ShellPlugin.from_document(plugin_document('p', 'PreInit', 'date', on))

        assert plugin.targets(cluster, [MASTER0, NODE1, NODE2]) == expected

    def test_invalid_document(self):
        with pytest.raises(ClusterConfigurationError, match='Invalid plugin document'):
            ShellPlugin.from_document({'kind': 'Plugin', 'metadata': {'name': 'p'}, 'spec': {'data': 'date'}})


class TestShellPluginRunner:
    @pytest.fixture
    def runner(self, client, paths):
        return ShellPluginRunner(client, paths.data_dir)

    @pytest.fixture
    def plugin_cluster(self, cluster):
        clusterfile = (
            'kind: Cluster\nmetadata:\n  name: demo\nspec:\n  image: kubernetes:v1.22.15\n'
            f'  hosts:\n  - ips: [{MASTER0}]\n    roles: [master]\n'
            '---\nkind: Plugin\nmetadata:\n  name: set-hostname\n'
            'spec:\n  type: SHELL\n  action: PreInit\n  on: master\n  data: hostnamectl set-hostname demo\n'
        )
        return cluster.model_copy(update={'annotations': {CLUSTERFILE_ANNOTATION: clusterfile}})

    def test_load_from_clusterfile_and_image(self, runner, plugin_cluster, paths):
        plugin_dir = paths.image_plugins
        plugin_dir.mkdir(parents=True)
        (plugin_dir / 'kernel.yaml').write_text(
            'kind: Plugin\nmetadata:\n  name: kernel\nspec:\n  type: SHELL\n  action: PostInstall\n'
            '  data: sysctl -p\n---\nkind: ConfigMap\n'
        )
        (plugin_dir / 'README.md').write_text('not a plugin')

        runner.load(plugin_cluster)

        assert [plugin.name for plugin in runner.plugins] == ['set-hostname', 'kernel']

    @pytest.mark.asyncio
    async def test_run_only_matching_phase_and_hosts(self, runner, client, plugin_cluster):
        runner.load(plugin_cluster)

        await runner.run(plugin_cluster, plugin_cluster.all_ips, PluginPhase.PRE_INIT)
        await runner.run(plugin_cluster, plugin_cluster.all_ips, PluginPhase.POST_INSTALL)

        assert sorted(client.commands) == [
            (MASTER0, 'hostnamectl set-hostname demo'),
            (MASTER1, 'hostnamectl set-hostname demo'),
            (MASTER2, 'hostnamectl set-hostname demo'),
        ]

    @pytest.mark.asyncio
    async def test_unknown_plugin_type(self, runner, cluster, paths):
        plugin_dir = paths.image_plugins
        plugin_dir.mkdir(parents=True)
        (plugin_dir / 'label.yml').write_text(
            'kind: Plugin\nmetadata:\n  name: label\nspec:\n  type: LABEL\n  action: PreGuest\n  data: a=b\n'
        )
        runner.load(cluster)

        with pytest.raises(ClusterConfigurationError, match='Plugin type not registered: LABEL'):
            await runner.run(cluster, cluster.all_ips, PluginPhase.PRE_GUEST)


class TestShellGuest:
    @pytest.mark.asyncio
    async def test_default_applies_manifests(self, client, cluster, paths):
        await ShellGuest(client, paths.data_dir).apply(cluster)

        assert client.commands == [
            (MASTER0, f'cd {paths.rootfs} && if [ -d manifests ]; then kubectl apply -f manifests; fi')
        ]

    @pytest.mark.asyncio
    async def test_image_commands(self, client, cluster, paths):
        cluster = cluster.model_copy(update={'cmd': ['kubectl apply -f calico.yaml', 'helm install app charts/app']})

        await ShellGuest(client, paths.data_dir).apply(cluster)

        assert client.commands_on(MASTER0) == [
            f'cd {paths.rootfs} && kubectl apply -f calico.yaml',
            f'cd {paths.rootfs} && helm install app charts/app',
        ]

    @pytest.mark.asyncio
    async def test_delete(self, client, cluster, paths):
        await ShellGuest(client, paths.data_dir).delete(cluster)

        assert client.ran(MASTER0, 'kubectl delete -f manifests --ignore-not-found')
