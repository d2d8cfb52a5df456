import pytest

from conftest import api_error
from dwo_loadtest.cleanup import (AUTOMOUNT_CONFIGMAP_NAME, AUTOMOUNT_SECRET_NAME, FinalCleanup, SetupError,
                                  automount_configmap, automount_secret, create_automount_resources,
                                  delete_automount_resources)
from dwo_loadtest.manifest import BuiltInManifest

NS = 'loadtest-devworkspaces'
LABELS = {'load-test': 'test-type'}


def test_automount_fixtures_are_mounted_into_workspaces():
    configmap = automount_configmap(NS)
    assert configmap['metadata']['labels']['controller.devfile.io/mount-to-devworkspace'] == 'true'
    assert configmap['metadata']['annotations']['controller.devfile.io/mount-as'] == 'file'
    secret = automount_secret(NS, 'c2VjcmV0')
    assert secret['data'] == {'secret.key': 'c2VjcmV0'}
    assert secret['metadata']['namespace'] == NS


@pytest.mark.asyncio
async def test_create_automount_resources(cluster, console):
    await create_automount_resources(cluster, NS, 'dGVzdA==', console)
    assert (NS, AUTOMOUNT_CONFIGMAP_NAME) in cluster.config_maps
    assert (NS, AUTOMOUNT_SECRET_NAME) in cluster.secrets


@pytest.mark.asyncio
async def test_existing_automount_resources_are_reused(cluster, console):
    cluster.fail('create_config_map', api_error(409))
    cluster.fail('create_secret', api_error(409))
    await create_automount_resources(cluster, NS, 'dGVzdA==', console)


@pytest.mark.asyncio
async def test_forbidden_automount_creation_raises(cluster, console):
    cluster.fail('create_secret', api_error(403))
    with pytest.raises(SetupError, match='Secret'):
        await create_automount_resources(cluster, NS, 'dGVzdA==', console)


@pytest.mark.asyncio
async def test_delete_automount_resources_tolerates_missing(cluster, console, caplog):
    with caplog.at_level('WARNING', logger='dwo_loadtest'):
        await delete_automount_resources(cluster, NS, console)
    assert caplog.text == ''
    assert cluster.call_count('delete_config_map') == 1
    assert cluster.call_count('delete_secret') == 1


@pytest.mark.asyncio
async def test_cleanup_deletes_labelled_devworkspaces(cluster, console):
    source = BuiltInManifest()
    for vu in range(1, 4):
        await cluster.create_devworkspace(NS, source.generate(vu, 0, NS))

    assert await FinalCleanup(cluster, NS, console=console).run()
    assert ('delete_devworkspaces', NS, 'load-test=test-type') in cluster.calls
    assert not cluster.devworkspaces


@pytest.mark.asyncio
async def test_cleanup_failure_is_reported_not_raised(cluster, console):
    cluster.fail('delete_devworkspaces', api_error(500))
    assert not await FinalCleanup(cluster, NS, console=console).run()


@pytest.mark.asyncio
async def test_cleanup_deletes_labelled_namespaces(cluster, console):
    for i in range(25):
        cluster.namespaces[f"load-test-ns-{i}-0"] = dict(LABELS)
    cluster.namespaces['openshift-operators'] = {}

    cleanup = FinalCleanup(cluster, NS, use_separate_namespaces=True, max_concurrent=5, console=console)
    assert await cleanup.run()
    assert list(cluster.namespaces) == ['openshift-operators']
    assert cluster.call_count('delete_namespace') == 25


@pytest.mark.asyncio
async def test_namespace_already_gone_is_success(cluster, console):
    cluster.namespaces['load-test-ns-1-0'] = dict(LABELS)
    cluster.fail('delete_namespace', api_error(404))
    assert await FinalCleanup(cluster, NS, use_separate_namespaces=True, console=console).run()


@pytest.mark.asyncio
async def test_namespace_delete_failure_is_counted(cluster, console):
    cluster.namespaces['load-test-ns-1-0'] = dict(LABELS)
    cluster.namespaces['load-test-ns-2-0'] = dict(LABELS)
    cluster.fail('delete_namespace', api_error(403))
    assert not await FinalCleanup(cluster, NS, use_separate_namespaces=True, console=console).run()
    assert 'load-test-ns-2-0' not in cluster.namespaces or 'load-test-ns-1-0' not in cluster.namespaces
