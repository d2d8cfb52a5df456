"""
Run fixtures and the final cleanup sweep
Cleanup is best effort: failures are logged and never change the verdict
"""

import asyncio
from typing import Dict, Optional

from kubernetes.client.rest import ApiException

from .console import ComponentLogger
from .kube import LOAD_TEST_LABEL_SELECTOR

AUTOMOUNT_CONFIGMAP_NAME = 'dwo-load-test-automount-configmap'
AUTOMOUNT_SECRET_NAME = 'dwo-load-test-automount-secret'

DELETE_OK = (200, 202, 404)


class SetupError(Exception):
    """Raised when a run fixture cannot be created"""


def automount_configmap(namespace: str) -> Dict:
    return {
        'apiVersion': 'v1',
        'kind': 'ConfigMap',
        'metadata': {
            'name': AUTOMOUNT_CONFIGMAP_NAME,
            'namespace': namespace,
            'labels': {
                'controller.devfile.io/mount-to-devworkspace': 'true',
                'controller.devfile.io/watch-configmap': 'true',
            },
            'annotations': {
                'controller.devfile.io/mount-path': '/etc/config/dwo-load-test-configmap',
                'controller.devfile.io/mount-access-mode': '0644',
                'controller.devfile.io/mount-as': 'file',
            },
        },
        'data': {'test.key': 'test-value'},
    }


def automount_secret(namespace: str, value_base64: str) -> Dict:
    return {
        'apiVersion': 'v1',
        'kind': 'Secret',
        'metadata': {
            'name': AUTOMOUNT_SECRET_NAME,
            'namespace': namespace,
            'labels': {
                'controller.devfile.io/mount-to-devworkspace': 'true',
                'controller.devfile.io/watch-secret': 'true',
            },
            'annotations': {
                'controller.devfile.io/mount-path': '/etc/secret/dwo-load-test-secret',
                'controller.devfile.io/mount-as': 'file',
            },
        },
        'type': 'Opaque',
        'data': {'secret.key': value_base64},
    }


async def create_automount_resources(gateway, namespace: str, secret_value_base64: str,
                                     console: Optional[ComponentLogger] = None):
    """Create the automount ConfigMap and Secret; an existing one is reused"""
    console = console or ComponentLogger()
    fixtures = [
        ('ConfigMap', AUTOMOUNT_CONFIGMAP_NAME, gateway.create_config_map, automount_configmap(namespace)),
        ('Secret', AUTOMOUNT_SECRET_NAME, gateway.create_secret, automount_secret(namespace, secret_value_base64)),
    ]
    for kind, name, create, body in fixtures:
        try:
            await create(namespace, body)
        except ApiException as e:
            if e.status != 409:
                raise SetupError(f"Failed to create automount {kind}: {e.status} - {e.body}") from e
        console.log_info(f"Created automount {kind} : {name}", "SETUP")


async def delete_automount_resources(gateway, namespace: str, console: Optional[ComponentLogger] = None):
    console = console or ComponentLogger()
    for kind, name, delete in (('ConfigMap', AUTOMOUNT_CONFIGMAP_NAME, gateway.delete_config_map),
                               ('Secret', AUTOMOUNT_SECRET_NAME, gateway.delete_secret)):
        try:
            await delete(namespace, name)
        except ApiException as e:
            if e.status not in DELETE_OK:
                console.log_warn(f"Failed to delete {kind} {name}: {e.status}", "CLEANUP")


class FinalCleanup:
    """Deletes everything carrying the load test label once the main run is over"""

    def __init__(self, gateway, namespace: str, use_separate_namespaces: bool = False,
                 max_concurrent: int = 10, console: Optional[ComponentLogger] = None):
        self.gateway = gateway
        self.namespace = namespace
        self.use_separate_namespaces = use_separate_namespaces
        self.max_concurrent = max_concurrent
        self.console = console or ComponentLogger()

    async def run(self) -> bool:
        """Returns True when every delete succeeded"""
        if self.use_separate_namespaces:
            return await self.delete_all_separate_namespaces()
        return await self.delete_all_devworkspaces()

    async def delete_all_devworkspaces(self) -> bool:
        self.console.log_info(
            f"Deleting all DevWorkspaces in {self.namespace} containing label {LOAD_TEST_LABEL_SELECTOR}",
            "CLEANUP")
        try:
            await self.gateway.delete_devworkspaces(self.namespace, LOAD_TEST_LABEL_SELECTOR)
        except ApiException as e:
            self.console.log_error(f"Failed to delete DevWorkspaces: {e.status}", "CLEANUP")
            return False
        except Exception as e:
            self.console.log_error(f"Failed to delete DevWorkspaces: {e}", "CLEANUP")
            return False
        return True

    async def delete_all_separate_namespaces(self) -> bool:
        self.console.log_info(f"Deleting all Namespaces containing label {LOAD_TEST_LABEL_SELECTOR}", "CLEANUP")
        try:
            namespaces = await self.gateway.list_namespaces(LOAD_TEST_LABEL_SELECTOR)
        except ApiException as e:
            self.console.log_error(f"Failed to list Namespaces: {e.status}", "CLEANUP")
            return False
        except Exception as e:
            self.console.log_error(f"Failed to list Namespaces: {e}", "CLEANUP")
            return False

        semaphore = asyncio.Semaphore(self.max_concurrent)

        async def delete_namespace_with_semaphore(ns_name: str) -> bool:
            async with semaphore:
                try:
                    await self.gateway.delete_namespace(ns_name)
                    return True
                except ApiException as e:
                    if e.status in DELETE_OK:
                        return True
                    self.console.log_warn(f"Failed to delete Namespace {ns_name}: {e.status}", "CLEANUP")
                    return False
                except Exception as e:
                    self.console.log_warn(f"Failed to delete Namespace {ns_name}: {e}", "CLEANUP")
                    return False

        results = await asyncio.gather(*(delete_namespace_with_semaphore(ns) for ns in namespaces))
        successful = sum(1 for result in results if result)
        self.console.log_info(f"Deleted {successful}/{len(namespaces)} namespaces", "CLEANUP")
        return successful == len(namespaces)
