"""
Async gateway over the Kubernetes REST API
Blocking kubernetes-client calls run on a thread pool owned by the gateway, sized so that
every virtual user can have its calls in flight at once
"""

import asyncio
import functools
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from kubernetes import client, config

DW_GROUP = 'workspace.devfile.io'
DW_VERSION = 'v1alpha2'
DW_PLURAL = 'devworkspaces'

METRICS_GROUP = 'metrics.k8s.io'
METRICS_VERSION = 'v1beta1'

LOAD_TEST_LABEL_KEY = 'load-test'
LOAD_TEST_LABEL_VALUE = 'test-type'
LOAD_TEST_LABEL_SELECTOR = f"{LOAD_TEST_LABEL_KEY}={LOAD_TEST_LABEL_VALUE}"

# one lifecycle call plus a metrics and a pod listing for the operator and etcd groups
CALLS_PER_VU = 5
DEFAULT_MAX_WORKERS = 8


def workers_for_vus(max_vus: int) -> int:
    return max(DEFAULT_MAX_WORKERS, max_vus * CALLS_PER_VU)


def build_api_client(api_server: str, token: str, verify_ssl: bool = False,
                     in_cluster: bool = False, pool_maxsize: Optional[int] = None) -> client.ApiClient:
    """Create an ApiClient authenticated with a bearer token"""
    k8s_conf = client.Configuration()
    if in_cluster:
        config.load_incluster_config(client_configuration=k8s_conf)
    else:
        k8s_conf.host = api_server.rstrip('/')
    if token:
        k8s_conf.api_key = {'authorization': token}
        k8s_conf.api_key_prefix = {'authorization': 'Bearer'}
    if not verify_ssl:
        # trust self-signed certs like in CRC
        k8s_conf.verify_ssl = False
        k8s_conf.assert_hostname = False
    if pool_maxsize:
        k8s_conf.connection_pool_maxsize = pool_maxsize
    return client.ApiClient(configuration=k8s_conf)


class KubeApiGateway:
    """The engine's only boundary to the cluster"""

    def __init__(self, api_client: client.ApiClient, request_timeout: int = 30,
                 max_workers: int = DEFAULT_MAX_WORKERS):
        self.api_client = api_client
        self.request_timeout = request_timeout
        self.max_workers = max_workers
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='kube-api')
        self.core_v1 = client.CoreV1Api(api_client)
        self.custom_objects = client.CustomObjectsApi(api_client)
        self.apis = client.ApisApi(api_client)

    @classmethod
    def from_token(cls, api_server: str, token: str, verify_ssl: bool = False,
                   in_cluster: bool = False, request_timeout: int = 30,
                   max_workers: int = DEFAULT_MAX_WORKERS) -> 'KubeApiGateway':
        api_client = build_api_client(api_server, token, verify_ssl, in_cluster, pool_maxsize=max_workers)
        return cls(api_client, request_timeout, max_workers=max_workers)

    def _to_dict(self, obj: Any) -> Dict[str, Any]:
        return self.api_client.sanitize_for_serialization(obj)

    async def _call(self, method, **kwargs):
        kwargs.setdefault('_request_timeout', self.request_timeout)
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(method, **kwargs))

    # DevWorkspaces

    async def create_devworkspace(self, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        return await self._call(
            self.custom_objects.create_namespaced_custom_object,
            group=DW_GROUP, version=DW_VERSION, namespace=namespace, plural=DW_PLURAL, body=body
        )

    async def get_devworkspace(self, namespace: str, name: str) -> Any:
        return await self._call(
            self.custom_objects.get_namespaced_custom_object,
            group=DW_GROUP, version=DW_VERSION, namespace=namespace, plural=DW_PLURAL, name=name
        )

    async def delete_devworkspace(self, namespace: str, name: str) -> Any:
        return await self._call(
            self.custom_objects.delete_namespaced_custom_object,
            group=DW_GROUP, version=DW_VERSION, namespace=namespace, plural=DW_PLURAL, name=name
        )

    async def list_devworkspaces(self, namespace: Optional[str] = None,
                                 label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        """List DevWorkspaces in one namespace, or across the cluster when namespace is None"""
        kwargs = {'group': DW_GROUP, 'version': DW_VERSION, 'plural': DW_PLURAL}
        if label_selector:
            kwargs['label_selector'] = label_selector
        if namespace:
            result = await self._call(self.custom_objects.list_namespaced_custom_object,
                                      namespace=namespace, **kwargs)
        else:
            result = await self._call(self.custom_objects.list_cluster_custom_object, **kwargs)
        return result.get('items', []) if isinstance(result, dict) else []

    async def delete_devworkspaces(self, namespace: str, label_selector: str) -> Any:
        return await self._call(
            self.custom_objects.delete_collection_namespaced_custom_object,
            group=DW_GROUP, version=DW_VERSION, namespace=namespace, plural=DW_PLURAL,
            label_selector=label_selector
        )

    async def patch_devworkspace(self, namespace: str, name: str, patch: List[Dict[str, Any]]) -> Any:
        """Apply a JSON patch (list body) to a DevWorkspace"""
        return await self._call(
            self.custom_objects.patch_namespaced_custom_object,
            group=DW_GROUP, version=DW_VERSION, namespace=namespace, plural=DW_PLURAL,
            name=name, body=patch
        )

    # Pods and metrics

    async def list_pod_metrics(self, namespace: str,
                               label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {}
        if label_selector:
            kwargs['label_selector'] = label_selector
        result = await self._call(
            self.custom_objects.list_namespaced_custom_object,
            group=METRICS_GROUP, version=METRICS_VERSION, namespace=namespace, plural='pods', **kwargs
        )
        return result.get('items', []) if isinstance(result, dict) else []

    async def list_pods(self, namespace: str, label_selector: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {}
        if label_selector:
            kwargs['label_selector'] = label_selector
        pods = await self._call(self.core_v1.list_namespaced_pod, namespace=namespace, **kwargs)
        return self._to_dict(pods).get('items', [])

    async def patch_pod(self, namespace: str, name: str, patch: List[Dict[str, Any]]) -> Any:
        return await self._call(self.core_v1.patch_namespaced_pod, name=name, namespace=namespace, body=patch)

    async def exec_in_pod(self, namespace: str, name: str, command: List[str]) -> Any:
        """Plain REST exec request; only the authorization outcome matters"""
        return await self._call(
            self.core_v1.connect_post_namespaced_pod_exec,
            name=name, namespace=namespace, command=command, stdout=True
        )

    # Namespaces and fixtures

    async def create_namespace(self, name: str, labels: Dict[str, str]) -> Any:
        body = client.V1Namespace(metadata=client.V1ObjectMeta(name=name, labels=labels))
        return await self._call(self.core_v1.create_namespace, body=body)

    async def list_namespaces(self, label_selector: str) -> List[str]:
        namespaces = await self._call(self.core_v1.list_namespace, label_selector=label_selector)
        return [ns.metadata.name for ns in namespaces.items]

    async def delete_namespace(self, name: str) -> Any:
        return await self._call(self.core_v1.delete_namespace, name=name)

    async def create_config_map(self, namespace: str, body: Dict[str, Any]) -> Any:
        return await self._call(self.core_v1.create_namespaced_config_map, namespace=namespace, body=body)

    async def delete_config_map(self, namespace: str, name: str) -> Any:
        return await self._call(self.core_v1.delete_namespaced_config_map, name=name, namespace=namespace)

    async def create_secret(self, namespace: str, body: Dict[str, Any]) -> Any:
        return await self._call(self.core_v1.create_namespaced_secret, namespace=namespace, body=body)

    async def delete_secret(self, namespace: str, name: str) -> Any:
        return await self._call(self.core_v1.delete_namespaced_secret, name=name, namespace=namespace)

    async def get_api_group_names(self) -> List[str]:
        groups = await self._call(self.apis.get_api_versions)
        return [g.name for g in (groups.groups or [])]

    def close(self):
        self.executor.shutdown(wait=False)
        self.api_client.close()
