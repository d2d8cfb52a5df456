"""Shared fixtures: an in-memory cluster standing in for the Kubernetes API"""

import copy
import json
from collections import defaultdict
from typing import Any, Dict, List, Optional

import pytest
from kubernetes.client.rest import ApiException

from dwo_loadtest.console import ComponentLogger
from dwo_loadtest.metrics import MetricsAggregator


def api_error(status: int, reason: str = None, body: Optional[Dict[str, Any]] = None) -> ApiException:
    error = ApiException(status=status, reason=reason)
    if body is not None:
        error.body = json.dumps(body)
    return error


class RawBody:
    """A GET response the client could not decode into an object"""

    def __init__(self, value):
        self.value = value


async def no_sleep(_seconds):
    return None


class FakeClock:
    """Monotonic clock that only moves when told to"""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeCluster:
    """Implements the gateway surface the engine uses, backed by dicts

    Failures are injected per method with `fail(method, error)`; a phase script
    per DevWorkspace name controls what successive GETs observe.
    """

    def __init__(self):
        self.devworkspaces: Dict[tuple, Dict[str, Any]] = {}
        self.phase_scripts: Dict[str, List[Any]] = {}
        self.default_phases: List[Any] = ['Running']
        self.pod_metrics: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.pods: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        self.namespaces: Dict[str, Dict[str, str]] = {}
        self.config_maps: Dict[tuple, Dict[str, Any]] = {}
        self.secrets: Dict[tuple, Dict[str, Any]] = {}
        self.api_groups = ['apps', 'route.openshift.io', 'workspace.devfile.io']
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.persistent_failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.closed = False

    # failure injection

    def fail(self, method: str, error: Exception, times: Optional[int] = 1):
        """Raise `error` from `method`; times=None makes it permanent"""
        if times is None:
            self.persistent_failures[method] = error
        else:
            self.failures[method].extend([error] * times)

    def _enter(self, method: str, *args):
        self.calls.append((method,) + args)
        if self.failures[method]:
            raise self.failures[method].pop(0)
        if method in self.persistent_failures:
            raise self.persistent_failures[method]

    def call_count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

    # DevWorkspaces

    async def create_devworkspace(self, namespace, body):
        self._enter('create_devworkspace', namespace, body['metadata']['name'])
        stored = copy.deepcopy(body)
        self.devworkspaces[(namespace, body['metadata']['name'])] = stored
        return stored

    async def get_devworkspace(self, namespace, name):
        self._enter('get_devworkspace', namespace, name)
        if (namespace, name) not in self.devworkspaces:
            raise api_error(404, 'Not Found')
        script = self.phase_scripts.setdefault(name, list(self.default_phases))
        step = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(step, Exception):
            raise step
        if isinstance(step, RawBody):
            return step.value
        body = copy.deepcopy(self.devworkspaces[(namespace, name)])
        body['status'] = {'phase': step} if step is not None else {}
        return body

    async def delete_devworkspace(self, namespace, name):
        self._enter('delete_devworkspace', namespace, name)
        if self.devworkspaces.pop((namespace, name), None) is None:
            raise api_error(404, 'Not Found')
        return {'status': 'Success'}

    async def list_devworkspaces(self, namespace=None, label_selector=None):
        self._enter('list_devworkspaces', namespace, label_selector)
        items = []
        for (ns, name), body in self.devworkspaces.items():
            if namespace and ns != namespace:
                continue
            phases = self.phase_scripts.get(name) or self.default_phases
            item = copy.deepcopy(body)
            item['status'] = {'phase': phases[-1]}
            items.append(item)
        return items

    async def delete_devworkspaces(self, namespace, label_selector):
        self._enter('delete_devworkspaces', namespace, label_selector)
        for key in [k for k in self.devworkspaces if k[0] == namespace]:
            del self.devworkspaces[key]
        return {}

    async def patch_devworkspace(self, namespace, name, patch):
        self._enter('patch_devworkspace', namespace, name)
        return {}

    # Pods and metrics

    async def list_pod_metrics(self, namespace, label_selector=None):
        self._enter('list_pod_metrics', namespace, label_selector)
        return copy.deepcopy(self.pod_metrics[namespace])

    async def list_pods(self, namespace, label_selector=None):
        self._enter('list_pods', namespace, label_selector)
        pods = self.pods[namespace]
        if label_selector and '=' in label_selector:
            key, value = label_selector.split('=', 1)
            pods = [p for p in pods if (p['metadata'].get('labels') or {}).get(key) == value]
        return copy.deepcopy(pods)

    async def patch_pod(self, namespace, name, patch):
        self._enter('patch_pod', namespace, name)
        return {}

    async def exec_in_pod(self, namespace, name, command):
        self._enter('exec_in_pod', namespace, name)
        return 'hello'

    # Namespaces and fixtures

    async def create_namespace(self, name, labels):
        self._enter('create_namespace', name)
        if name in self.namespaces:
            raise api_error(409, 'Conflict')
        self.namespaces[name] = dict(labels)
        return {}

    async def list_namespaces(self, label_selector):
        self._enter('list_namespaces', label_selector)
        key, value = label_selector.split('=', 1)
        return [name for name, labels in self.namespaces.items() if labels.get(key) == value]

    async def delete_namespace(self, name):
        self._enter('delete_namespace', name)
        if self.namespaces.pop(name, None) is None:
            raise api_error(404, 'Not Found')
        return {}

    async def create_config_map(self, namespace, body):
        self._enter('create_config_map', namespace)
        self.config_maps[(namespace, body['metadata']['name'])] = body

    async def delete_config_map(self, namespace, name):
        self._enter('delete_config_map', namespace, name)
        if self.config_maps.pop((namespace, name), None) is None:
            raise api_error(404, 'Not Found')

    async def create_secret(self, namespace, body):
        self._enter('create_secret', namespace)
        self.secrets[(namespace, body['metadata']['name'])] = body

    async def delete_secret(self, namespace, name):
        self._enter('delete_secret', namespace, name)
        if self.secrets.pop((namespace, name), None) is None:
            raise api_error(404, 'Not Found')

    async def get_api_group_names(self):
        self._enter('get_api_group_names')
        return list(self.api_groups)

    def close(self):
        self.closed = True


def pod_metrics_item(name: str, cpu: str, memory: str) -> Dict[str, Any]:
    return {'metadata': {'name': name}, 'containers': [{'name': 'manager', 'usage': {'cpu': cpu, 'memory': memory}}]}


def pod_item(name: str, restarts: int, labels: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    return {
        'metadata': {'name': name, 'labels': labels or {}},
        'status': {'containerStatuses': [{'name': 'manager', 'restartCount': restarts}]},
    }


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def aggregator():
    return MetricsAggregator()


@pytest.fixture
def console():
    return ComponentLogger(quiet=True)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def load_test_env(monkeypatch, tmp_path):
    """Minimal environment for an out-of-cluster run writing outputs to tmp_path"""
    env = {
        'KUBE_API': 'https://api.crc.testing:6443',
        'KUBE_TOKEN': 'sha256~token',
        'LOAD_TEST_NAMESPACE': 'loadtest-devworkspaces',
        'SUMMARY_FILE': str(tmp_path / 'summary.json'),
        'CSV_FILE': str(tmp_path / 'results.csv'),
        'LOG_FILE': str(tmp_path / 'run.log'),
    }
    for key, value in env.items():
        monkeypatch.setenv(key, value)
    for key in ('IN_CLUSTER', 'SCENARIO', 'EXECUTOR_MODE', 'MAX_VUS', 'MAX_DEVWORKSPACES',
                'SEPARATE_NAMESPACES', 'DEVWORKSPACE_LINK', 'LOAD_TEST_USERS_JSON',
                'DELETE_DEVWORKSPACE_AFTER_READY', 'CREATE_AUTOMOUNT_RESOURCES',
                'RUN_BACKUP_TEST_HOOK', 'WATCH_EVENTS', 'ETCD_NAMESPACE',
                'ETCD_POD_NAME_PATTERN', 'ETCD_POD_SELECTOR'):
        monkeypatch.delenv(key, raising=False)
    return env
