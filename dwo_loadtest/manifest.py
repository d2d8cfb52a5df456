"""
DevWorkspace manifest generation
The base manifest is either built in or fetched once from an external URL
"""

import copy
import json
from typing import Any, Dict, Optional

import urllib3
import yaml

from .kube import DW_GROUP, DW_VERSION, LOAD_TEST_LABEL_KEY, LOAD_TEST_LABEL_VALUE

DEFAULT_NAME_PREFIX = 'dw-test'


class ManifestError(Exception):
    """Raised when a manifest cannot be produced for an iteration"""


def devworkspace_name(vu_id: int, iteration: int, prefix: str = DEFAULT_NAME_PREFIX) -> str:
    return f"{prefix}-{vu_id}-{iteration}"


class ManifestSource:
    """Base manifest provider, resolved once per run"""
    name_prefix = DEFAULT_NAME_PREFIX

    def load(self):
        """Resolve the base manifest; nothing to fetch by default"""

    def describe(self) -> str:
        return self.__class__.__name__

    def base_manifest(self) -> Dict[str, Any]:
        raise NotImplementedError

    def generate(self, vu_id: int, iteration: int, namespace: str) -> Dict[str, Any]:
        """Return a ready-to-submit manifest for one iteration"""
        manifest = copy.deepcopy(self.base_manifest())
        metadata = manifest.setdefault('metadata', {})
        metadata['name'] = devworkspace_name(vu_id, iteration, self.name_prefix)
        metadata['namespace'] = namespace
        metadata['labels'] = {LOAD_TEST_LABEL_KEY: LOAD_TEST_LABEL_VALUE}
        manifest.setdefault('spec', {})['started'] = True
        return manifest


class BuiltInManifest(ManifestSource):
    """Opinionated minimal DevWorkspace: ephemeral storage and one sleeping container"""

    image = 'registry.access.redhat.com/ubi9/ubi-micro:9.6-1752751762'

    def base_manifest(self) -> Dict[str, Any]:
        return {
            'apiVersion': f"{DW_GROUP}/{DW_VERSION}",
            'kind': 'DevWorkspace',
            'metadata': {
                'name': 'minimal-dw',
                'labels': {LOAD_TEST_LABEL_KEY: LOAD_TEST_LABEL_VALUE},
            },
            'spec': {
                'started': True,
                'template': {
                    'attributes': {
                        'controller.devfile.io/storage-type': 'ephemeral',
                    },
                    'components': [{
                        'name': 'dev',
                        'container': {
                            'image': self.image,
                            'command': ['sleep', '3600'],
                            'imagePullPolicy': 'IfNotPresent',
                            'memoryLimit': '64Mi',
                            'memoryRequest': '32Mi',
                            'cpuLimit': '200m',
                            'cpuRequest': '100m',
                        },
                    }],
                },
            },
        }

    def describe(self) -> str:
        return 'built-in minimal DevWorkspace'


class ExternalManifest(ManifestSource):
    """DevWorkspace fetched from a URL; JSON or YAML"""

    def __init__(self, url: str, http: Optional[urllib3.PoolManager] = None, timeout: float = 30.0):
        self.url = url
        self.http = http or urllib3.PoolManager()
        self.timeout = timeout
        self._manifest: Optional[Dict[str, Any]] = None
        self._error: Optional[ManifestError] = None
        self._loaded = False

    def load(self):
        """Fetch and parse the manifest; a failure is remembered, not retried"""
        if self._loaded:
            return
        self._loaded = True
        try:
            self._manifest = self._fetch()
        except ManifestError as e:
            self._error = e
            raise

    def _fetch(self) -> Dict[str, Any]:
        try:
            response = self.http.request('GET', self.url, timeout=self.timeout)
        except urllib3.exceptions.HTTPError as e:
            raise ManifestError(f"[DW CREATE] Failed to fetch content from {self.url}: {e}") from e

        if response.status != 200:
            raise ManifestError(
                f"[DW CREATE] Failed to fetch content from {self.url}, got {response.status}")

        text = response.data.decode('utf-8', errors='replace')
        try:
            manifest = json.loads(text)
        except json.JSONDecodeError:
            try:
                manifest = yaml.safe_load(text)
            except yaml.YAMLError as e:
                raise ManifestError(f"[DW CREATE] Failed to parse manifest: {text[:200]}: {e}") from e

        if not isinstance(manifest, dict):
            raise ManifestError(f"[DW CREATE] Manifest at {self.url} is not an object: {text[:200]}")
        return manifest

    def base_manifest(self) -> Dict[str, Any]:
        if not self._loaded:
            self.load()
        if self._error is not None:
            raise ManifestError(str(self._error))
        return self._manifest

    def describe(self) -> str:
        return f"external DevWorkspace from {self.url}"


def manifest_source_for(link: str) -> ManifestSource:
    return ExternalManifest(link) if link else BuiltInManifest()
