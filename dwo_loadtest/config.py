"""
Load test configuration
Values come from the environment (optionally a .env file) and can be
overridden from the command line
"""

import json
import os
from typing import Any, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv

IN_CLUSTER_API_SERVER = 'https://kubernetes.default.svc'
SERVICE_ACCOUNT_TOKEN_PATH = '/var/run/secrets/kubernetes.io/serviceaccount/token'

EXECUTOR_MODES = ('shared-iterations', 'ramping-vus')
SCENARIOS = ('controller', 'webhook')


class ConfigError(Exception):
    """Raised when a required configuration input is missing or invalid"""


def _env_bool(name: str, default: str = 'false') -> bool:
    return os.getenv(name, default).lower() == 'true'


class Config:
    """Configuration class with comprehensive defaults"""
    def __init__(self, load_env_file: bool = True):
        if load_env_file:
            load_dotenv(find_dotenv(usecwd=True))

        # API access
        self.in_cluster = _env_bool('IN_CLUSTER')
        self.api_server = os.getenv('KUBE_API', '')
        self.token = os.getenv('KUBE_TOKEN', '')
        self.verify_ssl = _env_bool('KUBE_VERIFY_SSL')
        self.request_timeout = int(os.getenv('REQUEST_TIMEOUT_SECONDS', '30'))

        # Namespaces
        self.load_test_namespace = os.getenv('LOAD_TEST_NAMESPACE', 'loadtest-devworkspaces')
        self.use_separate_namespaces = _env_bool('SEPARATE_NAMESPACES')
        self.operator_namespace = os.getenv('DWO_NAMESPACE', 'openshift-operators')
        self.webhook_namespace = os.getenv('WEBHOOK_NAMESPACE', 'openshift-operators')

        # Datastore pods; None means "not set explicitly" so cluster detection may change it
        self.etcd_namespace: Optional[str] = os.getenv('ETCD_NAMESPACE')
        self.etcd_pod_name_pattern: Optional[str] = os.getenv('ETCD_POD_NAME_PATTERN')
        self.etcd_pod_selector: Optional[str] = os.getenv('ETCD_POD_SELECTOR')

        # Load shape
        self.scenario = os.getenv('SCENARIO', 'controller')
        self.executor_mode = os.getenv('EXECUTOR_MODE', 'shared-iterations')
        self.max_vus = int(os.getenv('MAX_VUS', '50'))
        self.max_devworkspaces = int(os.getenv('MAX_DEVWORKSPACES', '-1'))
        self.test_duration_minutes = float(os.getenv('TEST_DURATION_MINUTES', '180'))
        self.graceful_ramp_down_seconds = float(os.getenv('GRACEFUL_RAMP_DOWN_SECONDS', '60'))

        # DevWorkspace lifecycle
        self.ready_timeout = int(os.getenv('DEV_WORKSPACE_READY_TIMEOUT_IN_SECONDS', '600'))
        self.poll_interval = int(os.getenv('POLL_INTERVAL_SECONDS', '10'))
        self.delete_after_ready = _env_bool('DELETE_DEVWORKSPACE_AFTER_READY')
        self.devworkspace_link = os.getenv('DEVWORKSPACE_LINK', '')

        # Fixtures and hooks
        self.create_automount_resources = _env_bool('CREATE_AUTOMOUNT_RESOURCES')
        self.secret_value_base64 = os.getenv('SECRET_VALUE_BASE64', 'dGVzdA==')
        self.run_backup_test_hook = _env_bool('RUN_BACKUP_TEST_HOOK')
        self.watch_events = _env_bool('WATCH_EVENTS')

        # Operator ceilings
        self.max_cpu_millicores = int(os.getenv('MAX_CPU_MILLICORES', '250'))
        self.max_memory_mb = int(os.getenv('MAX_MEMORY_MB', '200'))

        # Webhook scenario users
        self.users_json = os.getenv('LOAD_TEST_USERS_JSON', '')

        # Outputs
        self.summary_file = os.getenv('SUMMARY_FILE', 'devworkspace-load-test-summary.json')
        self.csv_file = os.getenv('CSV_FILE', 'load_test_results.csv')
        self.log_file = os.getenv('LOG_FILE', 'dwo_load_test.log')
        self.log_level = os.getenv('LOG_LEVEL', 'INFO')

    @property
    def max_memory_bytes(self) -> int:
        return self.max_memory_mb * 1024 * 1024

    @property
    def test_duration_seconds(self) -> float:
        return self.test_duration_minutes * 60

    def resolve_api_server(self) -> str:
        return IN_CLUSTER_API_SERVER if self.in_cluster else self.api_server

    def resolve_token(self) -> str:
        """Return the bearer token, reading the service account token in-cluster"""
        if self.in_cluster and not self.token:
            try:
                with open(SERVICE_ACCOUNT_TOKEN_PATH, 'r') as f:
                    return f.read().strip()
            except OSError as e:
                raise ConfigError(f"Cannot read service account token: {e}") from e
        return self.token

    def load_users(self) -> List[Dict[str, Any]]:
        """Parse the webhook scenario user list"""
        if not self.users_json:
            raise ConfigError('LOAD_TEST_USERS_JSON environment variable is not set')
        try:
            users = json.loads(self.users_json)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Failed to parse LOAD_TEST_USERS_JSON: {e}") from e
        if not isinstance(users, list) or not all(
                isinstance(u, dict) and u.get('user') and u.get('token') for u in users):
            raise ConfigError("LOAD_TEST_USERS_JSON must be a list of {\"user\": ..., \"token\": ...} objects")
        return users

    def validate(self):
        """Fail fast before any iteration starts"""
        if not self.in_cluster:
            if not self.api_server:
                raise ConfigError('KUBE_API env var is required when not running in-cluster')
            if not self.token and self.scenario != 'webhook':
                raise ConfigError('KUBE_TOKEN env var is required when not running in-cluster')
        if self.scenario not in SCENARIOS:
            raise ConfigError(f"Unknown scenario: {self.scenario}. Use one of {', '.join(SCENARIOS)}")
        if self.executor_mode not in EXECUTOR_MODES:
            raise ConfigError(
                f"Unknown executor mode: {self.executor_mode}. Use 'shared-iterations' or 'ramping-vus'")
        if self.max_vus <= 0:
            raise ConfigError('MAX_VUS must be positive')
        if self.poll_interval <= 0 or self.ready_timeout <= 0:
            raise ConfigError('Ready timeout and poll interval must be positive')
        if self.test_duration_minutes <= 0:
            raise ConfigError('TEST_DURATION_MINUTES must be positive')
        if self.scenario == 'webhook':
            self.load_users()
