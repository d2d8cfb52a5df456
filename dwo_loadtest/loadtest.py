"""
DevWorkspace Operator load test orchestration
Setup, virtual-user execution, final cleanup and the threshold verdict
"""

import asyncio
import time
from typing import Dict, List, Optional

from .cleanup import FinalCleanup, SetupError, create_automount_resources, delete_automount_resources
from .config import Config
from .console import Colors, ComponentLogger
from .executor import RampingVUsExecutor, SharedIterationsExecutor, generate_load_test_stages
from .kube import KubeApiGateway, workers_for_vus
from .manifest import ManifestError, manifest_source_for
from .metrics import Counter, Gauge, MetricsAggregator, Trend
from .poller import (CREATE_COUNT, CREATE_DURATION, DELETE_DURATION, READY_COUNT, READY_DURATION,
                     READY_FAILED, STARTING, LifecyclePoller)
from .report import (CONTROLLER_SUMMARY_METRICS, WEBHOOK_SUMMARY_METRICS, append_csv_row,
                     build_summary_frame, csv_row, format_text_summary, write_json_summary)
from .sampler import PodGroup, ResourceMetricsSampler, etcd_pod_group, operator_pod_group
from .thresholds import CONTROLLER_THRESHOLDS, WEBHOOK_THRESHOLDS, evaluate_thresholds, thresholds_passed
from .watchers import BackgroundWatcher, EventWatcher, NullWatcher
from .webhook import WebhookLoadTest

OPENSHIFT_ROUTE_GROUP = 'route.openshift.io'

EXIT_OK = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_SETUP_FAILED = 3


class dwoLoadTestTools:
    """DevWorkspace Operator load test driven over the Kubernetes REST API"""

    def __init__(self, config: Config, gateway: Optional[KubeApiGateway] = None,
                 aggregator: Optional[MetricsAggregator] = None, console: Optional[ComponentLogger] = None,
                 gateway_factory=None, sleep=asyncio.sleep):
        config.validate()
        self.config = config
        self.console = console or ComponentLogger()
        self.aggregator = aggregator or MetricsAggregator()
        self.sleep = sleep
        self.gateway = gateway or self.setup_kubernetes_clients()
        self.gateway_factory = gateway_factory or self._gateway_for_token
        self.manifests = manifest_source_for(config.devworkspace_link)
        self.etcd_namespace = config.etcd_namespace or 'openshift-etcd'
        self.etcd_pod_name_pattern = config.etcd_pod_name_pattern or 'etcd'
        self.etcd_pod_selector = config.etcd_pod_selector or 'app=etcd'
        self.poller: Optional[LifecyclePoller] = None
        self.watcher: BackgroundWatcher = NullWatcher()

    def setup_kubernetes_clients(self) -> KubeApiGateway:
        """Build the API gateway from the configured endpoint and token"""
        api_server = self.config.resolve_api_server()
        gateway = KubeApiGateway.from_token(
            api_server, self.config.resolve_token(), verify_ssl=self.config.verify_ssl,
            in_cluster=self.config.in_cluster, request_timeout=self.config.request_timeout,
            max_workers=workers_for_vus(self.config.max_vus))
        self.console.log_info(f"Using Kubernetes API at {api_server}", "SETUP")
        return gateway

    def _gateway_for_token(self, token: str) -> KubeApiGateway:
        return KubeApiGateway.from_token(
            self.config.resolve_api_server(), token, verify_ssl=self.config.verify_ssl,
            in_cluster=False, request_timeout=self.config.request_timeout)

    async def detect_cluster_type(self):
        """Plain Kubernetes has no etcd pods to read; fall back to kube-proxy in kube-system"""
        try:
            groups = await self.gateway.get_api_group_names()
        except Exception as e:
            self.console.log_warn(f"Failed to detect cluster type: {e}, using defaults", "SETUP")
            return
        if OPENSHIFT_ROUTE_GROUP in groups:
            self.console.log_info("Detected OpenShift cluster", "SETUP")
            return
        self.etcd_namespace = self.config.etcd_namespace or 'kube-system'
        self.etcd_pod_name_pattern = self.config.etcd_pod_name_pattern or 'kube-proxy'
        self.etcd_pod_selector = self.config.etcd_pod_selector or 'k8s-app=kube-proxy'
        self.console.log_info(
            f"Detected Kubernetes cluster - using {self.etcd_namespace} namespace with "
            f"{self.etcd_pod_name_pattern}", "SETUP")

    def pod_groups(self) -> List[PodGroup]:
        return [
            operator_pod_group(self.config.operator_namespace, self.config.max_cpu_millicores,
                               self.config.max_memory_bytes),
            etcd_pod_group(self.etcd_namespace, self.etcd_pod_name_pattern, self.etcd_pod_selector),
        ]

    def register_metrics(self):
        """Declare the controller metrics so the summary lists them even when untouched"""
        for name in (CREATE_COUNT, READY_COUNT, READY_FAILED, STARTING,
                     'operator_cpu_violations', 'operator_mem_violations'):
            self.aggregator.register(name, Counter)
        for name in (CREATE_DURATION, READY_DURATION, DELETE_DURATION):
            self.aggregator.register(name, Trend)
        for name in ('operator_pod_restarts_total', 'etcd_pod_restarts_total'):
            self.aggregator.register(name, Gauge)

    async def setup(self):
        """One-time setup before the first iteration"""
        await self.detect_cluster_type()
        self.register_metrics()

        try:
            self.manifests.load()
            self.console.log_info(f"Using {self.manifests.describe()}", "SETUP")
        except ManifestError as e:
            self.console.log_error(f"{e}; every iteration will be aborted", "SETUP")

        if self.config.create_automount_resources:
            await create_automount_resources(self.gateway, self.config.load_test_namespace,
                                             self.config.secret_value_base64, self.console)

        sampler = ResourceMetricsSampler(self.gateway, self.aggregator, self.pod_groups(), self.console)
        self.poller = LifecyclePoller(
            self.gateway, self.aggregator, self.manifests, sampler=sampler,
            ready_timeout=self.config.ready_timeout, poll_interval=self.config.poll_interval,
            delete_after_ready=self.config.delete_after_ready, console=self.console, sleep=self.sleep)

        if self.config.watch_events and not self.config.use_separate_namespaces:
            self.watcher = EventWatcher(self.gateway.core_v1.list_namespaced_event,
                                        self.config.load_test_namespace, self.console)

    def namespace_for(self, vu_id: int, iteration: int) -> str:
        if self.config.use_separate_namespaces:
            return f"load-test-ns-{vu_id}-{iteration}"
        return self.config.load_test_namespace

    async def run_iteration(self, vu_id: int, iteration: int):
        """Body of one virtual-user iteration"""
        return await self.poller.run_iteration(
            vu_id, iteration, self.namespace_for(vu_id, iteration),
            create_namespace=self.config.use_separate_namespaces)

    def build_executor(self):
        if self.config.executor_mode == 'ramping-vus':
            stages = generate_load_test_stages(self.config.max_vus, self.config.test_duration_minutes)
            return RampingVUsExecutor(stages, graceful_ramp_down=self.config.graceful_ramp_down_seconds,
                                      max_iterations=self.config.max_devworkspaces, console=self.console)
        return SharedIterationsExecutor(self.config.max_vus, iterations=self.config.max_devworkspaces,
                                        max_duration=self.config.test_duration_seconds, console=self.console)

    async def final_cleanup(self):
        """Sweep every labelled resource once the main run is over"""
        if self.config.run_backup_test_hook:
            self.console.log_info(
                "Skipping final cleanup - backup testing hook will run after the load test completes", "CLEANUP")
            return
        cleanup = FinalCleanup(self.gateway, self.config.load_test_namespace,
                               self.config.use_separate_namespaces, console=self.console)
        try:
            await cleanup.run()
        except Exception as e:
            self.console.log_error(f"Cleanup failed: {e}", "CLEANUP")
        if self.config.create_automount_resources:
            await delete_automount_resources(self.gateway, self.config.load_test_namespace, self.console)

    async def run_controller_test(self):
        try:
            await self.setup()
            executor = self.build_executor()
            self.console.log_info(
                f"Starting {self.config.executor_mode} run with up to {self.config.max_vus} VUs", "MAIN")
            self.watcher.start()
            await executor.run(self.run_iteration)
        finally:
            self.watcher.stop()
            self.console.log_info("Running final cleanup after all DevWorkspace creation finished...", "MAIN")
            await self.final_cleanup()

    async def run_webhook_test(self):
        try:
            self.manifests.load()
        except ManifestError as e:
            self.console.log_error(f"{e}; every user will be skipped", "SETUP")
        users = self.config.load_users()
        scenario = WebhookLoadTest(
            users, self.gateway_factory, self.aggregator, self.manifests, self.config.load_test_namespace,
            self.config.webhook_namespace, ready_timeout=self.config.ready_timeout,
            poll_interval=self.config.poll_interval, console=self.console, sleep=self.sleep)
        self.console.log_info(f"Starting webhook load test with {len(users)} users", "MAIN")
        await scenario.run()

    def thresholds(self) -> Dict[str, List[str]]:
        return WEBHOOK_THRESHOLDS if self.config.scenario == 'webhook' else CONTROLLER_THRESHOLDS

    def summarize(self, elapsed: float) -> bool:
        """Evaluate thresholds, print and write the summary; returns the verdict"""
        results = evaluate_thresholds(self.thresholds(), self.aggregator)
        passed = thresholds_passed(results)
        allowed = WEBHOOK_SUMMARY_METRICS if self.config.scenario == 'webhook' else CONTROLLER_SUMMARY_METRICS
        df = build_summary_frame(self.aggregator, allowed)
        checks = self.aggregator.checks()

        print(format_text_summary(df, results, checks))
        for result in results:
            if not result.passed:
                self.console.log_error(f"Threshold breached: {result.describe()}", "THRESHOLDS")

        try:
            write_json_summary(self.config.summary_file, df, results, checks, passed,
                               extra={'scenario': self.config.scenario, 'elapsed_seconds': round(elapsed, 2)})
            if self.config.scenario == 'controller':
                mode = 'Separate' if self.config.use_separate_namespaces else 'Single'
                append_csv_row(self.config.csv_file, csv_row(self.aggregator, mode))
        except OSError as e:
            self.console.log_warn(f"Failed to write run outputs: {e}", "SUMMARY")
        return passed

    async def run(self) -> int:
        """Run the configured scenario and return the process exit code"""
        start_time = time.time()
        try:
            if self.config.scenario == 'webhook':
                await self.run_webhook_test()
            else:
                await self.run_controller_test()
        except SetupError as e:
            self.console.log_error(f"Setup failed: {e}", "SETUP")
            return EXIT_SETUP_FAILED
        finally:
            self.gateway.close()

        elapsed = time.time() - start_time
        passed = self.summarize(elapsed)
        color = Colors.GREEN if passed else Colors.RED
        verdict = 'PASSED' if passed else 'FAILED'
        self.console.log_info(f"{color}Load test {verdict}{Colors.NC} in {elapsed:.2f} seconds", "MAIN")
        return EXIT_OK if passed else EXIT_THRESHOLDS_FAILED
