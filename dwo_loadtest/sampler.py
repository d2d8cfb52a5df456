"""
Resource metrics sampling for operator, webhook and etcd pods
Sampling is best effort: any API failure skips the tick for that pod group
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kubernetes.client.rest import ApiException

from .console import ComponentLogger
from .metrics import MetricsAggregator
from .units import bytes_to_mib, parse_cpu_to_millicores, parse_memory_to_bytes


@dataclass
class PodGroup:
    """A set of pods whose usage is tracked under a common metric prefix"""
    label: str
    namespace: str
    name_pattern: str
    cpu_trend: str
    memory_trend: str
    metrics_selector: Optional[str] = None
    restart_selector: Optional[str] = None
    restart_gauge: Optional[str] = None
    max_cpu_millicores: Optional[int] = None
    max_memory_bytes: Optional[int] = None
    cpu_violations: Optional[str] = None
    memory_violations: Optional[str] = None

    @property
    def metrics_check(self) -> str:
        return f"Fetched {self.label} pod metrics successfully"


def operator_pod_group(namespace: str, max_cpu_millicores: int, max_memory_bytes: int) -> PodGroup:
    return PodGroup(
        label='operator',
        namespace=namespace,
        name_pattern='devworkspace-controller',
        cpu_trend='average_operator_cpu',
        memory_trend='average_operator_memory',
        restart_selector='app.kubernetes.io/name=devworkspace-controller',
        restart_gauge='operator_pod_restarts_total',
        max_cpu_millicores=max_cpu_millicores,
        max_memory_bytes=max_memory_bytes,
        cpu_violations='operator_cpu_violations',
        memory_violations='operator_mem_violations',
    )


def etcd_pod_group(namespace: str, name_pattern: str, selector: str) -> PodGroup:
    return PodGroup(
        label='etcd',
        namespace=namespace,
        name_pattern=name_pattern,
        cpu_trend='average_etcd_cpu',
        memory_trend='average_etcd_memory',
        restart_selector=selector,
        restart_gauge='etcd_pod_restarts_total',
    )


def webhook_pod_group(namespace: str) -> PodGroup:
    return PodGroup(
        label='webhook',
        namespace=namespace,
        name_pattern='devworkspace-webhook-server',
        cpu_trend='average_webhook_cpu_millicores',
        memory_trend='average_webhook_memory_mb',
        metrics_selector='app.kubernetes.io/name=devworkspace-webhook-server',
    )


class ResourceMetricsSampler:
    """Folds point-in-time pod usage into the run aggregates"""

    def __init__(self, gateway, aggregator: MetricsAggregator, groups: List[PodGroup],
                 console: Optional[ComponentLogger] = None):
        self.gateway = gateway
        self.aggregator = aggregator
        self.groups = list(groups)
        self.console = console or ComponentLogger()

    async def sample(self):
        """Sample every configured pod group once"""
        for group in self.groups:
            await self.sample_group(group)

    async def sample_group(self, group: PodGroup) -> int:
        """Sample one pod group; returns the number of pods folded in"""
        try:
            items = await self.gateway.list_pod_metrics(group.namespace, group.metrics_selector)
        except ApiException as e:
            self.aggregator.check(group.metrics_check, False)
            self.console.log_warn(
                f"Failed to fetch {group.label} pod metrics in {group.namespace}: {e.status} {e.reason}",
                "METRICS")
            return 0
        except Exception as e:
            self.aggregator.check(group.metrics_check, False)
            self.console.log_warn(f"Unexpected error fetching {group.label} pod metrics: {e}", "METRICS")
            return 0

        self.aggregator.check(group.metrics_check, True)
        pods = [p for p in items if group.name_pattern in ((p.get('metadata') or {}).get('name') or '')]
        if not pods:
            if items:
                pod_names = ', '.join((p.get('metadata') or {}).get('name', '?') for p in items)
                self.console.log_warn(
                    f"No pods found matching pattern '{group.name_pattern}' in namespace "
                    f"'{group.namespace}'. Available pods: {pod_names}", "METRICS")
            else:
                self.console.log_warn(f"No pods found in namespace '{group.namespace}'", "METRICS")

        folded = 0
        for pod in pods:
            if self._fold_pod(group, pod):
                folded += 1

        if group.restart_gauge:
            await self.record_restarts(group)
        return folded

    def _fold_pod(self, group: PodGroup, pod: Dict[str, Any]) -> bool:
        name = pod['metadata']['name']
        containers = pod.get('containers') or []
        if not containers:
            self.console.log_warn(f"Pod {name} has no containers", "METRICS")
            return False
        usage = containers[0].get('usage') or {}
        if not usage.get('cpu') or not usage.get('memory'):
            self.console.log_warn(f"Pod {name} has no usage data: {usage}", "METRICS")
            return False

        try:
            cpu = parse_cpu_to_millicores(usage['cpu'])
            memory = parse_memory_to_bytes(usage['memory'])
        except ValueError as e:
            self.console.log_warn(f"Pod {name} reported unreadable usage {usage}: {e}", "METRICS")
            return False

        self.aggregator.observe(group.cpu_trend, cpu)
        self.aggregator.observe(group.memory_trend, bytes_to_mib(memory))

        if group.max_cpu_millicores is not None:
            cpu_ok = cpu <= group.max_cpu_millicores
            if not cpu_ok and group.cpu_violations:
                self.aggregator.increment(group.cpu_violations)
            self.aggregator.check(f"[{name}] CPU < {group.max_cpu_millicores}m", cpu_ok)
        if group.max_memory_bytes is not None:
            mem_ok = memory <= group.max_memory_bytes
            if not mem_ok and group.memory_violations:
                self.aggregator.increment(group.memory_violations)
            self.aggregator.check(f"[{name}] Memory < {round(bytes_to_mib(group.max_memory_bytes))}Mi", mem_ok)
        return True

    async def record_restarts(self, group: PodGroup) -> Optional[int]:
        """Set the group's restart gauge to the highest first-container restart count"""
        try:
            pods = await self.gateway.list_pods(group.namespace, group.restart_selector)
        except ApiException as e:
            self.console.log_warn(
                f"Failed to list {group.label} pods for restart counts: {e.status} {e.reason}", "METRICS")
            return None
        except Exception as e:
            self.console.log_warn(f"Unexpected error listing {group.label} pods: {e}", "METRICS")
            return None

        if not pods:
            return None
        highest = max(restart_count(pod) for pod in pods)
        self.aggregator.set_gauge(group.restart_gauge, highest)
        return highest


def restart_count(pod: Dict[str, Any]) -> int:
    statuses = (pod.get('status') or {}).get('containerStatuses') or []
    if not statuses:
        return 0
    return statuses[0].get('restartCount') or 0
