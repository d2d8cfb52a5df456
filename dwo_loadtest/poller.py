"""
DevWorkspace lifecycle driver: create, poll until a terminal phase, delete
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from kubernetes.client.rest import ApiException

from .console import ComponentLogger
from .kube import LOAD_TEST_LABEL_KEY, LOAD_TEST_LABEL_VALUE
from .manifest import ManifestError, ManifestSource
from .metrics import MetricsAggregator
from .status import MalformedStatusError, Phase, ResourceStatus

# Metric names
CREATE_DURATION = 'devworkspace_create_duration'
CREATE_COUNT = 'devworkspace_create_count'
READY_DURATION = 'devworkspace_ready_duration'
READY_COUNT = 'devworkspace_ready'
READY_FAILED = 'devworkspace_ready_failed'
DELETE_DURATION = 'devworkspace_delete_duration'
STARTING = 'devworkspace_starting'

CREATE_CHECK = 'DevWorkspace created'
DELETE_CHECK = 'DevWorkspace deleted or not found'

CREATE_OK = (201, 409)
DELETE_OK = (200, 202, 404)


class Outcome(Enum):
    READY = 'ready'
    FAILED = 'failed'
    TIMED_OUT = 'timed-out'


class IterationAborted(Exception):
    """The iteration cannot proceed; logged and the next iteration starts"""


@dataclass
class IterationOutcome:
    """Result of one create -> poll -> delete iteration"""
    name: str
    namespace: str
    outcome: Outcome
    create_duration_ms: float
    attempts: int = 0
    last_phase: Optional[str] = None
    ready_duration_ms: Optional[float] = None
    delete_duration_ms: Optional[float] = None


class LifecyclePoller:
    """Drives one DevWorkspace per iteration to Ready, Failed or TimedOut"""

    def __init__(self, gateway, aggregator: MetricsAggregator, manifests: ManifestSource,
                 sampler=None, ready_timeout: float = 600, poll_interval: float = 10,
                 delete_after_ready: bool = False, console: Optional[ComponentLogger] = None,
                 sleep=asyncio.sleep, clock=time.monotonic):
        self.gateway = gateway
        self.aggregator = aggregator
        self.manifests = manifests
        self.sampler = sampler
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.delete_after_ready = delete_after_ready
        self.console = console or ComponentLogger()
        self.sleep = sleep
        self.clock = clock

    @property
    def max_attempts(self) -> float:
        return self.ready_timeout / self.poll_interval

    def _elapsed_ms(self, start: float) -> float:
        return (self.clock() - start) * 1000

    async def run_iteration(self, vu_id: int, iteration: int, namespace: str,
                            create_namespace: bool = False) -> Optional[IterationOutcome]:
        """Run one iteration; returns None when it was aborted before polling"""
        try:
            if create_namespace:
                await self.ensure_namespace(namespace)
            manifest = self.manifests.generate(vu_id, iteration, namespace)
        except (ManifestError, IterationAborted) as e:
            self.console.log_error(f"Load test for {vu_id}-{iteration} failed: {e}", "CREATE")
            return None

        name = manifest['metadata']['name']
        create_start = self.clock()
        if not await self.create(vu_id, namespace, manifest):
            return None
        create_ms = self._elapsed_ms(create_start)
        self.aggregator.observe(CREATE_DURATION, create_ms)
        self.aggregator.increment(CREATE_COUNT)
        self.aggregator.increment(STARTING)

        result = await self.wait_until_ready(vu_id, name, namespace, create_start)
        result.create_duration_ms = create_ms

        if self.delete_after_ready:
            result.delete_duration_ms = await self.delete(name, namespace)
        return result

    async def ensure_namespace(self, namespace: str):
        """Create a per-iteration namespace; an existing one is fine"""
        try:
            await self.gateway.create_namespace(namespace, {LOAD_TEST_LABEL_KEY: LOAD_TEST_LABEL_VALUE})
        except ApiException as e:
            if e.status == 409:
                return
            raise IterationAborted(f"Failed to create Namespace: {e.status} - {namespace}") from e

    async def create(self, vu_id: int, namespace: str, manifest: Dict[str, Any]) -> bool:
        """Submit the manifest; created and already-exists both count as success"""
        name = manifest['metadata']['name']
        try:
            await self.gateway.create_devworkspace(namespace, manifest)
        except ApiException as e:
            if e.status in CREATE_OK:
                self.console.log_debug(f"DevWorkspace {name} already exists in {namespace}", "CREATE")
                self.aggregator.check(CREATE_CHECK, True)
                return True
            self.aggregator.check(CREATE_CHECK, False)
            self.console.log_error(
                f"[VU {vu_id}] Failed to create DevWorkspace {name}: {e.status}, {e.body}", "CREATE")
            return False
        except Exception as e:
            self.aggregator.check(CREATE_CHECK, False)
            self.console.log_error(f"[VU {vu_id}] Failed to create DevWorkspace {name}: {e}", "CREATE")
            return False

        self.aggregator.check(CREATE_CHECK, True)
        return True

    async def poll_once(self, vu_id: int, name: str, namespace: str) -> Optional[ResourceStatus]:
        """Fetch the resource once; None means the tick was inconclusive"""
        try:
            body = await self.gateway.get_devworkspace(namespace, name)
        except ApiException as e:
            self.console.log_warn(f"GET [VU {vu_id}] DevWorkspace {name} returned {e.status}", "POLL")
            return None
        except Exception as e:
            self.console.log_warn(f"GET [VU {vu_id}] DevWorkspace {name} failed: {e}", "POLL")
            return None

        try:
            return ResourceStatus.from_body(body)
        except MalformedStatusError as e:
            self.console.log_error(f"GET [VU {vu_id}] Failed to parse DevWorkspace from API: {e}", "POLL")
            return None

    async def wait_until_ready(self, vu_id: int, name: str, namespace: str,
                               start: Optional[float] = None) -> IterationOutcome:
        """Poll until Ready/Running, an explicit failure phase, or the attempt budget runs out"""
        start = self.clock() if start is None else start
        attempts = 0
        last_phase = None
        phase = Phase.PENDING
        warned_terminating = False

        while attempts < self.max_attempts:
            status = await self.poll_once(vu_id, name, namespace)
            if status is not None:
                last_phase = status.phase
                phase = status.classification
                if phase is not Phase.PENDING:
                    attempts += 1
                    break
                if status.terminating and not warned_terminating:
                    warned_terminating = True
                    self.console.log_warn(
                        f"DevWorkspace {name} is being deleted while still in phase '{last_phase}'", "POLL")

            if self.sampler is not None:
                await self.sampler.sample()
            attempts += 1
            if attempts < self.max_attempts:
                await self.sleep(self.poll_interval)

        result = IterationOutcome(name=name, namespace=namespace, outcome=Outcome.TIMED_OUT,
                                  create_duration_ms=0.0, attempts=attempts, last_phase=last_phase)

        if phase is Phase.READY:
            result.outcome = Outcome.READY
            result.ready_duration_ms = self._elapsed_ms(start)
            self.aggregator.increment(READY_COUNT)
            self.aggregator.observe(READY_DURATION, result.ready_duration_ms)
        elif phase is Phase.FAILED:
            result.outcome = Outcome.FAILED
            self.aggregator.increment(READY_FAILED)
            self.console.log_error(
                f"GET [VU {vu_id}] DevWorkspace '{name}' in namespace '{namespace}' "
                f"reached phase '{last_phase}'", "POLL")
        else:
            # may still converge after the observation window, so not counted as a failure
            self.console.log_warn(
                f"GET [VU {vu_id}] Timed out waiting for DevWorkspace '{name}' in namespace '{namespace}' "
                f"after {attempts} attempts ({self.ready_timeout}s). Last known phase: '{last_phase}'", "POLL")

        self.aggregator.increment(STARTING, -1)
        return result

    async def delete(self, name: str, namespace: str) -> float:
        """Delete one DevWorkspace; not-found counts as success. Returns the duration in ms"""
        start = self.clock()
        deleted = True
        try:
            await self.gateway.delete_devworkspace(namespace, name)
        except ApiException as e:
            deleted = e.status in DELETE_OK
            if not deleted:
                self.console.log_warn(f"Failed to delete DevWorkspace {name}: {e.status}", "DELETE")
        except Exception as e:
            deleted = False
            self.console.log_warn(f"Failed to delete DevWorkspace {name}: {e}", "DELETE")
        duration = self._elapsed_ms(start)
        self.aggregator.observe(DELETE_DURATION, duration)
        self.aggregator.check(DELETE_CHECK, deleted)
        return duration
