"""
Webhook server load scenario
Every user creates a DevWorkspace, then exercises the admission webhook: identity
labels must be immutable and pod exec must be limited to the owner
"""

import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional

from kubernetes.client.rest import ApiException

from .console import ComponentLogger
from .manifest import ManifestError, ManifestSource
from .metrics import MetricsAggregator
from .sampler import ResourceMetricsSampler, webhook_pod_group
from .status import Phase, classify_phase

DEVWORKSPACE_NAME_LABEL = 'controller.devfile.io/devworkspace_name'

DW_DENIED_MESSAGE = (
    "admission webhook \"mutate.devworkspace-controller.svc\" denied the request: "
    "label 'controller.devfile.io/creator' is assigned once devworkspace is created and is immutable")
POD_DENIED_MESSAGE = (
    "admission webhook \"mutate-ws-resources.devworkspace-controller.svc\" denied the request: "
    "Label 'controller.devfile.io/creator' is set by the controller and cannot be updated")

# Metric names
CREATE_LATENCY = 'create_latency_ms'
MUTATING_LATENCY = 'mutating_latency_ms'
MUTATING_DENIED = 'invalid_mutating_denied_total'
MUTATING_ALLOWED = 'invalid_mutating_allowed_total'
EXEC_LATENCY = 'exec_latency_ms'
EXEC_ALLOWED = 'exec_allowed_total'
EXEC_DENIED = 'exec_denied_total'
EXEC_UNEXPECTED_ALLOWED = 'exec_unexpected_allowed_total'
EXEC_UNEXPECTED_DENIED = 'exec_unexpected_denied_total'
EXEC_ALLOW_RATE = 'exec_allow_rate'
EXEC_DENY_RATE = 'exec_deny_rate'


def identity_tamper_patch() -> List[Dict[str, Any]]:
    """JSON patch rewriting the identity labels the webhook protects"""
    return [
        {
            'op': 'replace',
            'path': '/metadata/labels/controller.devfile.io~1devworkspace_id',
            'value': f"invalid-{int(time.time() * 1000)}",
        },
        {
            'op': 'replace',
            'path': '/metadata/labels/controller.devfile.io~1creator',
            'value': '00000000-0000-0000-0000-000000000000',
        },
    ]


def _error_body(e: ApiException) -> Dict[str, Any]:
    try:
        body = json.loads(e.body) if e.body else {}
    except (TypeError, ValueError):
        return {}
    return body if isinstance(body, dict) else {}


class WebhookLoadTest:
    """One VU per user, each holding its own bearer token"""

    def __init__(self, users: List[Dict[str, str]], gateway_factory: Callable[[str], Any],
                 aggregator: MetricsAggregator, manifests: ManifestSource, namespace: str,
                 webhook_namespace: str, ready_timeout: float = 120, poll_interval: float = 5,
                 console: Optional[ComponentLogger] = None, sleep=asyncio.sleep, clock=time.monotonic):
        self.users = users
        self.gateway_factory = gateway_factory
        self.aggregator = aggregator
        self.manifests = manifests
        self.namespace = namespace
        self.webhook_group = webhook_pod_group(webhook_namespace)
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.console = console or ComponentLogger()
        self.sleep = sleep
        self.clock = clock

    async def run(self):
        await asyncio.gather(*(self.run_user(vu_id, user) for vu_id, user in enumerate(self.users, start=1)))

    async def run_user(self, vu_id: int, user: Dict[str, str]):
        gateway = self.gateway_factory(user['token'])
        try:
            await self.run_user_checks(gateway, vu_id, user)
        finally:
            gateway.close()

    async def run_user_checks(self, gateway, vu_id: int, user: Dict[str, str]):
        sampler = ResourceMetricsSampler(gateway, self.aggregator, [self.webhook_group], self.console)

        dw_name = await self.create_devworkspace(gateway, vu_id, user)
        if not dw_name:
            return

        if not await self.wait_until_all_running(gateway, len(self.users)):
            self.console.log_error('Not all DevWorkspaces became Ready/Running', "WEBHOOK")
            return

        await self.validate_devworkspace_identity_immutability(gateway, dw_name)
        await self.validate_pod_identity_immutability(gateway, dw_name)

        for name in await self.get_all_devworkspace_names(gateway):
            await self.check_exec_permission(gateway, user['user'], name, should_allow=(name == dw_name))
            await sampler.sample()

    async def create_devworkspace(self, gateway, vu_id: int, user: Dict[str, str]) -> Optional[str]:
        try:
            manifest = self.manifests.generate(vu_id, 0, self.namespace)
        except ManifestError as e:
            self.console.log_error(f"DevWorkspace manifest unavailable for {user['user']}: {e}", "WEBHOOK")
            return None

        start = self.clock()
        try:
            created = await gateway.create_devworkspace(self.namespace, manifest)
        except ApiException as e:
            self.aggregator.observe(CREATE_LATENCY, (self.clock() - start) * 1000)
            self.console.log_error(f"DevWorkspace creation failed for {user['user']}: {e.status}", "WEBHOOK")
            return None
        self.aggregator.observe(CREATE_LATENCY, (self.clock() - start) * 1000)

        if isinstance(created, dict):
            return (created.get('metadata') or {}).get('name') or manifest['metadata']['name']
        return manifest['metadata']['name']

    async def wait_until_all_running(self, gateway, expected_count: int) -> bool:
        max_attempts = self.ready_timeout / self.poll_interval
        attempts = 0
        while attempts < max_attempts:
            try:
                items = await gateway.list_devworkspaces(self.namespace)
                running = [dw for dw in items
                           if classify_phase((dw.get('status') or {}).get('phase')) is Phase.READY]
                if len(running) >= expected_count:
                    return True
            except ApiException as e:
                self.console.log_error(f"GET DevWorkspaces returned status {e.status}", "WEBHOOK")

            await self.sleep(self.poll_interval)
            attempts += 1

        self.console.log_error('Timeout waiting for all DevWorkspaces to become Ready/Running', "WEBHOOK")
        return False

    async def get_all_devworkspace_names(self, gateway) -> List[str]:
        try:
            items = await gateway.list_devworkspaces(self.namespace)
        except ApiException as e:
            self.console.log_error(f"Failed to list DevWorkspaces: status={e.status}, body={e.body}", "WEBHOOK")
            return []
        return [name for name in ((dw.get('metadata') or {}).get('name') for dw in items) if name]

    async def get_pod_name_for_devworkspace(self, gateway, dw_name: str) -> Optional[str]:
        try:
            pods = await gateway.list_pods(self.namespace, f"{DEVWORKSPACE_NAME_LABEL}={dw_name}")
        except ApiException as e:
            self.console.log_warn(f"Failed to list pods for DevWorkspace {dw_name}: {e.status}", "WEBHOOK")
            return None
        if not pods:
            self.console.log_warn(f"No pods found for DevWorkspace {dw_name}", "WEBHOOK")
            return None
        return pods[0]['metadata']['name']

    async def validate_devworkspace_identity_immutability(self, gateway, dw_name: str) -> bool:
        start = self.clock()
        try:
            await gateway.patch_devworkspace(self.namespace, dw_name, identity_tamper_patch())
            error = None
        except ApiException as e:
            error = e
        self.aggregator.observe(MUTATING_LATENCY, (self.clock() - start) * 1000)
        return self.assert_forbidden(error, 'DevWorkspace', dw_name, DW_DENIED_MESSAGE)

    async def validate_pod_identity_immutability(self, gateway, dw_name: str) -> bool:
        pod_name = await self.get_pod_name_for_devworkspace(gateway, dw_name)
        if pod_name is None:
            return False
        start = self.clock()
        try:
            await gateway.patch_pod(self.namespace, pod_name, identity_tamper_patch())
            error = None
        except ApiException as e:
            error = e
        self.aggregator.observe(MUTATING_LATENCY, (self.clock() - start) * 1000)
        return self.assert_forbidden(error, 'Pod', pod_name, POD_DENIED_MESSAGE)

    def assert_forbidden(self, error: Optional[ApiException], kind: str, name: str, expected_message: str) -> bool:
        """A tamper patch must be rejected by the webhook with 403 Forbidden"""
        if error is None:
            self.aggregator.increment(MUTATING_ALLOWED)
            self.aggregator.check('identity labels immutable', False)
            self.console.log_error(f"Unauthorized {kind} modification allowed: resource={name}", "WEBHOOK")
            return False

        body = _error_body(error)
        denied = error.status == 403 and body.get('reason', 'Forbidden') == 'Forbidden'
        self.aggregator.check('identity labels immutable', denied)
        if not denied:
            self.console.log_error(
                f"Unexpected response to {kind} identity patch: resource={name} status={error.status} "
                f"reason={body.get('reason')} message={body.get('message')}", "WEBHOOK")
            return False

        self.aggregator.increment(MUTATING_DENIED)
        if expected_message not in (body.get('message') or ''):
            self.console.log_warn(
                f"{kind} {name} denied with unexpected message: {body.get('message')}", "WEBHOOK")
        return True

    async def check_exec_permission(self, gateway, user_name: str, dw_name: str, should_allow: bool = True) -> bool:
        """Try `echo hello` in the DevWorkspace pod; own pods allow it, foreign pods must not"""
        pod_name = await self.get_pod_name_for_devworkspace(gateway, dw_name)
        if pod_name is None:
            return False

        start = self.clock()
        try:
            await gateway.exec_in_pod(self.namespace, pod_name, ['echo', 'hello'])
            allowed = True
        except ApiException as e:
            allowed = e.status != 403
        self.aggregator.observe(EXEC_LATENCY, (self.clock() - start) * 1000)

        if should_allow:
            self.aggregator.add_rate(EXEC_ALLOW_RATE, allowed)
            if allowed:
                self.aggregator.increment(EXEC_ALLOWED)
            else:
                self.aggregator.increment(EXEC_UNEXPECTED_DENIED)
                self.console.log_error(f"[SECURITY] Own exec denied for {dw_name} for user {user_name}", "WEBHOOK")
            return self.aggregator.check('exec allowed for own workspace', allowed)

        self.aggregator.add_rate(EXEC_DENY_RATE, not allowed)
        if not allowed:
            self.aggregator.increment(EXEC_DENIED)
        else:
            self.aggregator.increment(EXEC_UNEXPECTED_ALLOWED)
            self.console.log_error(f"[SECURITY] Cross-user exec ALLOWED for {dw_name} for user {user_name}", "WEBHOOK")
        return self.aggregator.check('exec forbidden for foreign workspace', not allowed)
