"""
Background watchers running beside the load test
The engine only starts and stops them; nothing depends on their output
"""

import threading
from typing import Callable, Optional

from kubernetes import watch

from .console import ComponentLogger


class BackgroundWatcher:
    """Start/stop handle for a fire-and-forget watcher"""

    def start(self):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError


class NullWatcher(BackgroundWatcher):
    def start(self):
        pass

    def stop(self):
        pass


class EventWatcher(BackgroundWatcher):
    """Streams namespace events into the log from a daemon thread"""

    def __init__(self, list_events: Callable, namespace: str, console: Optional[ComponentLogger] = None,
                 stream_factory: Callable = watch.Watch, timeout_seconds: int = 60, retry_delay: float = 5.0):
        self.list_events = list_events
        self.namespace = namespace
        self.console = console or ComponentLogger()
        self.stream_factory = stream_factory
        self.timeout_seconds = timeout_seconds
        self.retry_delay = retry_delay
        self.events_seen = 0
        self.warnings_seen = 0
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watch = None

    def start(self):
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=f"events-{self.namespace}", daemon=True)
        self._thread.start()
        self.console.log_info(f"Watching events in namespace {self.namespace}", "WATCH")

    def _run(self):
        while not self._stop_event.is_set():
            self._watch = self.stream_factory()
            try:
                for event in self._watch.stream(self.list_events, namespace=self.namespace,
                                                timeout_seconds=self.timeout_seconds):
                    if self._stop_event.is_set():
                        break
                    self._handle(event)
            except Exception as e:
                self.console.log_warn(f"Event watch in {self.namespace} interrupted: {e}", "WATCH")
                self._stop_event.wait(self.retry_delay)

    def _handle(self, event):
        obj = event.get('object')
        if obj is None:
            return
        self.events_seen += 1
        involved = getattr(obj, 'involved_object', None)
        target = f"{getattr(involved, 'kind', '?')}/{getattr(involved, 'name', '?')}"
        message = f"{getattr(obj, 'reason', '')} {target}: {getattr(obj, 'message', '')}"
        if getattr(obj, 'type', None) == 'Warning':
            self.warnings_seen += 1
            self.console.log_warn(message, "WATCH")
        else:
            self.console.log_debug(message, "WATCH")

    def stop(self):
        self._stop_event.set()
        if self._watch is not None:
            self._watch.stop()
        if self._thread is not None:
            self._thread.join(timeout=self.timeout_seconds)
            self._thread = None
        self.console.log_info(
            f"Stopped event watch in {self.namespace}: {self.events_seen} events, "
            f"{self.warnings_seen} warnings", "WATCH")
