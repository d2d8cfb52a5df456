import threading
import time
from types import SimpleNamespace

from dwo_loadtest.watchers import EventWatcher, NullWatcher


def event(kind, reason, message):
    return {
        'type': 'ADDED',
        'object': SimpleNamespace(type=kind, reason=reason, message=message,
                                  involved_object=SimpleNamespace(kind='Pod', name='workspace-1-pod')),
    }


class FakeWatchFactory:
    """Each stream() call plays the next script, then idles until stopped"""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.watches = []

    def __call__(self):
        watch = FakeWatch(self.scripts.pop(0) if self.scripts else [])
        self.watches.append(watch)
        return watch


class FakeWatch:
    def __init__(self, script):
        self.script = script
        self._stopped = threading.Event()

    def stream(self, func, **kwargs):
        for item in self.script:
            if isinstance(item, Exception):
                raise item
            yield item
        self._stopped.wait(2)

    def stop(self):
        self._stopped.set()


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def list_events(**kwargs):
    raise AssertionError('only called through the watch stream')


def test_events_are_counted_and_warnings_logged(console, caplog):
    factory = FakeWatchFactory([
        event('Normal', 'Scheduled', 'Successfully assigned pod'),
        event('Warning', 'FailedMount', 'MountVolume.SetUp failed'),
    ])
    watcher = EventWatcher(list_events, 'loadtest-devworkspaces', console, stream_factory=factory,
                           timeout_seconds=1)
    with caplog.at_level('DEBUG', logger='dwo_loadtest'):
        watcher.start()
        assert wait_for(lambda: watcher.events_seen == 2)
        watcher.stop()

    assert watcher.warnings_seen == 1
    warnings = [r for r in caplog.records if r.levelname == 'WARNING']
    assert any('FailedMount Pod/workspace-1-pod' in r.getMessage() for r in warnings)


def test_interrupted_stream_is_restarted(console):
    factory = FakeWatchFactory(
        [RuntimeError('connection reset')],
        [event('Warning', 'BackOff', 'Back-off restarting failed container')],
    )
    watcher = EventWatcher(list_events, 'loadtest-devworkspaces', console, stream_factory=factory,
                           timeout_seconds=1, retry_delay=0.01)
    watcher.start()
    assert wait_for(lambda: watcher.warnings_seen == 1)
    watcher.stop()
    assert len(factory.watches) >= 2


def test_start_is_idempotent_and_stop_joins(console):
    factory = FakeWatchFactory([])
    watcher = EventWatcher(list_events, 'ns', console, stream_factory=factory, timeout_seconds=1)
    watcher.start()
    assert wait_for(lambda: factory.watches)
    thread = watcher._thread
    watcher.start()
    assert watcher._thread is thread
    watcher.stop()
    assert not thread.is_alive()


def test_null_watcher():
    watcher = NullWatcher()
    watcher.start()
    watcher.stop()
