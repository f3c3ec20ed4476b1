"""
Unit tests for FileWatcher with native (inotify) notification.

Tests:
- Files written or moved into a watched directory arrive as rename events
- Appends to a watched file arrive as change events with growing sizes
- Queued changes collapse into one stat taken at delivery
- Replacement of a watched file is reported as rename, then init
- A watched directory moved away is re-initialised once recreated
- A native read error forces a full re-init
"""

import asyncio
import os
import sys

import pytest

from mochimap.config import WatcherConfig
from mochimap.metrics import WatcherMetrics
from mochimap.node_adapter.watcher import FileWatcher

inotify_simple = pytest.importorskip("inotify_simple")

pytestmark = pytest.mark.skipif(sys.platform != 'linux', reason="inotify is Linux only")

FAST = WatcherConfig(retry_delay=0.05, rename_delay=0.05, scan_interval=60)


async def wait_until(predicate, timeout=3.0):
    """Poll `predicate` until true or fail after `timeout` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.02)


class Recorder:
    """Handler collecting (event_type, filename, size) tuples."""

    def __init__(self):
        self.events = []

    def __call__(self, stats, event_type, filename):
        self.events.append((event_type, filename, stats.st_size if stats else None))

    def types(self, filename):
        return [e[0] for e in self.events if e[1] == filename]

    def sizes(self, filename, event_type):
        return [e[2] for e in self.events if e[1] == filename and e[0] == event_type]


def write(path, data=b"x"):
    with open(path, "wb") as f:
        f.write(data)


def append(path, data):
    with open(path, "ab") as f:
        f.write(data)


@pytest.fixture
async def started():
    """Start FileWatchers in native mode and stop them after the test."""
    watchers = []

    async def start(target, handler, metrics=None):
        watcher = FileWatcher(str(target), handler, config=FAST, metrics=metrics or WatcherMetrics())
        await watcher.start()
        await watcher.drain()
        assert watcher.watching
        watchers.append(watcher)
        return watcher

    yield start
    for watcher in watchers:
        await watcher.stop()


class TestNativeDirectory:
    """Test directory watching through inotify."""

    @pytest.mark.asyncio
    async def test_written_file_reported_as_rename(self, tmp_path, started):
        block_dir = tmp_path / "bc"
        block_dir.mkdir()
        recorder = Recorder()
        watcher = await started(block_dir, recorder)
        assert watcher._inotify is not None

        write(block_dir / "a.bc", b"block")
        await wait_until(lambda: 'rename' in recorder.types("a.bc"))
        assert recorder.sizes("a.bc", 'rename')[-1] == 5

    @pytest.mark.asyncio
    async def test_moved_in_file_is_rename_event(self, tmp_path, started):
        block_dir = tmp_path / "bc"
        block_dir.mkdir()
        staging = tmp_path / "staging.bc"
        write(staging, b"1234")
        recorder = Recorder()
        await started(block_dir, recorder)

        os.replace(staging, block_dir / "b.bc")
        await wait_until(lambda: recorder.types("b.bc") == ['rename'])
        assert recorder.sizes("b.bc", 'rename') == [4]

    @pytest.mark.asyncio
    async def test_moved_away_directory_reinitialised(self, tmp_path, started):
        block_dir = tmp_path / "bc"
        block_dir.mkdir()
        recorder = Recorder()
        metrics = WatcherMetrics()
        watcher = await started(block_dir, recorder, metrics)

        os.rename(block_dir, tmp_path / "bc.old")
        await wait_until(lambda: metrics.reinits >= 1)

        block_dir.mkdir()
        write(block_dir / "c.bc")
        await wait_until(lambda: 'rename' in recorder.types("c.bc"))
        assert watcher.watching

    @pytest.mark.asyncio
    async def test_read_error_forces_reinit(self, tmp_path, started, monkeypatch):
        block_dir = tmp_path / "bc"
        block_dir.mkdir()
        write(block_dir / "a.bc")
        recorder = Recorder()
        metrics = WatcherMetrics()
        watcher = await started(block_dir, recorder, metrics)
        assert recorder.types("a.bc") == ['rename']

        def failing_read(*args, **kwargs):
            raise OSError("watch descriptor lost")

        monkeypatch.setattr(watcher._inotify, 'read', failing_read)
        write(block_dir / "b.bc")

        # The re-init lists the directory again, so b.bc is not lost
        await wait_until(lambda: recorder.types("a.bc") == ['rename', 'rename'])
        await wait_until(lambda: 'rename' in recorder.types("b.bc"))
        assert metrics.reinits == 1
        assert watcher.watching


class TestNativeFile:
    """Test single file watching through the parent directory."""

    @pytest.mark.asyncio
    async def test_appends_are_change_events(self, tmp_path, started):
        path = tmp_path / "txclean.dat"
        write(path, b"12")
        recorder = Recorder()
        await started(path, recorder)
        assert recorder.events == [('init', 'txclean.dat', 2)]

        append(path, b"345")
        await wait_until(lambda: 5 in recorder.sizes("txclean.dat", 'change'))

    @pytest.mark.asyncio
    async def test_burst_of_appends_collapses(self, tmp_path, started):
        path = tmp_path / "txclean.dat"
        write(path, b"")
        recorder = Recorder()
        metrics = WatcherMetrics()
        await started(path, recorder, metrics)

        # No await between appends, so every notification is read at once
        for _ in range(20):
            append(path, b"x" * 10)
        await wait_until(lambda: 200 in recorder.sizes("txclean.dat", 'change'))

        sizes = recorder.sizes("txclean.dat", 'change')
        assert sizes == sorted(sizes)
        assert len(sizes) < 20
        assert metrics.coalesced_events > 0

    @pytest.mark.asyncio
    async def test_replacement_is_rename_then_init(self, tmp_path, started):
        path = tmp_path / "txclean.dat"
        write(path, b"1234")
        replacement = tmp_path / "txclean.tmp"
        write(replacement, b"12")
        recorder = Recorder()
        metrics = WatcherMetrics()
        await started(path, recorder, metrics)

        os.replace(replacement, path)
        await wait_until(lambda: recorder.types("txclean.dat") == ['init', 'rename', 'init'])
        assert recorder.events[-1] == ('init', 'txclean.dat', 2)
        assert metrics.reinits == 1
