"""
File Watcher

Watches a file or directory written by the Mochimo node and reports changes
to a handler as (stats, event_type, filename).

Uses inotify on Linux for instant notification, periodic re-stat elsewhere
and in scan-only mode. Never raises to its owner: a missing target is retried
every few seconds, a target renamed away is re-initialised shortly after, and
any native watch error triggers a full re-initialisation.

Event types:
    init    initial stats of a file target
    rename  a directory entry appeared (or a file target was replaced, stats None)
    change  contents of a file target or directory entry were modified
"""

import asyncio
import inspect
import logging
import os
import stat as stat_module
import sys
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Set, Tuple, Union

from ..config import WatcherConfig
from ..metrics import WatcherMetrics

WatchHandler = Callable[[Optional[os.stat_result], str, str], Union[None, Awaitable[None]]]

# (size, mtime_ns, inode) used by scan mode to detect changes
Signature = Tuple[int, int, int]

# (stats, event_type, filename, path); a path means "stat when delivered"
QueuedEvent = Tuple[Optional[os.stat_result], str, str, Optional[Path]]


def _signature(st: os.stat_result) -> Signature:
    return (st.st_size, st.st_mtime_ns, st.st_ino)


class FileWatcher:
    """
    Self-healing watcher for one path.

    Usage:
        watcher = FileWatcher("/node/d/bc", handler, name="BCWatcher")
        await watcher.start()
        ...
        await watcher.stop()
    """

    def __init__(
        self,
        target: str,
        handler: WatchHandler,
        name: str = "Watcher",
        scan_only: bool = False,
        config: Optional[WatcherConfig] = None,
        metrics: Optional[WatcherMetrics] = None,
    ):
        self.target = Path(target)
        self.basename = self.target.name
        self.name = name
        self.scan_only = scan_only
        self.config = config or WatcherConfig()
        self.metrics = metrics or WatcherMetrics()
        self._handler = handler
        self._logger = logging.getLogger(name)

        # State
        self._running = False
        self._is_dir = False
        self._snapshot: Dict[str, Signature] = {}
        self._events: "asyncio.Queue[QueuedEvent]" = asyncio.Queue()
        self._pending_stats: Set[Tuple[str, str]] = set()
        self._pump_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._init_task: Optional[asyncio.Task] = None
        self._init_handle: Optional[asyncio.TimerHandle] = None

        # inotify (Linux only)
        self._inotify = None
        self._inotify_flags = None
        self._reader_fd: Optional[int] = None

    @property
    def watching(self) -> bool:
        return self._inotify is not None or self._poll_task is not None

    async def start(self) -> None:
        """Start watching. Missing targets are retried in the background."""
        if self._running:
            return
        self._running = True
        self._logger.info(f"init watcher -> {self.target}")
        self._pump_task = asyncio.create_task(self._pump())
        await self.init()

    async def stop(self) -> None:
        """Stop watching and clear every scheduled timer."""
        if not self._running:
            return
        self._running = False
        self._logger.info("terminating...")

        self._cancel_reinit()
        self._close_native()
        current = asyncio.current_task()
        for task in (self._poll_task, self._init_task, self._pump_task):
            if task and task is not current and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._poll_task = None
        self._init_task = None
        self._pump_task = None

    async def init(self) -> None:
        """Stat the target, deliver baseline events and attach the watch."""
        if not self._running:
            return
        self._cancel_reinit()
        self._close_native()
        await self._stop_polling()

        loop = asyncio.get_running_loop()
        try:
            st = await loop.run_in_executor(None, os.stat, self.target)
        except FileNotFoundError:
            self._schedule_init(self.config.retry_delay)
            return
        except OSError as e:
            self.metrics.stat_errors += 1
            self._logger.error(f"STAT -> {self.target}: {e}; re-init in {self.config.retry_delay}s...")
            self._schedule_init(self.config.retry_delay)
            return

        self._is_dir = stat_module.S_ISDIR(st.st_mode)
        if self._is_dir:
            try:
                entries = await loop.run_in_executor(None, self._list_dir)
            except OSError as e:
                self.metrics.stat_errors += 1
                self._logger.error(f"READDIR -> {self.target}: {e}; re-init in {self.config.retry_delay}s...")
                self._schedule_init(self.config.retry_delay)
                return
            self._logger.info(f"found {len(entries)} entities...")
            self._snapshot = {name: _signature(est) for name, est in entries.items()}
            for name in sorted(entries):
                self._deliver(entries[name], 'rename', name)
        elif stat_module.S_ISREG(st.st_mode):
            self._snapshot = {self.basename: _signature(st)}
            self._deliver(st, 'init', self.basename)
        else:
            self._logger.error(f"STAT -> unknown file type for {self.target}")
            return

        if self.scan_only or not self._setup_native():
            self._poll_task = asyncio.create_task(self._poll_loop())

    # ==================== Delivery ====================

    def _deliver(self, stats: Optional[os.stat_result], event_type: str, filename: str) -> None:
        self._events.put_nowait((stats, event_type, filename, None))

    async def _pump(self) -> None:
        """Invoke the handler for each queued event, one at a time."""
        while True:
            stats, event_type, filename, path = await self._events.get()
            try:
                if path is not None:
                    stats = await self._restat(event_type, filename, path)
                    if stats is None:
                        continue
                result = self._handler(stats, event_type, filename)
                if inspect.isawaitable(result):
                    await result
                self.metrics.events_delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.metrics.handler_errors += 1
                self._logger.exception(f"handler failed for {event_type} {filename}: {e}")
            finally:
                self._events.task_done()

    async def drain(self) -> None:
        """Wait until every event delivered so far has been handled."""
        await self._events.join()

    # ==================== Re-initialisation ====================

    def _schedule_init(self, delay: float) -> None:
        if not self._running:
            return
        self._cancel_reinit()
        loop = asyncio.get_running_loop()
        self._init_handle = loop.call_later(delay, self._reinit)

    def _reinit(self) -> None:
        self._init_handle = None
        if self._running:
            self.metrics.reinits += 1
            self._init_task = asyncio.create_task(self.init())

    def _cancel_reinit(self) -> None:
        if self._init_handle:
            self._init_handle.cancel()
            self._init_handle = None

    # ==================== Native watch (inotify) ====================

    def _setup_native(self) -> bool:
        """Attach an inotify watch. False if unavailable on this platform."""
        if sys.platform != 'linux':
            return False

        try:
            import inotify_simple
        except ImportError:
            # inotify_simple not installed, fall back to polling
            return False

        flags = inotify_simple.flags
        try:
            self._inotify = inotify_simple.INotify()
            if self._is_dir:
                mask = (flags.MOVED_TO | flags.CLOSE_WRITE | flags.MODIFY
                        | flags.MOVE_SELF | flags.DELETE_SELF)
                self._inotify.add_watch(str(self.target), mask)
            else:
                # Watch the parent so the watch survives replacement of the file
                mask = (flags.MODIFY | flags.CLOSE_WRITE | flags.MOVED_TO | flags.CREATE
                        | flags.MOVED_FROM | flags.DELETE | flags.MOVE_SELF | flags.DELETE_SELF)
                self._inotify.add_watch(str(self.target.parent), mask)
            self._inotify_flags = flags
            self._reader_fd = self._inotify.fileno()
            asyncio.get_running_loop().add_reader(self._reader_fd, self._on_inotify)
            return True
        except OSError as e:
            self._logger.warning(f"inotify unavailable for {self.target}: {e}; polling instead")
            self._close_native()
            return False

    def _close_native(self) -> None:
        if self._reader_fd is not None:
            try:
                asyncio.get_running_loop().remove_reader(self._reader_fd)
            except (RuntimeError, ValueError):
                pass
            self._reader_fd = None
        if self._inotify is not None:
            try:
                self._inotify.close()
            except OSError as e:
                self._logger.debug(f"inotify close failed: {e}")
            self._inotify = None

    def _on_inotify(self) -> None:
        try:
            events = self._inotify.read(timeout=0)
        except OSError as e:
            self._logger.error(f"watch error: {e}")
            self._close_native()
            self._schedule_init(0)
            return
        flags = self._inotify_flags
        for event in events:
            if event.mask & (flags.IGNORED | flags.MOVE_SELF | flags.DELETE_SELF | flags.Q_OVERFLOW):
                # Watched directory went away, or events were lost
                self._close_native()
                self._schedule_init(self.config.rename_delay)
                return
            if self._is_dir:
                self._on_dir_event(event.mask, event.name, flags)
            elif event.name == self.basename:
                if event.mask & (flags.MOVED_TO | flags.CREATE | flags.MOVED_FROM | flags.DELETE):
                    # File replaced or rotated: report, then re-init on the new file
                    self._deliver(None, 'rename', self.basename)
                    self._close_native()
                    self._schedule_init(self.config.rename_delay)
                    return
                if event.mask & (flags.MODIFY | flags.CLOSE_WRITE):
                    self._queue_stat('change', self.basename, self.target)

    def _on_dir_event(self, mask: int, name: str, flags) -> None:
        if not name:
            return
        if mask & (flags.MOVED_TO | flags.CLOSE_WRITE):
            self._queue_stat('rename', name, self.target / name)
        elif mask & flags.MODIFY:
            self._queue_stat('change', name, self.target / name)

    def _queue_stat(self, event_type: str, filename: str, path: Path) -> None:
        """
        Queue a stat of `path`, taken by the pump when the event is delivered.

        Stats run in delivery order, so sizes reported for a growing file never
        go backwards. Repeats for an event still waiting in the queue collapse
        into it.
        """
        key = (event_type, filename)
        if key in self._pending_stats:
            self.metrics.coalesced_events += 1
            return
        self._pending_stats.add(key)
        self._events.put_nowait((None, event_type, filename, path))

    async def _restat(self, event_type: str, filename: str, path: Path) -> Optional[os.stat_result]:
        # Changes from here on need a fresh queue entry
        self._pending_stats.discard((event_type, filename))
        loop = asyncio.get_running_loop()
        try:
            st = await loop.run_in_executor(None, os.stat, path)
        except FileNotFoundError:
            return None
        except OSError as e:
            self.metrics.stat_errors += 1
            self._logger.error(f"STAT -> {path}: {e}")
            return None
        if self._is_dir:
            self._snapshot[filename] = _signature(st)
        return st

    # ==================== Scan mode ====================

    def _list_dir(self) -> Dict[str, os.stat_result]:
        entries = {}
        with os.scandir(self.target) as it:
            for entry in it:
                try:
                    if entry.is_file():
                        entries[entry.name] = entry.stat()
                except FileNotFoundError:
                    continue
        return entries

    async def _stop_polling(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _poll_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.config.scan_interval)
            try:
                if not await self.rescan():
                    self._poll_task = None
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.metrics.stat_errors += 1
                self._logger.error(f"scan of {self.target} failed: {e}")

    async def rescan(self) -> bool:
        """
        Diff the target against the last snapshot and deliver the changes.

        Returns False when the target vanished and a re-init was scheduled.
        """
        loop = asyncio.get_running_loop()
        if self._is_dir:
            try:
                entries = await loop.run_in_executor(None, self._list_dir)
            except FileNotFoundError:
                self._schedule_init(self.config.rename_delay)
                return False
            previous = self._snapshot
            self._snapshot = {name: _signature(st) for name, st in entries.items()}
            for name in sorted(entries):
                sig = self._snapshot[name]
                if name not in previous:
                    self._deliver(entries[name], 'rename', name)
                elif previous[name] != sig:
                    self._deliver(entries[name], 'change', name)
            return True

        try:
            st = await loop.run_in_executor(None, os.stat, self.target)
        except FileNotFoundError:
            if self._snapshot:
                self._deliver(None, 'rename', self.basename)
            self._snapshot = {}
            self._schedule_init(self.config.rename_delay)
            return False
        sig = _signature(st)
        previous = self._snapshot.get(self.basename)
        self._snapshot = {self.basename: sig}
        if previous is None or previous[2] != sig[2]:
            self._deliver(None, 'rename', self.basename)
            self._deliver(st, 'change', self.basename)
        elif previous != sig:
            self._deliver(st, 'change', self.basename)
        return True
