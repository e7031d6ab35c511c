"""Shared-source watch — signals when the captured window or screen disappears."""

import asyncio
from typing import Callable

from config import WINDOW_POLL_INTERVAL


class CancellationSignal:
    """One-shot flag with callbacks, checked by long-running work at yield points."""

    def __init__(self):
        self._event = asyncio.Event()
        self._callbacks: list[Callable] = []
        self.reason: str | None = None

    def is_set(self) -> bool:
        return self._event.is_set()

    def set(self, reason: str = "cancelled"):
        """Set the flag and fire callbacks once; later calls are ignored."""
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for callback in list(self._callbacks):
            callback(reason)

    def add_callback(self, callback: Callable):
        """callback(reason); fires immediately if the signal is already set."""
        if self._event.is_set():
            callback(self.reason)
        else:
            self._callbacks.append(callback)

    async def wait(self):
        await self._event.wait()


class SourceMonitor:
    """Watches one capture source at a time."""

    def __init__(self):
        self.source_id: str | None = None
        self.signal: CancellationSignal | None = None

    @property
    def watching(self) -> bool:
        return self.source_id is not None

    def watch(self, source_id: str) -> CancellationSignal:
        """Start watching source_id, replacing any previous watch."""
        self.unwatch()
        self.source_id = source_id
        self.signal = CancellationSignal()
        self._start()
        return self.signal

    def unwatch(self):
        """Tear down the current watch. Safe to call when not watching."""
        if self.source_id is None:
            return
        self._stop()
        self.source_id = None

    def _start(self):
        pass

    def _stop(self):
        pass


class PollingSourceMonitor(SourceMonitor):
    """Polls a source catalog until the watched source is gone."""

    def __init__(self, catalog, poll_interval: float = WINDOW_POLL_INTERVAL, verbose: bool = False):
        super().__init__()
        self.catalog = catalog
        self.poll_interval = poll_interval
        self.verbose = verbose
        self._task: asyncio.Task | None = None
        self._running = False

    def _start(self):
        self._running = True
        self._task = asyncio.create_task(self._run(self.source_id, self.signal))
        print(f"  [watch] Watching source {self.source_id} (every {self.poll_interval}s)")

    def _stop(self):
        self._running = False
        task, self._task = self._task, None
        # A callback fired from the poll task may tear the watch down itself
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _run(self, source_id: str, signal: CancellationSignal):
        while self._running and not signal.is_set():
            await asyncio.sleep(self.poll_interval)
            if not self._running:
                break
            self._check(source_id, signal)

    def _check(self, source_id: str, signal: CancellationSignal):
        try:
            present = self.catalog.has_source(source_id)
        except Exception as e:
            print(f"  [watch] Source check failed: {e}")
            return
        if self.verbose:
            print(f"  [watch] {source_id}: {'present' if present else 'gone'}")
        if not present:
            print(f"  [watch] Source {source_id} is no longer available")
            signal.set("source-closed")


class PushSourceMonitor(SourceMonitor):
    """Relies on the platform to report closed sources via notify_closed()."""

    def notify_closed(self, source_id: str, reason: str = "source-closed"):
        if self.signal is not None and source_id == self.source_id:
            print(f"  [watch] Source {source_id} closed ({reason})")
            self.signal.set(reason)
