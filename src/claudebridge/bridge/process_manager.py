"""Ownership table for bridge child processes.

One ProcessManager is created by the host and handed to every bridge that
spawns or interrupts processes. It maps channel ids to live
``asyncio.subprocess.Process`` handles, tracks which channels were
interrupted by the user, and cleans up scratch files children leave behind.
"""

from __future__ import annotations

import asyncio
import fnmatch
import tempfile
from collections.abc import Callable
from pathlib import Path

from claudebridge.config.schema import ProcessConfig
from claudebridge.logging import get_logger

log = get_logger("process")

InterruptListener = Callable[[str], None]

# asyncio StreamReader line limit; [MESSAGE] lines can carry whole tool results
STREAM_LIMIT = 16 * 1024 * 1024


async def terminate_process(
    process: asyncio.subprocess.Process,
    terminate_grace: float = 3.0,
    kill_grace: float = 2.0,
) -> bool:
    """Terminate, wait, then force kill. Never raises.

    Returns:
        True if the process is known to have exited.
    """
    if process.returncode is not None:
        return True

    try:
        process.terminate()
    except ProcessLookupError:
        return True  # Already gone
    try:
        await asyncio.wait_for(process.wait(), timeout=terminate_grace)
        return True
    except asyncio.TimeoutError:
        pass

    log.info("Process %s still alive after %.1fs, force killing", process.pid, terminate_grace)
    try:
        process.kill()
    except ProcessLookupError:
        return True
    try:
        await asyncio.wait_for(process.wait(), timeout=kill_grace)
        return True
    except asyncio.TimeoutError:
        log.warning("Process %s may still be alive after kill", process.pid)
        return False


class ProcessManager:
    """Tracks at most one live process per channel."""

    def __init__(
        self,
        config: ProcessConfig | None = None,
        temp_root: Path | None = None,
    ) -> None:
        self._config = config or ProcessConfig()
        self._temp_root = temp_root
        self._processes: dict[str, asyncio.subprocess.Process] = {}
        self._interrupted: set[str] = set()
        self._interrupt_listeners: list[InterruptListener] = []

    @property
    def config(self) -> ProcessConfig:
        return self._config

    def add_interrupt_listener(self, listener: InterruptListener) -> Callable[[], None]:
        """Call ``listener(channel_id)`` whenever a channel is interrupted.

        Returns:
            A function that removes the listener.
        """
        self._interrupt_listeners.append(listener)

        def remove() -> None:
            if listener in self._interrupt_listeners:
                self._interrupt_listeners.remove(listener)

        return remove

    def register_process(self, channel_id: str, process: asyncio.subprocess.Process) -> None:
        """Record ``process`` for the channel and clear its interrupt flag.

        A different live process already registered for the channel is
        killed first so it cannot be orphaned.
        """
        previous = self._processes.get(channel_id)
        if previous is not None and previous is not process and previous.returncode is None:
            log.warning(
                "Channel %s re-registered while pid %s is alive; killing it",
                channel_id,
                previous.pid,
            )
            try:
                previous.kill()
            except ProcessLookupError:
                pass  # Exited in the meantime

        self._processes[channel_id] = process
        self._interrupted.discard(channel_id)
        log.debug("Registered pid %s for channel %s", process.pid, channel_id)

    def unregister_process(self, channel_id: str, process: asyncio.subprocess.Process) -> bool:
        """Remove the registration only if it still points at ``process``."""
        if self._processes.get(channel_id) is process:
            del self._processes[channel_id]
            return True
        return False

    def get_process(self, channel_id: str) -> asyncio.subprocess.Process | None:
        return self._processes.get(channel_id)

    def was_interrupted(self, channel_id: str) -> bool:
        return channel_id in self._interrupted

    async def interrupt_channel(self, channel_id: str | None) -> bool:
        """Mark the channel interrupted and stop its process.

        Listeners run before termination so pending dialogs resolve
        immediately. Never raises.

        Returns:
            True if a registered process was found.
        """
        if channel_id is None:
            return False

        process = self._processes.get(channel_id)
        if process is None:
            log.info("No active process for channel %s", channel_id)
            return False

        log.info("Interrupting channel %s (pid %s)", channel_id, process.pid)
        self._mark_interrupted(channel_id)

        exited = await terminate_process(
            process, self._config.terminate_grace, self._config.kill_grace
        )
        if exited:
            log.info("Terminated channel %s", channel_id)
        return True

    async def cleanup_all_processes(self) -> int:
        """Interrupt every registered process; used at host shutdown.

        Registrations stay until each run unregisters its own process, so
        the runs finalize as interrupted.

        Returns:
            How many live processes were asked to stop.
        """
        channels = [c for c, p in self._processes.items() if p.returncode is None]
        live = [self._processes[c] for c in channels]
        log.info("Cleaning up %d active processes", len(live))
        for channel_id in channels:
            self._mark_interrupted(channel_id)
        if live:
            await asyncio.gather(
                *(
                    terminate_process(p, self._config.terminate_grace, self._config.kill_grace)
                    for p in live
                )
            )
        return len(live)

    def _mark_interrupted(self, channel_id: str) -> None:
        self._interrupted.add(channel_id)
        for listener in list(self._interrupt_listeners):
            try:
                listener(channel_id)
            except Exception:
                log.exception("Interrupt listener failed for channel %s", channel_id)

    def get_active_process_count(self) -> int:
        return sum(1 for p in self._processes.values() if p.returncode is None)

    async def wait_for_process_termination(
        self, process: asyncio.subprocess.Process | None, timeout: float | None = None
    ) -> None:
        if process is None or process.returncode is not None:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout or self._config.exit_wait)
        except asyncio.TimeoutError:
            log.warning("Process %s did not exit within the wait window", process.pid)

    # -- scratch directory -------------------------------------------------

    def prepare_temp_dir(self) -> Path | None:
        """Create (if needed) the scratch directory children use as TMPDIR."""
        base = self._temp_root or Path(tempfile.gettempdir())
        temp_dir = base / self._config.temp_dir_name
        try:
            temp_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.error("Failed to prepare temp dir %s: %s", temp_dir, e)
            return None
        return temp_dir

    def _matching_files(self, temp_dir: Path) -> list[Path]:
        pattern = self._config.temp_file_pattern
        try:
            return [p for p in temp_dir.iterdir() if fnmatch.fnmatch(p.name, pattern) and p.is_file()]
        except OSError as e:
            log.debug("Cannot list %s: %s", temp_dir, e)
            return []

    def snapshot_temp_files(self, temp_dir: Path | None) -> frozenset[str]:
        """Names of scratch files that exist before a child starts."""
        if temp_dir is None or not temp_dir.is_dir():
            return frozenset()
        return frozenset(p.name for p in self._matching_files(temp_dir))

    def cleanup_temp_files(self, temp_dir: Path | None, before: frozenset[str]) -> list[str]:
        """Delete matching files that were not in the ``before`` snapshot.

        Returns:
            Names of the files that were deleted.
        """
        if temp_dir is None or not temp_dir.is_dir():
            return []

        deleted = []
        for path in self._matching_files(temp_dir):
            if path.name in before:
                continue
            try:
                path.unlink(missing_ok=True)
                deleted.append(path.name)
            except OSError as e:
                log.error("Failed to delete temp file %s: %s", path, e)
        if deleted:
            log.debug("Removed %d scratch files from %s", len(deleted), temp_dir)
        return deleted
