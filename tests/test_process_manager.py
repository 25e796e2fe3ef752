"""Tests for the process ownership table."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

from claudebridge.bridge.process_manager import ProcessManager, terminate_process

SLEEPER = "import time; time.sleep(30)"


async def spawn(code: str = SLEEPER) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        sys.executable, "-c", code, stdout=asyncio.subprocess.DEVNULL
    )


class TestRegistration:
    """Test register/unregister semantics."""

    async def test_register_and_get(self, process_manager: ProcessManager) -> None:
        process = await spawn()
        try:
            process_manager.register_process("c1", process)
            assert process_manager.get_process("c1") is process
            assert process_manager.get_active_process_count() == 1
        finally:
            await terminate_process(process, 1, 1)

    async def test_unregister_is_identity_guarded(self, process_manager: ProcessManager) -> None:
        """Test an old handle cannot remove a newer registration."""
        old = await spawn("pass")
        await old.wait()
        new = await spawn()
        try:
            process_manager.register_process("c1", old)
            process_manager.register_process("c1", new)

            assert process_manager.unregister_process("c1", old) is False
            assert process_manager.get_process("c1") is new
            assert process_manager.unregister_process("c1", new) is True
            assert process_manager.get_process("c1") is None
        finally:
            await terminate_process(new, 1, 1)

    async def test_reregister_kills_live_previous(self, process_manager: ProcessManager) -> None:
        """Test a channel never keeps two live processes."""
        first = await spawn()
        second = await spawn()
        try:
            process_manager.register_process("c1", first)
            process_manager.register_process("c1", second)

            await asyncio.wait_for(first.wait(), timeout=5)
            assert first.returncode is not None
            assert process_manager.get_process("c1") is second
            assert process_manager.get_active_process_count() == 1
        finally:
            await terminate_process(second, 1, 1)

    async def test_exited_processes_not_counted(self, process_manager: ProcessManager) -> None:
        process = await spawn("pass")
        process_manager.register_process("c1", process)
        await process.wait()
        assert process_manager.get_active_process_count() == 0


class TestInterrupt:
    """Test interrupts and shutdown."""

    async def test_interrupt_marks_and_terminates(self, process_manager: ProcessManager) -> None:
        process = await spawn()
        notified: list[str] = []
        process_manager.add_interrupt_listener(notified.append)
        process_manager.register_process("c1", process)

        assert await process_manager.interrupt_channel("c1") is True

        assert process.returncode is not None
        assert process_manager.was_interrupted("c1")
        assert notified == ["c1"]

    async def test_interrupt_unknown_channel(self, process_manager: ProcessManager) -> None:
        assert await process_manager.interrupt_channel("missing") is False
        assert await process_manager.interrupt_channel(None) is False
        assert not process_manager.was_interrupted("missing")

    async def test_register_clears_interrupt_flag(self, process_manager: ProcessManager) -> None:
        first = await spawn()
        process_manager.register_process("c1", first)
        await process_manager.interrupt_channel("c1")

        second = await spawn()
        try:
            process_manager.register_process("c1", second)
            assert not process_manager.was_interrupted("c1")
        finally:
            await terminate_process(second, 1, 1)

    async def test_listener_removal_and_failure(self, process_manager: ProcessManager) -> None:
        calls: list[str] = []

        def broken(channel_id: str) -> None:
            raise RuntimeError("listener bug")

        process_manager.add_interrupt_listener(broken)
        remove = process_manager.add_interrupt_listener(calls.append)
        remove()

        process = await spawn()
        process_manager.register_process("c1", process)
        assert await process_manager.interrupt_channel("c1") is True
        assert calls == []
        assert process.returncode is not None

    async def test_cleanup_all(self, process_manager: ProcessManager) -> None:
        notified: list[str] = []
        process_manager.add_interrupt_listener(notified.append)
        processes = [await spawn() for _ in range(3)]
        for i, process in enumerate(processes):
            process_manager.register_process(f"c{i}", process)

        assert await process_manager.cleanup_all_processes() == 3

        assert all(p.returncode is not None for p in processes)
        assert process_manager.get_active_process_count() == 0
        assert sorted(notified) == ["c0", "c1", "c2"]
        assert all(process_manager.was_interrupted(f"c{i}") for i in range(3))

    async def test_cleanup_all_keeps_registrations_for_owners(
        self, process_manager: ProcessManager
    ) -> None:
        """Test each owner can still unregister its own process after shutdown."""
        process = await spawn()
        process_manager.register_process("c1", process)

        await process_manager.cleanup_all_processes()

        assert process_manager.get_process("c1") is process
        assert process_manager.unregister_process("c1", process) is True
        assert process_manager.was_interrupted("c1")

    async def test_terminate_escalates_to_kill(self) -> None:
        """Test a child ignoring SIGTERM is force killed."""
        if sys.platform == "win32":
            pytest.skip("terminate is already a kill on Windows")
        code = (
            "import signal, sys, time\n"
            "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
            "print('ready', flush=True)\n"
            "time.sleep(30)\n"
        )
        process = await asyncio.create_subprocess_exec(
            sys.executable, "-c", code, stdout=asyncio.subprocess.PIPE
        )
        await process.stdout.readline()

        assert await terminate_process(process, terminate_grace=0.3, kill_grace=2) is True
        assert process.returncode is not None

    async def test_wait_for_termination_bounded(self, process_manager: ProcessManager) -> None:
        process = await spawn()
        try:
            await process_manager.wait_for_process_termination(process, timeout=0.1)
            assert process.returncode is None
            await process_manager.wait_for_process_termination(None)
        finally:
            await terminate_process(process, 1, 1)


class TestTempFiles:
    """Test scratch file snapshot and cleanup."""

    def test_only_new_matching_files_deleted(self, process_manager: ProcessManager) -> None:
        """Test pre-existing and non-matching files survive cleanup."""
        temp_dir = process_manager.prepare_temp_dir()
        assert temp_dir is not None and temp_dir.is_dir()

        (temp_dir / "a.txt").write_text("keep")
        (temp_dir / "claude-old-cwd").write_text("keep")
        before = process_manager.snapshot_temp_files(temp_dir)

        (temp_dir / "b.txt").write_text("other")
        (temp_dir / "claude-1234-cwd").write_text("child")

        deleted = process_manager.cleanup_temp_files(temp_dir, before)

        assert deleted == ["claude-1234-cwd"]
        assert (temp_dir / "a.txt").exists()
        assert (temp_dir / "b.txt").exists()
        assert (temp_dir / "claude-old-cwd").exists()

    def test_pattern_is_configurable(self, tmp_path: Path) -> None:
        from claudebridge.config.schema import ProcessConfig

        manager = ProcessManager(ProcessConfig(temp_file_pattern="*.txt"), temp_root=tmp_path)
        temp_dir = manager.prepare_temp_dir()
        (temp_dir / "a.txt").write_text("old")
        before = manager.snapshot_temp_files(temp_dir)
        (temp_dir / "b.txt").write_text("new")

        assert manager.cleanup_temp_files(temp_dir, before) == ["b.txt"]
        assert (temp_dir / "a.txt").exists()
        assert not (temp_dir / "b.txt").exists()

    def test_missing_dir_is_harmless(self, process_manager: ProcessManager, tmp_path: Path) -> None:
        assert process_manager.snapshot_temp_files(None) == frozenset()
        assert process_manager.cleanup_temp_files(tmp_path / "nope", frozenset()) == []
