"""Tests for process spawning, handles, groups and the teardown arena.

Test coverage:
- ProcessSpec validation (string argv, empty argv, file:// URLs, env merge)
- ExitStatus from return codes (including signals)
- ProcessHandle: exit status, idempotent close, graceful aclose, escalation to SIGKILL
- ScopedReader/ScopedWriter close semantics
- ProcessGroup: spawn, close closes every member exactly once, closed-group spawn
- TeardownArena: close_all runs once, groups created afterwards are closed,
  close_live keeps the arena usable, default group, process-wide singleton
"""

from __future__ import annotations

import asyncio
import signal
import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from conftest import IS_WINDOWS, fake_cli
from procstream.runtime import ExitStatus, ProcessGroup, ProcessSpec, TeardownArena


# =============================================================================
# ProcessSpec Tests
# =============================================================================


class TestProcessSpec:
    """Test ProcessSpec construction."""

    def test_string_argv_rejected(self):
        with pytest.raises(TypeError):
            ProcessSpec("ls -l")

    def test_empty_argv_rejected(self):
        with pytest.raises(ValueError):
            ProcessSpec([])

    def test_argv_is_tuple_of_str(self, tmp_path: Path):
        spec = ProcessSpec([tmp_path / "tool", "--flag"], cwd=str(tmp_path))
        assert spec.argv == (str(tmp_path / "tool"), "--flag")
        assert spec.cwd == tmp_path

    @pytest.mark.skipif(IS_WINDOWS, reason="POSIX path")
    def test_file_url_executable(self):
        spec = ProcessSpec(["file:///usr/bin/env", "true"])
        assert spec.argv == ("/usr/bin/env", "true")

    def test_env_merged_over_host(self):
        assert ProcessSpec(["x"]).merged_env() is None
        env = ProcessSpec(["x"], env={"PROCSTREAM_TEST_VAR": "1"}).merged_env()
        assert env is not None
        assert env["PROCSTREAM_TEST_VAR"] == "1"
        assert "PATH" in env or "Path" in env


class TestExitStatus:
    """Test ExitStatus.from_returncode."""

    def test_success(self):
        status = ExitStatus.from_returncode(0)
        assert status.success is True
        assert status.code == 0
        assert status.signal is None

    def test_failure_code(self):
        status = ExitStatus.from_returncode(17)
        assert status.success is False
        assert status.code == 17

    def test_signal(self):
        status = ExitStatus.from_returncode(-9)
        assert status.success is False
        assert status.signal == 9
        assert status.code == 137


# =============================================================================
# ProcessHandle Tests
# =============================================================================


class TestProcessHandle:
    """Test a single spawned process."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_exit_status_and_output(self, group: ProcessGroup):
        handle = await group.spawn(fake_cli("--lines", "2", "--exit-code", "3"))
        handle.stdin.close()
        output = b"".join([chunk async for chunk in handle.stdout])
        status = await handle.wait()

        assert output.splitlines() == [b"line 1", b"line 2"]
        assert status.code == 3
        assert handle.returncode == 3
        assert not handle.is_running
        handle.close()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_env_and_cwd(self, group: ProcessGroup, tmp_path: Path):
        code = "import os; print(os.getcwd()); print(os.environ['PROCSTREAM_TEST_VAR'])"
        spec = ProcessSpec(
            [sys.executable, "-c", code],
            cwd=tmp_path,
            env={"PROCSTREAM_TEST_VAR": "hello"},
        )
        handle = await group.spawn(spec)
        output = b"".join([chunk async for chunk in handle.stdout]).decode()
        await handle.wait()
        handle.close()

        lines = output.splitlines()
        assert Path(lines[0]).resolve() == tmp_path.resolve()
        assert lines[1] == "hello"

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_close_is_idempotent(self, group: ProcessGroup):
        handle = await group.spawn(fake_cli("--sleep", "30"))
        pid = handle.pid
        assert pid in group

        handle.close()
        handle.close()

        assert handle.is_closed
        assert pid not in group
        assert handle.stdin.is_closed
        assert handle.stdout.is_closed
        assert handle.stderr.is_closed
        status = await asyncio.wait_for(handle.wait(), timeout=5)
        assert not status.success

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(IS_WINDOWS, reason="SIGKILL semantics are POSIX")
    async def test_close_kills_running_process(self, group: ProcessGroup):
        handle = await group.spawn(fake_cli("--sleep", "30"))
        handle.close()
        status = await asyncio.wait_for(handle.wait(), timeout=5)
        assert status.signal == signal.SIGKILL

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(IS_WINDOWS, reason="SIGTERM handling is POSIX")
    async def test_aclose_terminates_gracefully(self, group: ProcessGroup):
        handle = await group.spawn(fake_cli("--stderr", "ready", "--sleep", "30"))
        # the script writes stderr after installing its signal handlers
        assert await handle.stderr.read() == b"ready\n"
        await handle.aclose()
        status = await handle.wait()
        assert status.code == 128 + signal.SIGTERM
        assert handle.is_closed

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    @pytest.mark.skipif(IS_WINDOWS, reason="SIGTERM handling is POSIX")
    async def test_aclose_escalates_to_sigkill(self, group: ProcessGroup):
        handle = await group.spawn(fake_cli("--stderr", "ready", "--sleep", "30", "--ignore-term"))
        assert await handle.stderr.read() == b"ready\n"
        await handle.aclose()
        status = await handle.wait()
        assert status.signal == signal.SIGKILL

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_write_after_close_raises(self, group: ProcessGroup):
        handle = await group.spawn(fake_cli("--echo"))
        await handle.stdin.write(b"ping\n")
        handle.stdin.close()
        handle.stdin.close()
        with pytest.raises(BrokenPipeError):
            await handle.stdin.write(b"more")
        assert await handle.stdout.read() == b"ping\n"
        await handle.wait()
        handle.close()
        assert await handle.stdout.read() == b""

    @pytest.mark.asyncio
    async def test_spawn_missing_executable(self, group: ProcessGroup, tmp_path: Path):
        with pytest.raises(OSError):
            await group.spawn([str(tmp_path / "does-not-exist")])
        assert len(group) == 0


# =============================================================================
# ProcessGroup Tests
# =============================================================================


class TestProcessGroup:
    """Test process group lifecycle."""

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_close_closes_every_member(self, arena: TeardownArena):
        group = ProcessGroup(arena, term_timeout=0.5, kill_timeout=0.3)
        handles = [await group.spawn(fake_cli("--sleep", "30")) for _ in range(3)]
        assert len(group) == 3
        assert len({handle.pid for handle in handles}) == 3

        group.close()
        assert group.is_closed
        assert len(group) == 0
        assert all(handle.is_closed for handle in handles)
        assert group not in list(arena)

        # second close is a no-op
        group.close()
        for handle in handles:
            await asyncio.wait_for(handle.wait(), timeout=5)

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_aclose_terminates_concurrently(self, arena: TeardownArena):
        group = ProcessGroup(arena, term_timeout=0.5, kill_timeout=0.3)
        handles = [await group.spawn(fake_cli("--sleep", "30", "--ignore-term")) for _ in range(3)]

        loop = asyncio.get_running_loop()
        started = loop.time()
        await group.aclose()
        elapsed = loop.time() - started

        assert all(handle.returncode is not None for handle in handles)
        assert all(handle.is_closed for handle in handles)
        # one escalation window, not one per member
        assert elapsed < 3 * 0.5

    @pytest.mark.asyncio
    async def test_spawn_into_closed_group(self, group: ProcessGroup):
        group.close()
        with pytest.raises(RuntimeError):
            await group.spawn(fake_cli())

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_async_context_manager(self, arena: TeardownArena):
        async with ProcessGroup(arena, term_timeout=0.5, kill_timeout=0.3) as group:
            handle = await group.spawn(fake_cli("--sleep", "30"))
            assert group.get(handle.pid) is handle
        assert group.is_closed
        assert handle.is_closed
        assert handle.returncode is not None

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_exited_member_removed_on_close(self, group: ProcessGroup):
        handle = await group.spawn(fake_cli())
        await handle.wait()
        assert handle.pid in group
        handle.close()
        assert handle.pid not in group
        assert group.remove(handle.pid) is None


# =============================================================================
# TeardownArena Tests
# =============================================================================


class TestTeardownArena:
    """Test the teardown arena."""

    def test_close_all_runs_once(self):
        arena = TeardownArena()
        first = ProcessGroup(arena)
        second = ProcessGroup(arena)
        assert len(arena) == 2

        assert arena.close_all() == 2
        assert arena.close_all() == 0
        assert arena.is_closed
        assert first.is_closed and second.is_closed
        assert len(arena) == 0

    def test_default_group(self):
        arena = TeardownArena()
        group = arena.default_group()
        assert arena.default_group() is group
        group.close()
        replacement = arena.default_group()
        assert replacement is not group
        arena.close_all()
        assert replacement.is_closed

    def test_group_created_after_close_all_is_closed(self):
        arena = TeardownArena()
        arena.close_all()
        late = ProcessGroup(arena)
        assert late.is_closed
        assert len(arena) == 0

    def test_default_group_after_close_all_raises(self):
        arena = TeardownArena()
        arena.close_all()
        with pytest.raises(RuntimeError, match="closed"):
            arena.default_group()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_close_live_keeps_arena_usable(self):
        arena = TeardownArena()
        first = ProcessGroup(arena, term_timeout=0.5, kill_timeout=0.3)
        await first.spawn(fake_cli("--sleep", "30"))

        assert arena.close_live() == 1
        assert first.is_closed
        assert not arena.is_closed

        later = arena.default_group()
        handle = await later.spawn(fake_cli("--sleep", "30"))
        assert arena.close_all() == 1
        assert later.is_closed
        status = await asyncio.wait_for(handle.wait(), timeout=5)
        assert not status.success

    def test_group_id_is_ten_hex_chars(self):
        arena = TeardownArena()
        group = ProcessGroup(arena)
        assert len(group.id) == 10
        int(group.id, 16)
        arena.close_all()

    def test_process_wide_is_singleton(self):
        assert TeardownArena.process_wide() is TeardownArena.process_wide()

    @pytest.mark.asyncio
    @pytest.mark.timeout(10)
    async def test_close_all_kills_live_processes(self):
        arena = TeardownArena()
        group = ProcessGroup(arena, term_timeout=0.5, kill_timeout=0.3)
        handle = await group.spawn(fake_cli("--sleep", "30"))
        assert arena.close_all() == 1
        status = await asyncio.wait_for(handle.wait(), timeout=5)
        assert not status.success
