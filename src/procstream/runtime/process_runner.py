"""Process spawning with subprocess isolation and reliable termination.

procstream runtime module v0.1.0

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Exit notification that does not depend on the pipes being closed
- Reliable termination with graceful shutdown (SIGTERM -> timeout -> SIGKILL)
- Synchronous last-resort kill by pid for host teardown

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination signals the process group, not just the main process
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
    "ExitAwareProtocol",
    "kill_process_group",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL
DEFAULT_STREAM_LIMIT = 2**16


def _resolve_executable(executable: str | os.PathLike[str]) -> str:
    """Turn ``file://`` URLs into local paths; leave everything else alone."""
    text = os.fspath(executable)
    if text.startswith("file:"):
        parsed = urlparse(text)
        return url2pathname(unquote(parsed.path))
    return text


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to spawn.

    Attributes:
        argv: Command vector (first element is the executable, a path or a file:// URL)
        cwd: Working directory for the process (None = inherit)
        env: Environment overrides merged over the host environment (None = inherit)
    """

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = field(default=None, hash=False)

    def __init__(
        self,
        argv: Sequence[str | os.PathLike[str]],
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if isinstance(argv, (str, bytes)):
            raise TypeError("argv must be a sequence of arguments, not a string")
        if not argv:
            raise ValueError("argv must contain at least the executable")
        resolved = (_resolve_executable(argv[0]), *(os.fspath(a) for a in argv[1:]))
        object.__setattr__(self, "argv", resolved)
        object.__setattr__(self, "cwd", Path(cwd) if cwd is not None else None)
        object.__setattr__(self, "env", dict(env) if env is not None else None)

    def merged_env(self) -> dict[str, str] | None:
        """Host environment with overrides applied, or None to inherit unchanged."""
        if self.env is None:
            return None
        return {**os.environ, **self.env}


class ExitAwareProtocol(asyncio.subprocess.SubprocessStreamProtocol):
    """Stream protocol that resolves ``exited`` as soon as the process exits.

    ``Process.wait()`` only returns once every pipe is disconnected, so a
    process whose pipes are still open would look alive. ``exited`` is set
    from ``process_exited`` instead and resolves exactly once.
    """

    def __init__(self, limit: int, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__(limit=limit, loop=loop)
        self.exited: asyncio.Future[int] = loop.create_future()
        self.subprocess_transport: asyncio.SubprocessTransport | None = None

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.subprocess_transport = transport  # type: ignore[assignment]
        super().connection_made(transport)

    def process_exited(self) -> None:
        if not self.exited.done() and self.subprocess_transport is not None:
            self.exited.set_result(self.subprocess_transport.get_returncode())
        super().process_exited()


def kill_process_group(pid: int, sig: int | None = None) -> None:
    """Signal a process group synchronously, ignoring processes that are gone.

    Used where no event loop can be relied on (host teardown, sync close).

    Args:
        pid: Process id (also the group id because of start_new_session)
        sig: Signal to send (default SIGKILL, or TerminateProcess on Windows)
    """
    try:
        if IS_WINDOWS:
            os.kill(pid, sig if sig is not None else signal.SIGTERM)
        else:
            os.killpg(os.getpgid(pid), sig if sig is not None else signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
    except OSError as e:
        logger.debug(f"Failed to signal process group pid={pid}: {e}")


@dataclass
class ProcessRunner:
    """Cross-platform process spawner with isolation and reliable termination.

    Example:
        runner = ProcessRunner()
        transport, protocol, process = await runner.spawn(ProcessSpec(["ls", "-l"]))
        ...
        await runner.terminate(process, protocol.exited)
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    limit: int = DEFAULT_STREAM_LIMIT

    async def spawn(
        self,
        spec: ProcessSpec,
    ) -> tuple[asyncio.SubprocessTransport, ExitAwareProtocol, asyncio.subprocess.Process]:
        """Start a subprocess with all three standard streams piped.

        Args:
            spec: Process specification

        Returns:
            Tuple of (transport, protocol, process)

        Raises:
            OSError: If the executable cannot be started
        """
        loop = asyncio.get_running_loop()
        kwargs = self._build_subprocess_kwargs(spec)

        transport, protocol = await loop.subprocess_exec(
            lambda: ExitAwareProtocol(limit=self.limit, loop=loop),
            *spec.argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            **kwargs,
        )
        process = asyncio.subprocess.Process(transport, protocol, loop)

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )
        return transport, protocol, process

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for loop.subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd

        env = spec.merged_env()
        if env is not None:
            kwargs["env"] = env

        # Platform-specific isolation
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def terminate(
        self,
        process: asyncio.subprocess.Process,
        exited: asyncio.Future[int],
    ) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit

        Args:
            process: The subprocess to terminate
            exited: Future resolved with the return code when the process exits
        """
        pid = process.pid
        if exited.done():
            return
        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                self._windows_terminate(process)
            else:
                self._posix_terminate(process)

            try:
                await asyncio.wait_for(asyncio.shield(exited), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={exited.result()}"
                )
                return
            except asyncio.TimeoutError:
                pass

            logger.debug(f"Force killing subprocess pid={pid}")
            if IS_WINDOWS:
                self._windows_kill(process)
            else:
                self._posix_kill(process)

            try:
                await asyncio.wait_for(asyncio.shield(exited), timeout=self.kill_timeout)
                logger.debug(
                    f"Subprocess killed pid={pid} "
                    f"returncode={exited.result()}"
                )
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")
        except OSError as e:
            logger.warning(f"Error terminating subprocess pid={pid}: {e}")

    def _posix_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGTERM to the process group on POSIX systems."""
        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGTERM)
            logger.debug(f"Sent SIGTERM to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to terminate: {e}")
            process.terminate()

    def _posix_kill(self, process: asyncio.subprocess.Process) -> None:
        """Send SIGKILL to the process group on POSIX systems."""
        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            process.kill()

    def _windows_terminate(self, process: asyncio.subprocess.Process) -> None:
        """Send CTRL_BREAK_EVENT to the process group on Windows."""
        try:
            os.kill(process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            process.terminate()

    def _windows_kill(self, process: asyncio.subprocess.Process) -> None:
        """Force kill on Windows."""
        try:
            process.kill()
            logger.debug(f"Called kill() on pid={process.pid}")
        except ProcessLookupError:
            pass
