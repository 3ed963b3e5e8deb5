"""Process groups and the teardown arena.

procstream runtime module v0.1.0

- ProcessGroup: registry of live process handles keyed by pid; every
  member is closed exactly once when the group closes
- TeardownArena: registry of live groups; ``close_all()`` runs once at
  host shutdown so that a group nobody closed cannot orphan its children

Groups receive their arena through the constructor. The process-wide
arena is built once by ``TeardownArena.process_wide()``.
"""

from __future__ import annotations

import asyncio
import atexit
import logging
import secrets
from collections.abc import Iterator, Sequence
from typing import ClassVar

from ..config import get_config
from .handles import ProcessHandle
from .process_runner import ProcessRunner, ProcessSpec

__all__ = ["ProcessGroup", "TeardownArena"]

logger = logging.getLogger(__name__)


class TeardownArena:
    """Registry of live process groups, closed all at once on shutdown.

    Example:
        arena = TeardownArena()
        arena.install()  # close_all() at interpreter exit

        group = ProcessGroup(arena)
        ...
        arena.close_all()
    """

    _process_wide: ClassVar["TeardownArena | None"] = None

    def __init__(self) -> None:
        self._groups: dict[str, ProcessGroup] = {}
        self._default: ProcessGroup | None = None
        self._closed = False
        self._installed = False

    @classmethod
    def process_wide(cls) -> "TeardownArena":
        """Return the arena shared by the whole process, installing it on first use."""
        if cls._process_wide is None:
            cls._process_wide = cls()
            cls._process_wide.install()
        return cls._process_wide

    def install(self) -> None:
        """Register ``close_all`` with atexit (only once)."""
        if not self._installed:
            atexit.register(self.close_all)
            self._installed = True

    @property
    def is_closed(self) -> bool:
        return self._closed

    def register(self, group: "ProcessGroup") -> None:
        """Track a group; a group created after ``close_all()`` is closed at once."""
        if self._closed:
            logger.warning(f"Teardown arena already closed, closing new group {group.id}")
            group.close()
            return
        self._groups[group.id] = group

    def unregister(self, group: "ProcessGroup") -> None:
        self._groups.pop(group.id, None)
        if self._default is group:
            self._default = None

    def default_group(self) -> "ProcessGroup":
        """The implicit group used when a caller does not supply one.

        Raises:
            RuntimeError: If the arena has been torn down
        """
        if self._closed:
            raise RuntimeError("teardown arena is closed")
        if self._default is None or self._default.is_closed:
            self._default = ProcessGroup(self)
        return self._default

    def close_live(self) -> int:
        """Close the groups registered now; the arena stays usable.

        Returns:
            Number of groups closed
        """
        groups = list(self._groups.values())
        for group in groups:
            try:
                group.close()
            except Exception as e:
                logger.warning(f"Error closing process group {group.id}: {e}")
        return len(groups)

    def close_all(self) -> int:
        """Close every registered group and refuse new ones. Runs once; later calls return 0.

        Returns:
            Number of groups closed
        """
        if self._closed:
            return 0
        self._closed = True

        count = self.close_live()
        self._groups.clear()
        self._default = None

        if count:
            logger.debug(f"Teardown closed {count} process group(s)")
        return count

    def __len__(self) -> int:
        return len(self._groups)

    def __iter__(self) -> Iterator["ProcessGroup"]:
        return iter(list(self._groups.values()))


class ProcessGroup:
    """Lifetime unit for a set of spawned processes.

    Example:
        async with ProcessGroup() as group:
            handle = await group.spawn(ProcessSpec(["sleep", "10"]))
            ...
        # every member is terminated and closed here
    """

    def __init__(
        self,
        arena: TeardownArena | None = None,
        *,
        term_timeout: float | None = None,
        kill_timeout: float | None = None,
        read_size: int | None = None,
    ) -> None:
        config = get_config()
        self.id = secrets.token_hex(5)
        self.arena = arena if arena is not None else TeardownArena.process_wide()
        self.runner = ProcessRunner(
            term_timeout=term_timeout if term_timeout is not None else config.term_timeout,
            kill_timeout=kill_timeout if kill_timeout is not None else config.kill_timeout,
        )
        self.read_size = read_size or config.read_chunk_size
        self._handles: dict[int, ProcessHandle] = {}
        self._closed = False
        self.arena.register(self)

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def handles(self) -> list[ProcessHandle]:
        return list(self._handles.values())

    async def spawn(
        self,
        spec: ProcessSpec | Sequence[str],
    ) -> ProcessHandle:
        """Spawn a process into the group without waiting for it to finish.

        Args:
            spec: Process specification, or a bare command vector

        Returns:
            The registered process handle

        Raises:
            RuntimeError: If the group is closed
            OSError: If the process cannot be started
        """
        if self._closed:
            raise RuntimeError(f"process group {self.id} is closed")
        if not isinstance(spec, ProcessSpec):
            spec = ProcessSpec(spec)

        transport, protocol, process = await self.runner.spawn(spec)
        handle = ProcessHandle(
            spec,
            transport,
            protocol,
            process,
            runner=self.runner,
            group=self,
            read_size=self.read_size,
        )

        # the group may have been closed while the spawn was in flight
        if self._closed:
            handle.close()
            raise RuntimeError(f"process group {self.id} is closed")

        self._handles[handle.pid] = handle
        return handle

    def remove(self, pid: int) -> ProcessHandle | None:
        return self._handles.pop(pid, None)

    def get(self, pid: int) -> ProcessHandle | None:
        return self._handles.get(pid)

    def close(self) -> None:
        """Close every member immediately and leave the arena; idempotent."""
        if self._closed:
            return
        self._closed = True
        self._close_members()
        self.arena.unregister(self)
        logger.debug(f"Closed process group {self.id}")

    async def aclose(self) -> None:
        """Terminate every member gracefully and concurrently, then close."""
        if self._closed:
            return
        self._closed = True
        try:
            results = await asyncio.gather(
                *(handle.aclose() for handle in self.handles),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    logger.warning(f"Error closing process in group {self.id}: {result}")
        finally:
            self._close_members()
            self.arena.unregister(self)
            logger.debug(f"Closed process group {self.id}")

    def _close_members(self) -> None:
        for handle in self.handles:
            try:
                handle.close()
            except Exception as e:
                logger.warning(f"Error closing process pid={handle.pid}: {e}")
        self._handles.clear()

    def __len__(self) -> int:
        return len(self._handles)

    def __contains__(self, pid: object) -> bool:
        return pid in self._handles

    def __enter__(self) -> "ProcessGroup":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    async def __aenter__(self) -> "ProcessGroup":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"ProcessGroup(id={self.id}, members={len(self)}, {state})"
