from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

log = logging.getLogger("agent_bridge")


class CancelToken:
    """Per-run abort flag.

    ``abort()`` flips the flag, terminates the attached child process (best
    effort) and runs registered callbacks once. Adapters attach their process
    as soon as it is spawned.
    """

    def __init__(self, run_id: str) -> None:
        self.run_id = run_id
        self._event = asyncio.Event()
        self._proc: asyncio.subprocess.Process | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def attach_process(self, proc: asyncio.subprocess.Process) -> None:
        self._proc = proc
        if self.aborted:
            _terminate(proc)

    def detach_process(self, proc: asyncio.subprocess.Process) -> None:
        if self._proc is proc:
            self._proc = None

    def add_callback(self, fn: Callable[[], None]) -> None:
        if self.aborted:
            fn()
            return
        self._callbacks.append(fn)

    def abort(self) -> bool:
        """Returns False if the token was already aborted."""
        if self.aborted:
            return False
        self._event.set()
        log.info("[cancel] abort run=%s", self.run_id)
        if self._proc is not None:
            _terminate(self._proc)
        callbacks, self._callbacks = self._callbacks, []
        for fn in callbacks:
            try:
                fn()
            except Exception:
                log.exception("[cancel] abort callback failed run=%s", self.run_id)
        return True

    async def wait(self) -> None:
        await self._event.wait()


def _terminate(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        proc.terminate()
    except ProcessLookupError:
        pass
