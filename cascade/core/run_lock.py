"""Single-flight locking for cascade runs.

At most one cascade runs per (company, workflow) at a time. Inside a process an
asyncio.Lock serializes runs sharing an event loop; across processes (CLI next
to the HTTP server) a file lock under ``.cascade/locks`` does the same.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from filelock import FileLock
from filelock import Timeout as FileLockTimeout

from cascade.config import ConcurrencySettings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.\-]")


class CascadeError(Exception):
    """Error in the cascade engine."""

    pass


class CascadeBusyError(CascadeError):
    """A cascade for the same company and workflow is already running."""

    def __init__(self, company_id: str, workflow_id: str, retry_after: int = 5):
        self.company_id = company_id
        self.workflow_id = workflow_id
        self.retry_after = retry_after
        super().__init__(
            f"Cascade already running for company '{company_id}' workflow '{workflow_id}'"
        )


class RunLockManager:
    """Hands out run locks keyed by (company_id, workflow_id).

    USAGE:
        locks = RunLockManager(project_root / ".cascade" / "locks", settings)
        async with locks.hold(company_id, workflow_id):
            ...  # run the cascade

    With ``busy_policy == "reject"`` a held lock raises CascadeBusyError at
    once; with ``"queue"`` the caller waits up to ``busy_timeout`` seconds.
    """

    RETRY_AFTER_SECONDS = 5

    def __init__(self, lock_dir: Path, settings: ConcurrencySettings | None = None):
        self.lock_dir = Path(lock_dir)
        self.settings = settings or ConcurrencySettings()
        self._locks: dict[tuple[str, str], asyncio.Lock] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def rejects(self) -> bool:
        return self.settings.busy_policy == "reject"

    def lock_path(self, company_id: str, workflow_id: str) -> Path:
        name = f"{_UNSAFE_CHARS.sub('_', company_id)}_{_UNSAFE_CHARS.sub('_', workflow_id)}.lock"
        return self.lock_dir / name

    def _local_lock(self, key: tuple[str, str]) -> asyncio.Lock:
        # asyncio locks belong to one event loop; a new loop starts a fresh registry
        loop = asyncio.get_running_loop()
        if loop is not self._loop:
            self._locks = {}
            self._loop = loop
        if key not in self._locks:
            self._locks[key] = asyncio.Lock()
        return self._locks[key]

    def is_held(self, company_id: str, workflow_id: str) -> bool:
        lock = self._locks.get((company_id, workflow_id))
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, company_id: str, workflow_id: str) -> AsyncIterator[None]:
        """Hold the run lock for the duration of the block.

        Raises:
            CascadeBusyError: If the lock could not be taken under the busy policy
        """
        busy = CascadeBusyError(company_id, workflow_id, self.RETRY_AFTER_SECONDS)
        local = self._local_lock((company_id, workflow_id))
        deadline = time.monotonic() + self.settings.busy_timeout

        if self.rejects:
            if local.locked():
                raise busy
            await local.acquire()
        else:
            if local.locked():
                logger.info(f"Waiting for running cascade {company_id}/{workflow_id}")
            try:
                await asyncio.wait_for(local.acquire(), timeout=self.settings.busy_timeout)
            except TimeoutError:
                raise busy from None

        try:
            self.lock_dir.mkdir(parents=True, exist_ok=True)
            timeout = 0 if self.rejects else max(deadline - time.monotonic(), 0)
            file_lock = FileLock(
                str(self.lock_path(company_id, workflow_id)), timeout=timeout, thread_local=False
            )
            try:
                await asyncio.to_thread(file_lock.acquire)
            except FileLockTimeout:
                logger.info(f"Cascade {company_id}/{workflow_id} is held by another process")
                raise busy from None
            try:
                yield
            finally:
                file_lock.release()
        finally:
            local.release()
