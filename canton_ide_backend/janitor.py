from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from .config import JANITOR_INTERVAL_SECONDS, RETENTION_SECONDS, WORKSPACES_ROOT
from .workspace import sweep_stale_workspaces


logger = logging.getLogger(__name__)


class Janitor:
    """Periodically removes orphaned workspaces left by crashed requests.

    Request teardown is the primary cleanup; this only catches leftovers.
    """

    def __init__(
        self,
        root: Path = WORKSPACES_ROOT,
        interval_seconds: float = JANITOR_INTERVAL_SECONDS,
        retention_seconds: float = RETENTION_SECONDS,
    ) -> None:
        self.root = root
        self.interval_seconds = interval_seconds
        self.retention_seconds = retention_seconds
        self._task: Optional[asyncio.Task] = None

    def sweep(self, now: Optional[float] = None) -> int:
        return sweep_stale_workspaces(self.root, self.retention_seconds, now=now)

    async def sweep_async(self) -> int:
        deleted = await asyncio.to_thread(self.sweep)
        if deleted:
            logger.info("Janitor removed %d stale workspace(s)", deleted)
        return deleted

    async def run_forever(self) -> None:
        while True:
            await asyncio.sleep(max(1.0, self.interval_seconds))
            try:
                await self.sweep_async()
            except Exception:
                # Keep the loop alive; the next pass retries.
                logger.exception("Janitor sweep failed")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run_forever())
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
