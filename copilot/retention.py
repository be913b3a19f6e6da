"""Periodic purge of old transcripts and expired context-cache rows."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError

from copilot.models import utcnow
from copilot.secure_store import SecureStore

logger = logging.getLogger(__name__)


class RetentionTask:

    def __init__(
        self,
        store: SecureStore,
        retention_days: int = 30,
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        if retention_days < 0:
            raise ValueError("retention_days must be >= 0")
        self.store = store
        self.retention_days = retention_days
        self.interval_seconds = interval_seconds
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def run_once(self) -> Tuple[int, int]:
        """
        Returns:
            (transcripts purged, cache entries purged)
        """
        cutoff = self.clock() - timedelta(days=self.retention_days)
        transcripts = self.store.purge_transcripts_older_than(cutoff)
        cache_entries = self.store.purge_expired_cache()
        if transcripts or cache_entries:
            logger.info(f"Retention purge: {transcripts} transcripts, {cache_entries} cache entries")
        return transcripts, cache_entries

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop())

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _loop(self):
        while True:
            try:
                self.run_once()
            except SQLAlchemyError as e:
                logger.error(f"Retention purge failed: {e}")
            await asyncio.sleep(self.interval_seconds)
