"""
Eviction sweeper: periodic time-based purge of the artifact store.

Each sweep lists the store, and for every artifact whose last write is older
than the retention window asks the store to remove it. The store re-reads the
last-write time immediately before deleting, so an artifact re-populated after
the listing pass survives.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta

from passthru.cache.store import ArtifactStore
from passthru.exceptions import StorageError
from passthru.logging import get_logger
from passthru.metrics import CLEANUPS, FILES_CLEANED
from passthru.types import SweepReport, utc_now

logger = get_logger(__name__)

DEFAULT_RETENTION = timedelta(hours=12)
DEFAULT_INTERVAL = timedelta(minutes=10)


class EvictionSweeper:
    """Removes artifacts older than the retention window on a fixed period."""

    def __init__(
        self,
        store: ArtifactStore,
        retention: timedelta = DEFAULT_RETENTION,
        interval: timedelta = DEFAULT_INTERVAL,
    ) -> None:
        """Initialize the sweeper.

        Args:
            store: Artifact store to sweep.
            retention: Maximum artifact age.
            interval: Time between sweeps.
        """
        self.store = store
        self.retention = retention
        self.interval = interval
        self._task: asyncio.Task[None] | None = None
        self.last_report: SweepReport | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self, now: datetime | None = None) -> SweepReport:
        """Run one eviction pass.

        Per-entry failures are logged and counted; they never stop the pass.

        Args:
            now: Reference time (defaults to the current UTC time).

        Returns:
            SweepReport with the counters for this pass.
        """
        now = now or utc_now()
        cutoff = now - self.retention
        report = SweepReport(started_at=now, cutoff=cutoff)

        CLEANUPS.inc()
        logger.info("Starting sweep", cutoff=cutoff.isoformat())

        async for entry in self.store.list_entries():
            report.examined += 1
            if entry.last_write >= cutoff:
                continue

            try:
                removed = await self.store.remove(entry.key, older_than=cutoff)
            except StorageError as e:
                report.failed += 1
                logger.warning("Failed to remove artifact", key=entry.key, error=str(e))
                continue

            if removed:
                report.removed += 1
                FILES_CLEANED.inc()
                logger.debug("Artifact evicted", key=entry.key)
            else:
                report.skipped += 1
                logger.debug("Artifact refreshed since listing, kept", key=entry.key)

        report.temporaries_purged = await self.store.purge_stale_temporaries(cutoff)

        self.last_report = report
        logger.info("Sweep finished", **report.to_dict())
        return report

    async def run_forever(self) -> None:
        """Sweep every `interval` until cancelled.

        An unexpected error in one sweep is logged and the loop carries on.
        """
        while True:
            await asyncio.sleep(self.interval.total_seconds())
            try:
                await self.sweep()
            except Exception:
                logger.exception("Sweep failed")

    def start(self) -> None:
        """Start the background sweep task on the running loop."""
        if self.running:
            return
        self._task = asyncio.create_task(self.run_forever(), name="eviction-sweeper")
        logger.info(
            "Sweeper started",
            retention_seconds=self.retention.total_seconds(),
            interval_seconds=self.interval.total_seconds(),
        )

    async def stop(self) -> None:
        """Cancel the background task and wait for it to exit."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Sweeper stopped")
