# ============================================================================
# File: ingestion/batch.py
# Description: Batch lifecycle, claim lease and counters document
# ============================================================================
"""
Batch Coordinator - one worker per batch, counters merged per stage.

The coordinator owns a dedicated session whose only job is the batch_run
row. Stage work happens on other sessions, so committing a checkpoint never
commits half of a product and a product rollback never loses the claim.

Claiming:
- ``SELECT ... FOR UPDATE SKIP LOCKED``: a row locked by another worker is
  simply not returned
- a row claimed by another worker whose heartbeat is younger than
  BATCH_LEASE_SECONDS is treated the same way
- claimed_by / heartbeat_at are committed, then the row lock is re-acquired
  and held until the next checkpoint
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.config import settings
from core.database import async_session_maker
from core.exceptions import BatchClaimLostError, BatchNotFoundError
from models.base import BatchStatus
from models.batch_run import BatchRun

logger = logging.getLogger(__name__)

UPSERT_SECTION = "UPSERT"


def decide_status(upsert_counts: Optional[Mapping[str, int]]) -> BatchStatus:
    """
    FAILED when every product errored, PARTIAL when some did, COMPLETED
    otherwise (including an empty batch).
    """
    counts = upsert_counts or {}
    error = counts.get("error", 0)
    succeeded = counts.get("insert", 0) + counts.get("update", 0) + counts.get("skip", 0)
    if error > 0 and succeeded == 0:
        return BatchStatus.FAILED
    if error > 0:
        return BatchStatus.PARTIAL
    return BatchStatus.COMPLETED


def merge_counts(document: Optional[Dict[str, Any]], section: str, counts: Mapping[str, Any]) -> Dict[str, Any]:
    """Return a new counts document with ``section`` replaced by ``counts``"""
    merged = dict(document or {})
    merged[section] = dict(counts)
    return merged


class BatchCoordinator:
    """Claim, checkpoint and finalize one batch"""

    def __init__(
        self,
        batch_id: str,
        worker_id: Optional[str] = None,
        lease_seconds: Optional[int] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ):
        self.batch_id = batch_id
        self.worker_id = worker_id or settings.WORKER_ID
        self.lease_seconds = lease_seconds if lease_seconds is not None else settings.BATCH_LEASE_SECONDS
        self.session_factory = session_factory or async_session_maker
        self.session: Optional[AsyncSession] = None
        self.batch: Optional[BatchRun] = None
        self.counts: Dict[str, Any] = {}

    @property
    def claimed(self) -> bool:
        return self.batch is not None

    # ------------------------------------------------------------------
    # Claim
    # ------------------------------------------------------------------

    async def claim(self) -> bool:
        """
        Try to claim the batch.

        Returns:
            False when another worker holds it (locked or within its lease)

        Raises:
            BatchNotFoundError: no batch_run row with this id
        """
        if self.session is None:
            self.session = self.session_factory()

        batch = await self._lock()
        if batch is None:
            exists = await self.session.execute(
                select(BatchRun.batch_id).where(BatchRun.batch_id == self.batch_id)
            )
            await self.session.rollback()
            if exists.scalar_one_or_none() is None:
                await self.release()
                raise BatchNotFoundError("Batch does not exist", context={"batch_id": self.batch_id})
            logger.info(f"[{self.batch_id}] Locked by another worker, nothing to claim")
            await self.release()
            return False

        if self._held_by_other(batch):
            logger.info(
                f"[{self.batch_id}] Claimed by {batch.claimed_by} "
                f"(heartbeat {batch.heartbeat_at.isoformat()}), nothing to claim"
            )
            await self.session.rollback()
            await self.release()
            return False

        batch.claimed_by = self.worker_id
        batch.heartbeat_at = datetime.utcnow()
        batch.status = BatchStatus.RUNNING
        batch.ended_at = None
        await self.session.commit()

        self.batch = await self._relock()
        self.counts = dict(self.batch.counts or {})
        logger.info(f"[{self.batch_id}] Claimed by {self.worker_id}")
        return True

    @classmethod
    async def claim_next(
        cls,
        worker_id: Optional[str] = None,
        lease_seconds: Optional[int] = None,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
    ) -> Optional["BatchCoordinator"]:
        """Claim the oldest claimable RUNNING batch, if any"""
        factory = session_factory or async_session_maker
        checker = cls("", worker_id, lease_seconds, factory)

        async with factory() as session:
            result = await session.execute(
                select(BatchRun.batch_id, BatchRun.claimed_by, BatchRun.heartbeat_at)
                .where(BatchRun.status == BatchStatus.RUNNING)
                .order_by(BatchRun.started_at)
            )
            candidates = [row.batch_id for row in result.all() if not checker._held_by_other(row)]

        for batch_id in candidates:
            coordinator = cls(batch_id, worker_id, lease_seconds, factory)
            try:
                if await coordinator.claim():
                    return coordinator
            except BatchNotFoundError:
                continue
        return None

    def _held_by_other(self, batch) -> bool:
        if not batch.claimed_by or batch.claimed_by == self.worker_id or batch.heartbeat_at is None:
            return False
        return batch.heartbeat_at > datetime.utcnow() - timedelta(seconds=self.lease_seconds)

    async def _lock(self) -> Optional[BatchRun]:
        result = await self.session.execute(
            select(BatchRun)
            .where(BatchRun.batch_id == self.batch_id)
            .with_for_update(skip_locked=True)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _relock(self) -> BatchRun:
        batch = await self._lock()
        if batch is None or batch.claimed_by != self.worker_id:
            await self.session.rollback()
            self.batch = None
            raise BatchClaimLostError(
                "Batch row could not be re-locked",
                context={
                    "batch_id": self.batch_id,
                    "worker_id": self.worker_id,
                    "claimed_by": batch.claimed_by if batch is not None else None,
                },
            )
        return batch

    def _require_claim(self) -> BatchRun:
        if self.batch is None:
            raise BatchClaimLostError("Batch is not claimed", context={"batch_id": self.batch_id})
        return self.batch

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    async def checkpoint(self, section: str, counts: Mapping[str, Any]) -> None:
        """Merge ``counts`` under ``section``, refresh the heartbeat, commit, re-lock"""
        batch = self._require_claim()
        batch.counts = merge_counts(batch.counts, section, counts)
        batch.heartbeat_at = datetime.utcnow()
        self.counts = dict(batch.counts)
        await self.session.commit()
        logger.debug(f"[{self.batch_id}] Checkpoint {section}: {dict(counts)}")
        self.batch = await self._relock()

    async def upsert_checkpoint(self, counts: Mapping[str, Any]) -> None:
        await self.checkpoint(UPSERT_SECTION, counts)

    async def finalize(self, upsert_counts: Optional[Mapping[str, int]] = None) -> BatchStatus:
        """Decide the terminal status, stamp ended_at, drop the claim"""
        batch = self._require_claim()
        if upsert_counts is not None:
            batch.counts = merge_counts(batch.counts, UPSERT_SECTION, upsert_counts)
        status = decide_status((batch.counts or {}).get(UPSERT_SECTION))
        self.counts = dict(batch.counts or {})
        self._close_out(batch, status)
        await self.session.commit()
        logger.info(f"[{self.batch_id}] Finalized as {status.value}: {batch.counts}")
        await self.release()
        return status

    async def fail(self, reason: str) -> None:
        """Mark the batch FAILED with the reason in the counts document"""
        batch = self._require_claim()
        batch.counts = merge_counts(batch.counts, "FAILURE", {"reason": reason[:1000]})
        self.counts = dict(batch.counts)
        self._close_out(batch, BatchStatus.FAILED)
        await self.session.commit()
        logger.error(f"[{self.batch_id}] Marked FAILED: {reason}")
        await self.release()

    def _close_out(self, batch: BatchRun, status: BatchStatus) -> None:
        batch.status = status
        batch.ended_at = datetime.utcnow()
        batch.claimed_by = None
        batch.heartbeat_at = None

    async def release(self) -> None:
        """Close the lock session; an uncommitted claim simply lapses"""
        self.batch = None
        if self.session is not None:
            await self.session.close()
            self.session = None

    async def __aenter__(self) -> "BatchCoordinator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()
