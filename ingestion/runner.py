# ============================================================================
# File: ingestion/runner.py
# Description: Pipeline orchestrator - Ingest → Cleanse → Upsert → finalize
# ============================================================================
"""
Pipeline Runner - drives one vendor file (or one existing batch) through
the catalog pipeline.

This module provides orchestration with:
- One session per stage, plus the coordinator's own lock session
- Claim before any stage work, so a second runner silently does nothing
- Counters merged into the batch document after each stage
- Known pipeline errors mark the batch FAILED and propagate
- Unexpected errors are wrapped in PipelineException with context
"""

from pathlib import Path
from typing import Any, Callable, Dict, Optional
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.config import settings
from core.database import async_session_maker
from core.exceptions import (
    PipelineException,
    CleanseError,
    UpsertError,
    BatchError,
    BatchClaimLostError,
    DatabaseError,
)
from models.base import DataKind
from ingestion.batch import BatchCoordinator
from ingestion.csv_ingestor import CSVIngestor
from ingestion.cleansing.engine import CleansingEngine
from ingestion.upsert.counters import UpsertCounters
from ingestion.upsert.engine import UpsertEngine
from ingestion.upsert.events import EventUpsertEngine

logger = logging.getLogger(__name__)

CLEANSE_SECTION = "CLEANSE"
SKIPPED = "SKIPPED"


class PipelineRunner:
    """
    Pipeline Orchestrator

    Responsibilities:
    - Ingest a file into a new batch
    - Claim the batch (at most one worker)
    - Run Cleanse (PRODUCT batches) and Upsert
    - Finalize the batch status from the Upsert counters
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], AsyncSession]] = None,
        worker_id: Optional[str] = None,
    ):
        self.session_factory = session_factory or async_session_maker
        self.worker_id = worker_id or settings.WORKER_ID

    async def run_file(self, path, company_cd: str, data_kind=DataKind.PRODUCT) -> Dict[str, Any]:
        """
        Ingest ``path`` and process the new batch.

        Returns:
            {"batch_id", "status", "counts"}

        Raises:
            ImportProfileNotFoundError, DuplicateBatchError, CSVParseError:
                nothing was ingested
            PipelineException: a later stage failed (batch marked FAILED)
        """
        # --------------------------------------------------
        # PHASE 1: INGEST
        # --------------------------------------------------
        logger.info(f"Ingesting {path} for {company_cd} ({DataKind(data_kind).value})")
        async with self.session_factory() as session:
            ingest = await CSVIngestor(session, company_cd, DataKind(data_kind)).ingest(Path(path))

        return await self.run_batch(ingest.batch_id)

    async def run_batch(self, batch_id: str) -> Dict[str, Any]:
        """
        (Re)run Cleanse + Upsert for an existing batch.

        Safe to call for a crashed or already finished batch: every stage
        is idempotent.
        """
        coordinator = BatchCoordinator(batch_id, self.worker_id, session_factory=self.session_factory)
        if not await coordinator.claim():
            return {"batch_id": batch_id, "status": SKIPPED, "counts": {}}
        return await self._process(coordinator)

    async def run_next(self) -> Optional[Dict[str, Any]]:
        """Resume the oldest RUNNING batch nobody holds; None when there is none"""
        coordinator = await BatchCoordinator.claim_next(self.worker_id, session_factory=self.session_factory)
        if coordinator is None:
            return None
        logger.info(f"Resuming batch {coordinator.batch_id}")
        return await self._process(coordinator)

    async def _process(self, coordinator: BatchCoordinator) -> Dict[str, Any]:
        batch_id = coordinator.batch_id
        company_cd = coordinator.batch.group_company_cd
        data_kind = DataKind(coordinator.batch.data_kind)
        upsert_counters = UpsertCounters()

        try:
            # --------------------------------------------------
            # PHASE 2: CLEANSE
            # --------------------------------------------------
            if data_kind == DataKind.PRODUCT:
                logger.info(f"[{batch_id}] Starting cleanse")
                try:
                    async with self.session_factory() as session:
                        cleanse_counts = await CleansingEngine(
                            session, batch_id, company_cd, worker_id=self.worker_id
                        ).run()
                except PipelineException:
                    raise
                except Exception as e:
                    raise CleanseError(
                        "Unexpected error during cleanse",
                        context={"batch_id": batch_id, "group_company_cd": company_cd},
                        original_exception=e,
                    )
                await coordinator.checkpoint(CLEANSE_SECTION, cleanse_counts)

            # --------------------------------------------------
            # PHASE 3: UPSERT
            # --------------------------------------------------
            logger.info(f"[{batch_id}] Starting upsert")
            async with self.session_factory() as session:
                if data_kind == DataKind.EVENT:
                    engine = EventUpsertEngine(
                        session, batch_id, company_cd, checkpoint=coordinator.upsert_checkpoint
                    )
                else:
                    engine = UpsertEngine(
                        session, batch_id, company_cd, data_kind=data_kind.value,
                        checkpoint=coordinator.upsert_checkpoint,
                    )
                await engine.run(upsert_counters)

            # --------------------------------------------------
            # PHASE 4: FINALIZE
            # --------------------------------------------------
            status = await coordinator.finalize(upsert_counters.as_dict())

            result = {"batch_id": batch_id, "status": status.value, "counts": coordinator.counts}
            logger.info(
                f"Batch {batch_id} finished {status.value} - insert={upsert_counters.insert}, "
                f"update={upsert_counters.update}, skip={upsert_counters.skip}, error={upsert_counters.error}"
            )
            return result

        except (CleanseError, UpsertError, BatchError, DatabaseError) as e:
            # Known pipeline errors - log with context and mark the batch FAILED
            logger.error(
                f"Pipeline failed for {batch_id}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            if coordinator.claimed and not isinstance(e, BatchClaimLostError):
                await coordinator.fail(e.message)
            raise

        except Exception as e:
            # Unexpected errors - log and wrap in PipelineException
            logger.exception(f"Unexpected error in pipeline for {batch_id}")
            if coordinator.claimed:
                await coordinator.fail(str(e))
            raise PipelineException(
                "Unexpected error in pipeline",
                context={
                    "batch_id": batch_id,
                    "group_company_cd": company_cd,
                    "upsert_counts": upsert_counters.as_dict(),
                },
                original_exception=e,
            )

        finally:
            await coordinator.release()
