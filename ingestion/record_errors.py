"""
Record-level error trail writer (record_error table).
"""

from typing import Optional
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.error_codes import ErrorCode
from models.base import PipelineStep
from models.record_error import RecordError

logger = logging.getLogger(__name__)

MAX_DETAIL_LENGTH = 4000


class RecordErrorWriter:
    """
    Add record_error rows to a session.

    Rows are added, not committed: they share the fate of the unit of work
    they belong to (a cleanse chunk, or the upsert error transaction).
    """

    def __init__(self, session: AsyncSession, batch_id: str):
        self.session = session
        self.batch_id = batch_id
        self.written = 0

    def add(
        self,
        step: PipelineStep,
        error_cd: ErrorCode,
        record_ref: Optional[str] = None,
        detail: Optional[str] = None,
        raw_fragment: Optional[str] = None,
    ) -> RecordError:
        error = RecordError(
            batch_id=self.batch_id,
            step=step.value,
            record_ref=record_ref,
            error_cd=error_cd.value,
            error_detail=(detail or "")[:MAX_DETAIL_LENGTH] or None,
            raw_fragment=raw_fragment,
        )
        self.session.add(error)
        self.written += 1
        logger.debug(f"[{self.batch_id}] {step.value} {error_cd.value} {record_ref}: {detail}")
        return error

    async def clear(self, step: PipelineStep) -> None:
        """Drop the errors a previous run of ``step`` wrote for this batch"""
        await self.session.execute(
            delete(RecordError).where(
                RecordError.batch_id == self.batch_id,
                RecordError.step == step.value,
            )
        )
