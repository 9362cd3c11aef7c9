"""
EVENT batches: stock / sale events update the last-event columns of the
golden product they refer to.
"""

from typing import Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.error_codes import ErrorCode
from core.exceptions import DatabaseConnectionError, UpsertError
from models.base import PipelineStep, StepStatus
from models.product import Product, ProductIdent
from models.reference import Company
from models.staging import TempProductEvent
from ingestion.record_errors import RecordErrorWriter
from ingestion.cleansing.normalize import parse_datetime
from ingestion.upsert.counters import UpsertCounters
from ingestion.upsert.engine import CheckpointCallback, _is_infrastructure_error
from core.config import settings

logger = logging.getLogger(__name__)


class EventValidationError(ValueError):
    pass


def parse_quantity(raw: Optional[str]) -> Optional[int]:
    """Integer quantity ≥ 0; empty means no quantity"""
    if raw is None or not str(raw).strip():
        return None
    text = str(raw).strip().replace(",", "")
    try:
        qty = int(text)
    except ValueError:
        raise EventValidationError(f"quantity is not an integer: {raw!r}")
    if qty < 0:
        raise EventValidationError(f"quantity is negative: {raw!r}")
    return qty


class EventUpsertEngine:
    """
    Apply the events of one batch, one transaction per event.

    READY and previously failed events are (re)applied; COMPLETED ones are
    left alone, so re-running the stage is a no-op for them.
    """

    def __init__(
        self,
        session: AsyncSession,
        batch_id: str,
        company_cd: str,
        checkpoint: Optional[CheckpointCallback] = None,
        checkpoint_every: Optional[int] = None,
    ):
        self.session = session
        self.batch_id = batch_id
        self.company_cd = company_cd
        self.checkpoint = checkpoint
        self.checkpoint_every = checkpoint_every or settings.CHECKPOINT_EVERY
        self.errors = RecordErrorWriter(session, batch_id)
        self.company_id: Optional[int] = None

    async def run(self, counters: Optional[UpsertCounters] = None) -> UpsertCounters:
        counters = counters or UpsertCounters()

        result = await self.session.execute(
            select(Company.group_company_id).where(Company.group_company_cd == self.company_cd)
        )
        self.company_id = result.scalar_one_or_none()
        if self.company_id is None:
            raise UpsertError(
                "Unknown group company",
                context={"batch_id": self.batch_id, "group_company_cd": self.company_cd},
            )

        await self.errors.clear(PipelineStep.UPSERT)
        await self.session.commit()

        event_result = await self.session.execute(
            select(TempProductEvent.temp_row_event_id)
            .where(
                TempProductEvent.batch_id == self.batch_id,
                TempProductEvent.step_status.in_([StepStatus.READY.value, StepStatus.ERROR.value]),
            )
            .order_by(TempProductEvent.line_no)
        )
        event_ids = [row[0] for row in event_result.all()]
        logger.info(f"[{self.batch_id}] Applying {len(event_ids)} events")

        for event_id in event_ids:
            await self.apply_event(event_id, counters)
            if self.checkpoint and counters.read % self.checkpoint_every == 0:
                await self.checkpoint(counters.as_dict())

        logger.info(
            f"[{self.batch_id}] Events complete: update={counters.update}, "
            f"skip={counters.skip}, error={counters.error}"
        )
        return counters

    async def apply_event(self, event_id, counters: UpsertCounters) -> None:
        counters.read += 1
        try:
            event = (await self.session.execute(
                select(TempProductEvent)
                .where(TempProductEvent.temp_row_event_id == event_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )).scalar_one()

            error_code = None
            detail = None
            try:
                event_ts = parse_datetime(event.event_ts_raw)
                parse_quantity(event.qty_raw)
            except ValueError as e:
                error_code, detail = ErrorCode.EVENT_INVALID, str(e)

            product = None
            if error_code is None:
                product = await self._find_product(event.source_product_id)
                if product is None:
                    error_code = ErrorCode.EVENT_PRODUCT_NOT_FOUND
                    detail = f"No active identity for {event.source_product_id!r}"

            if error_code is not None:
                event.step_status = StepStatus.ERROR.value
                self.errors.add(
                    PipelineStep.UPSERT,
                    error_code,
                    record_ref=f"temp_row_event_id={event_id}",
                    detail=detail,
                    raw_fragment=event.idem_key,
                )
                counters.error += 1
            elif product.last_event_ts is None or event_ts > product.last_event_ts:
                product.last_event_ts = event_ts
                product.last_event_kind_cd = (event.event_kind_raw or "").strip() or None
                event.step_status = StepStatus.COMPLETED.value
                counters.update += 1
            else:
                event.step_status = StepStatus.COMPLETED.value
                counters.skip += 1

            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            if _is_infrastructure_error(e):
                raise DatabaseConnectionError(
                    "Database failure while applying event",
                    context={"batch_id": self.batch_id, "temp_row_event_id": str(event_id)},
                    original_exception=e,
                )
            counters.error += 1
            logger.error(f"[{self.batch_id}] Event {event_id} failed: {e}")
            self.errors.add(
                PipelineStep.UPSERT,
                ErrorCode.UPSERT_UNKNOWN_ERROR,
                record_ref=f"temp_row_event_id={event_id}",
                detail=str(e),
            )
            await self.session.commit()

    async def _find_product(self, source_product_id: Optional[str]) -> Optional[Product]:
        if not source_product_id:
            return None
        result = await self.session.execute(
            select(Product)
            .join(ProductIdent, ProductIdent.g_product_id == Product.g_product_id)
            .where(
                ProductIdent.group_company_id == self.company_id,
                ProductIdent.source_product_cd == source_product_id.strip(),
                ProductIdent.is_active.is_(True),
            )
            .with_for_update(of=Product)
            .execution_options(populate_existing=True)
        )
        return result.scalars().first()
