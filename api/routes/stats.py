"""
Pipeline statistics endpoint
"""
from datetime import datetime
from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import StatsResponse, BatchSummary
from models.batch_run import BatchRun
from models.base import BatchStatus
from models.product import Product, ProductEav
from models.record_error import RecordError
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


async def _count(db: AsyncSession, model, *criteria) -> int:
    query = select(func.count()).select_from(model)
    if criteria:
        query = query.where(and_(*criteria))
    result = await db.execute(query)
    return result.scalar() or 0


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    limit: int = Query(10, ge=1, le=100, description="Number of recent batches to return"),
    db: AsyncSession = Depends(get_db)
):
    """
    Get pipeline statistics.

    Returns:
    - Batch tallies per status
    - Catalog size (products, EAV rows)
    - record_error tallies per stage
    - Recent batch history
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    logger.info(f"[{request_id}] GET /stats")

    # ========== Batches ==========

    status_result = await db.execute(
        select(BatchRun.status, func.count()).group_by(BatchRun.status)
    )
    batches_by_status = {}
    for status, count in status_result.all():
        key = status.value if isinstance(status, BatchStatus) else str(status)
        batches_by_status[key] = count
    total_batches = sum(batches_by_status.values())

    last_success_result = await db.execute(
        select(func.max(BatchRun.ended_at)).where(BatchRun.status == BatchStatus.COMPLETED)
    )
    last_success = last_success_result.scalar()

    last_failure_result = await db.execute(
        select(func.max(BatchRun.ended_at)).where(BatchRun.status == BatchStatus.FAILED)
    )
    last_failure = last_failure_result.scalar()

    avg_duration_result = await db.execute(
        select(func.avg(func.extract("epoch", BatchRun.ended_at - BatchRun.started_at))).where(
            and_(
                BatchRun.status.in_([BatchStatus.COMPLETED, BatchStatus.PARTIAL]),
                BatchRun.ended_at.isnot(None)
            )
        )
    )
    avg_duration = avg_duration_result.scalar()

    # ========== Catalog ==========

    total_products = await _count(db, Product)
    active_products = await _count(db, Product, Product.is_active.is_(True))
    active_eav_rows = await _count(db, ProductEav, ProductEav.is_active.is_(True))
    inactive_eav_rows = await _count(db, ProductEav, ProductEav.is_active.is_(False))

    # ========== Errors ==========

    errors_result = await db.execute(
        select(RecordError.step, func.count()).group_by(RecordError.step)
    )
    record_errors_by_step = {step: count for step, count in errors_result.all()}
    total_record_errors = sum(record_errors_by_step.values())

    # ========== Recent Batches ==========

    recent_result = await db.execute(
        select(BatchRun)
        .order_by(BatchRun.started_at.desc())
        .limit(limit)
    )
    recent_batches = [BatchSummary.model_validate(batch) for batch in recent_result.scalars().all()]

    logger.info(
        f"[{request_id}] Stats: {total_batches} batches, "
        f"{total_products} products, {total_record_errors} record errors"
    )

    return StatsResponse(
        timestamp=datetime.utcnow(),
        total_batches=total_batches,
        batches_by_status=batches_by_status,
        total_products=total_products,
        active_products=active_products,
        active_eav_rows=active_eav_rows,
        inactive_eav_rows=inactive_eav_rows,
        total_record_errors=total_record_errors,
        record_errors_by_step=record_errors_by_step,
        recent_batches=recent_batches,
        last_batch_success=last_success,
        last_batch_failure=last_failure,
        avg_batch_duration_seconds=round(float(avg_duration), 2) if avg_duration is not None else None
    )
