"""
Batch monitoring endpoints with pagination and filtering
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, and_
from api.dependencies import get_db
from schemas.api import (
    BatchSummary,
    BatchListResponse,
    RecordErrorResponse,
    RecordErrorListResponse,
    PaginationMetadata,
)
from models.batch_run import BatchRun
from models.record_error import RecordError
from models.base import BatchStatus, DataKind, PipelineStep
from typing import Optional
import uuid
import math
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/batches", tags=["Batches"])


def _pagination(page: int, page_size: int, total_items: int) -> PaginationMetadata:
    total_pages = math.ceil(total_items / page_size) if total_items > 0 else 0
    return PaginationMetadata(
        current_page=page,
        page_size=page_size,
        total_items=total_items,
        total_pages=total_pages,
        has_next=page < total_pages,
        has_previous=page > 1
    )


@router.get("", response_model=BatchListResponse)
async def list_batches(
    request: Request,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(50, ge=1, le=500, description="Items per page"),
    company_cd: Optional[str] = Query(None, description="Filter by group company code"),
    data_kind: Optional[DataKind] = Query(None, description="Filter by data kind"),
    status: Optional[BatchStatus] = Query(None, description="Filter by batch status"),
    db: AsyncSession = Depends(get_db)
):
    """Newest batches first"""
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(
        f"[{request_id}] GET /batches - page={page}, page_size={page_size}, "
        f"filters: company_cd={company_cd}, data_kind={data_kind}, status={status}"
    )

    filters = []
    if company_cd:
        filters.append(BatchRun.group_company_cd == company_cd)
    if data_kind:
        filters.append(BatchRun.data_kind == data_kind)
    if status:
        filters.append(BatchRun.status == status)

    count_query = select(func.count()).select_from(BatchRun)
    query = select(BatchRun)
    if filters:
        count_query = count_query.where(and_(*filters))
        query = query.where(and_(*filters))

    count_result = await db.execute(count_query)
    total_items = count_result.scalar() or 0

    query = (
        query.order_by(BatchRun.started_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    result = await db.execute(query)
    items = [BatchSummary.model_validate(batch) for batch in result.scalars().all()]

    return BatchListResponse(
        items=items,
        pagination=_pagination(page, page_size, total_items),
        filters_applied={k: v for k, v in {
            "company_cd": company_cd,
            "data_kind": data_kind,
            "status": status
        }.items() if v is not None}
    )


@router.get("/{batch_id}", response_model=BatchSummary)
async def get_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    batch = await db.get(BatchRun, batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")
    return BatchSummary.model_validate(batch)


@router.get("/{batch_id}/errors", response_model=RecordErrorListResponse)
async def list_batch_errors(
    request: Request,
    batch_id: str,
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(100, ge=1, le=1000, description="Items per page"),
    step: Optional[PipelineStep] = Query(None, description="Filter by pipeline stage"),
    error_cd: Optional[str] = Query(None, description="Filter by error code"),
    db: AsyncSession = Depends(get_db)
):
    """
    record_error trail of one batch.

    errors_by_code tallies the whole (filtered) trail, not just the page.
    """
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")

    batch = await db.get(BatchRun, batch_id)
    if batch is None:
        raise HTTPException(status_code=404, detail=f"Batch {batch_id} not found")

    filters = [RecordError.batch_id == batch_id]
    if step:
        filters.append(RecordError.step == step.value)
    if error_cd:
        filters.append(RecordError.error_cd == error_cd)

    tally_result = await db.execute(
        select(RecordError.error_cd, func.count())
        .where(and_(*filters))
        .group_by(RecordError.error_cd)
    )
    errors_by_code = {code: count for code, count in tally_result.all()}
    total_items = sum(errors_by_code.values())

    result = await db.execute(
        select(RecordError)
        .where(and_(*filters))
        .order_by(RecordError.created_at, RecordError.record_ref)
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    items = [RecordErrorResponse.from_orm(error) for error in result.scalars().all()]

    logger.info(f"[{request_id}] GET /batches/{batch_id}/errors - {len(items)} of {total_items}")

    return RecordErrorListResponse(
        batch_id=batch_id,
        items=items,
        pagination=_pagination(page, page_size, total_items),
        errors_by_code=errors_by_code,
        filters_applied={k: v for k, v in {
            "step": step.value if step else None,
            "error_cd": error_cd
        }.items() if v is not None}
    )
