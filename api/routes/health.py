"""
Health check endpoint with database and batch status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, text, func
from sqlalchemy.exc import SQLAlchemyError
from api.dependencies import get_db
from schemas.api import HealthCheckResponse
from models.batch_run import BatchRun
from models.base import BatchStatus
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(db: AsyncSession = Depends(get_db)):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Batch tallies per status
    - Start time of the latest batch
    """

    db_connected = False

    try:
        await db.execute(text("SELECT 1"))
        db_connected = True
    except SQLAlchemyError as e:
        logger.error(f"Database connection failed: {str(e)}")

    tallies = {}
    last_batch_at = None

    if db_connected:
        try:
            result = await db.execute(
                select(BatchRun.status, func.count()).group_by(BatchRun.status)
            )
            tallies = {row[0]: row[1] for row in result.all()}

            last_result = await db.execute(select(func.max(BatchRun.started_at)))
            last_batch_at = last_result.scalar()
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch batch status: {str(e)}")

    # Status is computed by the validator in HealthCheckResponse
    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        running_batches=tallies.get(BatchStatus.RUNNING, 0),
        completed_batches=tallies.get(BatchStatus.COMPLETED, 0),
        partial_batches=tallies.get(BatchStatus.PARTIAL, 0),
        failed_batches=tallies.get(BatchStatus.FAILED, 0),
        last_batch_at=last_batch_at
    )
