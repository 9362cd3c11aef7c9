"""
EAV synchronization shared by the product and management aggregates.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from models.base import DataType
from ingestion.upsert.diff import (
    JSON,
    ColumnChange,
    apply_changes,
    diff_columns,
    normalize,
)

logger = logging.getLogger(__name__)


@dataclass
class EavValue:
    """Desired state of one EAV row, built from a cleansed attribute"""
    attr_cd: str
    attr_seq: int
    data_type: Optional[str]
    value_text: Optional[str] = None
    value_num: Optional[Decimal] = None
    value_date: Optional[datetime] = None
    value_cd: Optional[str] = None
    unit_cd: Optional[str] = None
    quality_status: Optional[str] = None
    quality_detail: Optional[Dict[str, Any]] = None
    provenance: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> Tuple[str, int]:
        return self.attr_cd, self.attr_seq

    def desired_columns(self) -> List[Tuple[str, Optional[str], Any]]:
        """(column, comparison type, value) for every diffed column"""
        date_type = DataType.DATE.value if self.data_type == DataType.DATE.value else DataType.TIMESTAMPTZ.value
        return [
            ("value_text", DataType.TEXT.value, self.value_text),
            ("value_num", DataType.NUM.value, self.value_num),
            ("value_date", date_type, self.value_date),
            ("value_cd", DataType.TEXT.value, self.value_cd),
            ("unit_cd", DataType.TEXT.value, self.unit_cd),
            ("quality_status", DataType.TEXT.value, self.quality_status),
            ("quality_detail", JSON, self.quality_detail),
            ("provenance", JSON, self.provenance),
        ]


def build_eav_value(
    attr_cd: str,
    attr_seq: int,
    data_type: Optional[str],
    *,
    value_text: Optional[str],
    value_num: Optional[Decimal],
    value_date: Optional[datetime],
    value_cd: Optional[str],
    source_raw: Optional[str],
    unit_cd: Optional[str],
    quality_status: Optional[str],
    quality_detail: Optional[Dict[str, Any]],
    provenance: Optional[Dict[str, Any]],
) -> EavValue:
    """
    Populate the value column that matches the data type:
    TEXT → value_text (raw fallback), LIST/REF → value_cd + value_text,
    NUM → value_num, DATE/TIMESTAMPTZ → value_date.
    """
    value = EavValue(
        attr_cd=attr_cd,
        attr_seq=attr_seq,
        data_type=data_type,
        unit_cd=unit_cd,
        quality_status=quality_status,
        quality_detail=quality_detail,
        provenance=provenance,
    )
    if data_type in (DataType.LIST.value, DataType.REF.value):
        value.value_cd = value_cd
        value.value_text = value_text
    elif data_type == DataType.NUM.value:
        value.value_num = normalize(DataType.NUM.value, value_num)
    elif data_type in (DataType.DATE.value, DataType.TIMESTAMPTZ.value):
        value.value_date = normalize(data_type, value_date)
    else:
        value.value_text = value_text if value_text is not None else source_raw
    return value


@dataclass
class EavSyncStats:
    inserted: int = 0
    updated: int = 0
    reactivated: int = 0
    deactivated: int = 0
    skipped: int = 0
    changes: List[ColumnChange] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.updated or self.reactivated or self.deactivated)


class EavSynchronizer:
    """
    Bring the EAV rows of one owner in line with a set of desired values.

    Rows are locked FOR UPDATE. Existing rows are diffed and updated only
    when a column differs, inactive rows are reactivated in place, and rows
    whose key is absent from the desired set are deactivated.
    """

    def __init__(self, session: AsyncSession, model, owner_column: str):
        self.session = session
        self.model = model
        self.owner_column = owner_column

    async def sync(self, owner_id: int, values: List[EavValue], batch_id: str) -> EavSyncStats:
        owner = getattr(self.model, self.owner_column)
        result = await self.session.execute(
            select(self.model)
            .where(owner == owner_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        existing = {(row.attr_cd, row.attr_seq): row for row in result.scalars().all()}

        stats = EavSyncStats()
        touched = set()

        for value in values:
            if value.key in touched:
                logger.warning(f"Duplicate EAV key {value.key} for {self.owner_column}={owner_id}; keeping the first")
                continue
            touched.add(value.key)
            row = existing.get(value.key)

            if row is None:
                self.session.add(self.model(
                    **{self.owner_column: owner_id},
                    attr_cd=value.attr_cd,
                    attr_seq=value.attr_seq,
                    value_text=value.value_text,
                    value_num=value.value_num,
                    value_date=value.value_date,
                    value_cd=value.value_cd,
                    unit_cd=value.unit_cd,
                    quality_status=value.quality_status,
                    quality_detail=value.quality_detail,
                    provenance=value.provenance,
                    batch_id=batch_id,
                    is_active=True,
                ))
                stats.inserted += 1
                continue

            changes = diff_columns(row, value.desired_columns())
            if changes:
                apply_changes(row, changes)
                stats.changes.extend(changes)
            if not row.is_active:
                row.is_active = True
                stats.reactivated += 1
            elif changes:
                stats.updated += 1
            else:
                stats.skipped += 1
                continue
            row.batch_id = batch_id

        for key, row in existing.items():
            if key not in touched and row.is_active:
                row.is_active = False
                row.batch_id = batch_id
                stats.deactivated += 1

        logger.debug(
            f"EAV sync {self.owner_column}={owner_id}: +{stats.inserted} ~{stats.updated} "
            f"↺{stats.reactivated} -{stats.deactivated} ={stats.skipped}"
        )
        return stats
