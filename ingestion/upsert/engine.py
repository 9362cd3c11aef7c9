# ============================================================================
# File: ingestion/upsert/engine.py
# Description: Per-product merge of cleansed values into master + EAV
# ============================================================================
"""
Upsert Engine - cleansed attributes → golden master, EAV and management rows.

Each staged record (one source product line) is merged in its own
transaction:
1. PRODUCT_CD is required, otherwise the record is skipped with an error
2. Identity is found or created
3. The master row is locked; master-feeding attributes become a column map
   (brand / category codes resolved to surrogate ids)
4. New product → INSERT with UNKNOWN sentinels; existing → UPDATE of the
   changed columns only, or a skip
5. EAV rows are locked and synchronized (insert / update / reactivate /
   deactivate)
6. For the management company, the management aggregate is written inside
   a savepoint
7. Commit; any failure rolls back this product only and is recorded

NG attributes never reach this stage.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
import json
import logging

from core.config import settings
from core.error_codes import ErrorCode
from core.exceptions import (
    CategoryMissingError,
    DatabaseConnectionError,
    UpsertError,
)
from models.base import DataType, PipelineStep, QualityStatus
from models.product import Product, ProductEav
from models.reference import BrandG, CategoryG, Company
from models.staging import ClProductAttr, TempProductParsed
from ingestion.record_errors import RecordErrorWriter
from ingestion.cleansing.registry import (
    AttributeDefinitionRegistry,
    PRODUCT_CD_ATTR,
    PRODUCT_MANAGEMENT_CD_ATTR,
    CATALOG_DESC_ATTR,
)
from ingestion.upsert.counters import UpsertCounters
from ingestion.upsert.diff import ID, apply_changes, column_data_type, diff_columns, normalize
from ingestion.upsert.eav import EavSynchronizer, EavSyncStats, EavValue, build_eav_value
from ingestion.upsert.identity import IdentityResolver
from ingestion.upsert.management import ProductManagementWriter

logger = logging.getLogger(__name__)

G_PRODUCT_CD_BASE = 1_000_000_000_000
BRAND_COLUMN = "g_brand_id"
CATEGORY_COLUMN = "g_category_id"

# Master columns owned by the engine, never by attribute mappings
PROTECTED_COLUMNS = frozenset({
    "g_product_id", "g_product_cd", "unit_no", "group_company_id",
    "source_product_cd", "is_active", "cre_at", "upd_at",
})

# Master column types that only accept the cleansed typed value
TYPED_COLUMN_TYPES = frozenset({DataType.NUM.value, DataType.DATE.value, DataType.TIMESTAMPTZ.value})

CheckpointCallback = Callable[[Dict[str, int]], Awaitable[None]]


@dataclass
class UpsertAttribute:
    """Detached snapshot of one non-NG cleansed attribute"""
    attr_cd: str
    attr_seq: int
    data_type: Optional[str]
    source_raw: Optional[str]
    value_text: Optional[str]
    value_num: Optional[Decimal]
    value_date: Optional[datetime]
    value_cd: Optional[str]
    quality_status: Optional[str]
    quality_detail: Optional[Dict[str, Any]]
    rule_version: Optional[str]

    @property
    def text(self) -> Optional[str]:
        value = self.value_text if self.value_text not in (None, "") else self.value_cd
        if value in (None, ""):
            return None
        return str(value).strip() or None

    @property
    def is_conflict_loser(self) -> bool:
        """Demoted by single-value reconciliation in favour of another seq"""
        reasons = (self.quality_detail or {}).get("reason_cds") or []
        return ErrorCode.SINGLE_VALUE_CONFLICT.value in reasons


@dataclass
class UpsertRecord:
    temp_row_id: Any
    line_no: int
    attributes: List[UpsertAttribute] = field(default_factory=list)

    @property
    def record_ref(self) -> str:
        return f"temp_row_id={self.temp_row_id}"

    def first(self, attr_cd: str) -> Optional[UpsertAttribute]:
        candidates = [a for a in self.attributes if a.attr_cd == attr_cd]
        return min(candidates, key=lambda a: a.attr_seq) if candidates else None

    def text(self, attr_cd: str) -> Optional[str]:
        attr = self.first(attr_cd)
        return attr.text if attr else None

    def fragment(self) -> str:
        return json.dumps(
            [
                {
                    "attr_cd": a.attr_cd,
                    "attr_seq": a.attr_seq,
                    "value_text": a.value_text,
                    "value_cd": a.value_cd,
                    "quality_status": a.quality_status,
                }
                for a in self.attributes
            ],
            ensure_ascii=False,
        )


def _is_infrastructure_error(error: Exception) -> bool:
    if isinstance(error, (OperationalError, InterfaceError)):
        return True
    return isinstance(error, DBAPIError) and error.connection_invalidated


class UpsertEngine:
    """
    Merge one PRODUCT batch into the golden tables, product by product.

    Records are processed sequentially in line order, so two lines with the
    same product code resolve to one identity and the later line wins.
    """

    def __init__(
        self,
        session: AsyncSession,
        batch_id: str,
        company_cd: str,
        data_kind: str = "PRODUCT",
        checkpoint: Optional[CheckpointCallback] = None,
        checkpoint_every: Optional[int] = None,
        management_company_cd: Optional[str] = None,
    ):
        self.session = session
        self.batch_id = batch_id
        self.company_cd = company_cd
        self.data_kind = data_kind
        self.checkpoint = checkpoint
        self.checkpoint_every = checkpoint_every or settings.CHECKPOINT_EVERY
        self.management_company_cd = management_company_cd or settings.MANAGEMENT_COMPANY_CD

        self.registry: Optional[AttributeDefinitionRegistry] = None
        self.company_id: Optional[int] = None
        self.identity = IdentityResolver(session)
        self.product_eav = EavSynchronizer(session, ProductEav, "g_product_id")
        self.management = ProductManagementWriter(session)
        self.errors = RecordErrorWriter(session, batch_id)

        self._brand_ids: Dict[str, Optional[int]] = {}
        self._category_ids: Dict[str, Optional[int]] = {}
        self._warned_columns = set()
        # Code recorded when a non-UpsertError escapes the current step
        self._step_error_cd = ErrorCode.UPSERT_UNKNOWN_ERROR

    async def prepare(self) -> None:
        self.registry = await AttributeDefinitionRegistry.load(self.session)
        result = await self.session.execute(
            select(Company.group_company_id).where(Company.group_company_cd == self.company_cd)
        )
        self.company_id = result.scalar_one_or_none()
        if self.company_id is None:
            raise UpsertError(
                "Unknown group company",
                context={"batch_id": self.batch_id, "group_company_cd": self.company_cd},
            )

    # ------------------------------------------------------------------
    # Stage entry point
    # ------------------------------------------------------------------

    async def run(self, counters: Optional[UpsertCounters] = None) -> UpsertCounters:
        counters = counters or UpsertCounters()
        if self.registry is None:
            await self.prepare()

        await self.errors.clear(PipelineStep.UPSERT)
        await self.session.commit()

        records = await self.load_records()
        logger.info(f"[{self.batch_id}] Upserting {len(records)} records")

        for record in records:
            await self.upsert_record(record, counters)
            if self.checkpoint and counters.read % self.checkpoint_every == 0:
                await self.checkpoint(counters.as_dict())

        logger.info(
            f"[{self.batch_id}] Upsert complete: insert={counters.insert}, update={counters.update}, "
            f"skip={counters.skip}, error={counters.error}"
        )
        return counters

    async def load_records(self) -> List[UpsertRecord]:
        """Staged records in line order with their non-NG cleansed attributes"""
        row_result = await self.session.execute(
            select(TempProductParsed.temp_row_id, TempProductParsed.line_no)
            .where(TempProductParsed.batch_id == self.batch_id)
            .order_by(TempProductParsed.line_no)
        )
        records = {row.temp_row_id: UpsertRecord(row.temp_row_id, row.line_no) for row in row_result.all()}

        attr_result = await self.session.execute(
            select(
                ClProductAttr.temp_row_id,
                ClProductAttr.attr_cd,
                ClProductAttr.attr_seq,
                ClProductAttr.data_type,
                ClProductAttr.source_raw,
                ClProductAttr.value_text,
                ClProductAttr.value_num,
                ClProductAttr.value_date,
                ClProductAttr.value_cd,
                ClProductAttr.quality_status,
                ClProductAttr.quality_detail,
                ClProductAttr.rule_version,
            )
            .where(
                ClProductAttr.batch_id == self.batch_id,
                ClProductAttr.quality_status.in_([QualityStatus.OK.value, QualityStatus.WARN.value]),
            )
            .order_by(ClProductAttr.temp_row_id, ClProductAttr.attr_cd, ClProductAttr.attr_seq)
        )
        for row in attr_result.all():
            record = records.get(row.temp_row_id)
            if record is None:
                continue
            record.attributes.append(UpsertAttribute(
                attr_cd=row.attr_cd,
                attr_seq=row.attr_seq,
                data_type=row.data_type,
                source_raw=row.source_raw,
                value_text=row.value_text,
                value_num=row.value_num,
                value_date=row.value_date,
                value_cd=row.value_cd,
                quality_status=row.quality_status,
                quality_detail=row.quality_detail,
                rule_version=row.rule_version,
            ))
        return list(records.values())

    async def upsert_record(self, record: UpsertRecord, counters: UpsertCounters) -> None:
        """One product, one transaction; failures are recorded, never raised"""
        counters.read += 1

        product_cd = record.text(PRODUCT_CD_ATTR)
        if not product_cd:
            counters.skip += 1
            self.errors.add(
                PipelineStep.UPSERT,
                ErrorCode.UPSERT_KEY_MISSING,
                record_ref=record.record_ref,
                detail=f"{PRODUCT_CD_ATTR} is missing (line {record.line_no})",
                raw_fragment=record.fragment(),
            )
            await self.session.commit()
            return

        try:
            outcome, stats = await self.upsert_product(record, product_cd)
            self._step_error_cd = ErrorCode.UPSERT_UNKNOWN_ERROR
            await self.session.commit()
        except Exception as e:
            await self.session.rollback()
            if _is_infrastructure_error(e):
                logger.error(f"[{self.batch_id}] Database unavailable during upsert of {product_cd}: {e}")
                raise DatabaseConnectionError(
                    "Database failure during upsert",
                    context={"batch_id": self.batch_id, "source_product_cd": product_cd},
                    original_exception=e,
                )

            error_code = e.error_code if isinstance(e, UpsertError) else self._step_error_cd
            counters.error += 1
            logger.error(f"[{self.batch_id}] Upsert failed for {product_cd} ({error_code.value}): {e}")
            self.errors.add(
                PipelineStep.UPSERT,
                error_code,
                record_ref=record.record_ref,
                detail=f"{product_cd}: {e}",
                raw_fragment=record.fragment(),
            )
            await self.session.commit()
            return

        setattr(counters, outcome, getattr(counters, outcome) + 1)
        counters.eav_insert += stats.inserted
        counters.eav_update += stats.updated
        counters.eav_reactivate += stats.reactivated
        counters.eav_deactivate += stats.deactivated
        counters.eav_skip += stats.skipped

    # ------------------------------------------------------------------
    # Product
    # ------------------------------------------------------------------

    async def upsert_product(self, record: UpsertRecord, product_cd: str) -> Tuple[str, EavSyncStats]:
        """
        Returns:
            ("insert" | "update" | "skip", product EAV sync stats)

        Raises:
            CategoryMissingError: a new product has no resolvable category
            IdentityError: identity could not be established
        """
        management_cd = record.text(PRODUCT_MANAGEMENT_CD_ATTR)
        self._step_error_cd = ErrorCode.IDENT_FAILED
        g_product_id, _ = await self.identity.ensure_identity(
            self.company_id, product_cd, management_cd, self.batch_id
        )

        self._step_error_cd = ErrorCode.FIXED_COL_UPDATE_FAILED
        result = await self.session.execute(
            select(Product)
            .where(Product.g_product_id == g_product_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        product = result.scalar_one_or_none()
        columns = await self.build_master_columns(record)

        if product is None:
            if columns.get(CATEGORY_COLUMN) is None:
                raise CategoryMissingError(
                    "Category is required for a new product",
                    context={"source_product_cd": product_cd, "g_product_id": g_product_id},
                )
            product = Product(
                g_product_id=g_product_id,
                g_product_cd=str(G_PRODUCT_CD_BASE + g_product_id),
                unit_no=1,
                group_company_id=self.company_id,
                source_product_cd=product_cd,
                source_product_management_cd=management_cd,
                is_active=True,
                **{column: normalize(data_type, value) for column, (data_type, value) in columns.items()},
            )
            self.session.add(product)
            await self.session.flush()
            outcome = "insert"
            logger.info(f"[{self.batch_id}] INSERT product {product_cd} → {g_product_id}")
        else:
            desired = [(column, data_type, value) for column, (data_type, value) in columns.items()]
            if management_cd:
                desired.append(("source_product_management_cd", DataType.TEXT.value, management_cd))
            changes = diff_columns(product, desired)
            if changes:
                apply_changes(product, changes)
                await self.session.flush()
                outcome = "update"
                logger.info(
                    f"[{self.batch_id}] UPDATE product {product_cd}: "
                    f"{', '.join(c.column for c in changes)}"
                )
            else:
                outcome = "skip"

        self._step_error_cd = ErrorCode.EAV_SYNC_FAILED
        stats = await self.product_eav.sync(g_product_id, self.build_eav_values(record, product_cd), self.batch_id)
        await self.session.flush()
        if outcome == "skip" and stats.changed:
            outcome = "update"

        self._step_error_cd = ErrorCode.PRODUCT_MANAGEMENT_FAILED
        if management_cd and self.company_cd == self.management_company_cd:
            await self._upsert_management(record, product, management_cd)

        return outcome, stats

    async def _upsert_management(self, record: UpsertRecord, product: Product, management_cd: str) -> None:
        try:
            async with self.session.begin_nested():
                await self.management.upsert(
                    product,
                    management_cd,
                    record.text(CATALOG_DESC_ATTR),
                    self.build_eav_values(record, management_cd),
                    self.batch_id,
                    self.company_cd,
                )
        except Exception as e:
            if _is_infrastructure_error(e):
                raise
            logger.warning(f"[{self.batch_id}] Management {management_cd} rolled back: {e}")
            self.errors.add(
                PipelineStep.UPSERT,
                ErrorCode.PRODUCT_MANAGEMENT_FAILED,
                record_ref=record.record_ref,
                detail=f"{management_cd}: {e}",
                raw_fragment=record.fragment(),
            )

    # ------------------------------------------------------------------
    # Column and EAV maps
    # ------------------------------------------------------------------

    async def build_master_columns(self, record: UpsertRecord) -> Dict[str, Tuple[str, Any]]:
        """column → (comparison type, value) from master-feeding attributes"""
        columns: Dict[str, Tuple[str, Any]] = {}
        table_columns = Product.__table__.c

        # The reconciled representative of a single-value attribute comes first
        for attr in sorted(record.attributes, key=lambda a: (a.attr_cd, a.is_conflict_loser, a.attr_seq)):
            column = self.registry.master_column(attr.attr_cd)
            if not column or column in columns:
                continue
            if column not in table_columns or column in PROTECTED_COLUMNS:
                if column not in self._warned_columns:
                    logger.warning(f"Attribute {attr.attr_cd} targets unusable master column '{column}'")
                    self._warned_columns.add(column)
                continue

            if column == BRAND_COLUMN:
                value = await self._brand_id(attr.value_cd)
                data_type = ID
            elif column == CATEGORY_COLUMN:
                value = await self._category_id(attr.value_cd)
                data_type = ID
            else:
                data_type = column_data_type(table_columns[column])
                value = self._column_value(data_type, attr)
                if value is None and data_type in TYPED_COLUMN_TYPES and attr.text:
                    logger.warning(
                        f"[{self.batch_id}] {attr.attr_cd} seq {attr.attr_seq} has no typed value "
                        f"for {column} ({attr.quality_status}); column left unchanged"
                    )
                    continue

            if value is not None:
                columns[column] = (data_type, value)
        return columns

    @staticmethod
    def _column_value(data_type: str, attr: UpsertAttribute) -> Any:
        if data_type == DataType.NUM.value:
            return attr.value_num
        if data_type in (DataType.DATE.value, DataType.TIMESTAMPTZ.value):
            return attr.value_date
        if data_type == ID:
            return attr.value_cd
        return attr.value_cd if attr.value_cd not in (None, "") else attr.value_text

    def build_eav_values(self, record: UpsertRecord, source_cd: str) -> List[EavValue]:
        values = []
        for attr in record.attributes:
            if not self.registry.feeds_eav(attr.attr_cd):
                continue
            data_type = self.registry.data_type(attr.attr_cd) or attr.data_type
            provenance = {
                "source_system": self.company_cd,
                "ingest_profile": f"{self.company_cd}_{self.data_kind}",
                "idem_key": f"{self.batch_id}:{self.company_cd}:{source_cd}:{attr.attr_cd}:{attr.attr_seq}",
                "rule_version": attr.rule_version,
                "dict_hi": (attr.quality_detail or {}).get("dict_hi"),
            }
            values.append(build_eav_value(
                attr.attr_cd,
                attr.attr_seq,
                data_type,
                value_text=attr.value_text,
                value_num=attr.value_num,
                value_date=attr.value_date,
                value_cd=attr.value_cd,
                source_raw=attr.source_raw,
                unit_cd=self.registry.unit_cd(attr.attr_cd),
                quality_status=attr.quality_status,
                quality_detail=attr.quality_detail,
                provenance=provenance,
            ))
        return values

    async def _brand_id(self, brand_cd: Optional[str]) -> Optional[int]:
        if not brand_cd:
            return None
        if brand_cd not in self._brand_ids:
            result = await self.session.execute(
                select(BrandG.g_brand_id)
                .where(BrandG.g_brand_cd == brand_cd, BrandG.is_active.is_(True))
                .limit(1)
            )
            self._brand_ids[brand_cd] = result.scalar_one_or_none()
        return self._brand_ids[brand_cd]

    async def _category_id(self, category_cd: Optional[str]) -> Optional[int]:
        if not category_cd:
            return None
        if category_cd not in self._category_ids:
            result = await self.session.execute(
                select(CategoryG.g_category_id)
                .where(CategoryG.g_category_cd == category_cd, CategoryG.is_active.is_(True))
                .limit(1)
            )
            self._category_ids[category_cd] = result.scalar_one_or_none()
        return self._category_ids[category_cd]
