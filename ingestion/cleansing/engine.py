# ============================================================================
# File: ingestion/cleansing/engine.py
# Description: Per-attribute cleansing with quality verdicts and provenance
# ============================================================================
"""
Cleansing Engine - staged attributes → typed, reference-resolved values.

For every staged attribute of a batch:
- pick the applicable cleanse policy (attribute, company, brand, category)
- cast the raw value to the declared data type (TEXT / NUM / DATE / LIST / REF)
- resolve LIST values through attr_source_map and REF values through the
  reference resolver
- grade the result OK / WARN / NG and persist quality detail + provenance

Data problems never raise: they lower the quality verdict and add a
record_error row. Infrastructure failures propagate and fail the stage.
Re-running overwrites the same (batch_id, temp_row_id, attr_cd, attr_seq) rows.
"""

from dataclasses import dataclass, field
from datetime import datetime
from itertools import groupby
from typing import Dict, List, Optional, Tuple, Any
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.config import settings
from core.error_codes import ErrorCode
from models.base import DataType, MatcherKind, PipelineStep, QualityStatus
from models.reference import AttrSourceMap, CleansePolicy, ListItemG
from models.staging import ClProductAttr
from ingestion.record_errors import RecordErrorWriter
from ingestion.cleansing.normalize import first_non_empty, parse_decimal, parse_datetime
from ingestion.cleansing.quality import CleansedAttribute
from ingestion.cleansing.reconcile import reconcile_single_values
from ingestion.cleansing.registry import (
    AttributeDefinitionRegistry,
    CleansePolicyBook,
    select_policy,
    BRAND_ATTR,
    CATEGORY_ATTR,
)
from ingestion.cleansing.resolver import ReferenceResolver, ResolutionShape, load_shapes

logger = logging.getLogger(__name__)

REF_MATCHERS = {MatcherKind.ID_EXACT.value, MatcherKind.DERIVE_COALESCE.value}
LIST_MATCHERS = {
    MatcherKind.ID_EXACT.value,
    MatcherKind.LABEL_EXACT.value,
    MatcherKind.DERIVE_FROM_GP.value,
}


@dataclass
class RecordContext:
    """Per-record state threaded through the attributes of one staged record"""
    temp_row_id: Any
    brand_cd: Optional[str] = None
    category_cd: Optional[str] = None
    siblings: Dict[str, List[ClProductAttr]] = field(default_factory=dict)


class CleansingEngine:
    """
    Cleanse every staged attribute of one batch.

    Reference data (definitions, policies, reference maps, list mappings)
    is loaded once in prepare() and cached for the batch.
    """

    def __init__(
        self,
        session: AsyncSession,
        batch_id: str,
        company_cd: str,
        worker_id: Optional[str] = None,
        commit_every: Optional[int] = None,
    ):
        self.session = session
        self.batch_id = batch_id
        self.company_cd = company_cd
        self.worker_id = worker_id or settings.WORKER_ID
        self.commit_every = commit_every or settings.CHECKPOINT_EVERY

        self.registry: Optional[AttributeDefinitionRegistry] = None
        self.policies: Optional[CleansePolicyBook] = None
        self.shapes: Dict[int, ResolutionShape] = {}
        self.resolver = ReferenceResolver(session, company_cd)
        self.errors = RecordErrorWriter(session, batch_id)

        self._list_map_cache: Dict[tuple, Optional[int]] = {}
        self._list_item_cache: Dict[int, Optional[Tuple[str, Optional[str]]]] = {}

    async def prepare(self) -> None:
        """Load the per-batch caches"""
        self.registry = await AttributeDefinitionRegistry.load(self.session)
        self.policies = await CleansePolicyBook.load(self.session, self.company_cd)
        self.shapes = await load_shapes(self.session)
        logger.info(f"[{self.batch_id}] Cleansing prepared: {len(self.shapes)} reference maps")

    # ------------------------------------------------------------------
    # Stage entry point
    # ------------------------------------------------------------------

    async def run(self) -> Dict[str, int]:
        """
        Cleanse all staged attributes of the batch.

        Returns:
            CLEANSE counters: read, ok, warn, ng
        """
        if self.registry is None:
            await self.prepare()

        await self.errors.clear(PipelineStep.CLEANSE)

        result = await self.session.execute(
            select(ClProductAttr)
            .where(ClProductAttr.batch_id == self.batch_id)
            .order_by(ClProductAttr.temp_row_id, ClProductAttr.attr_cd, ClProductAttr.attr_seq)
        )
        rows: List[ClProductAttr] = result.scalars().all()
        logger.info(f"[{self.batch_id}] Cleansing {len(rows)} staged attributes")

        counts = {"read": 0, "ok": 0, "warn": 0, "ng": 0}
        records = 0

        for temp_row_id, group in groupby(rows, key=lambda r: r.temp_row_id):
            outcomes = await self.cleanse_record(list(group), RecordContext(temp_row_id=temp_row_id))
            for outcome in outcomes:
                counts["read"] += 1
                counts[outcome.quality_status.value.lower()] += 1

            records += 1
            if records % self.commit_every == 0:
                await self.session.commit()
                logger.info(f"[{self.batch_id}] Cleansed {records} records")

        await self.session.commit()
        logger.info(
            f"[{self.batch_id}] Cleansing complete: {records} records, "
            f"OK={counts['ok']}, WARN={counts['warn']}, NG={counts['ng']}"
        )
        return counts

    async def cleanse_record(
        self,
        rows: List[ClProductAttr],
        context: RecordContext,
    ) -> List[CleansedAttribute]:
        """Cleanse the attributes of one staged record in cleanse-phase order"""
        for row in rows:
            context.siblings.setdefault(row.attr_cd, []).append(row)

        ordered = sorted(rows, key=lambda r: (self.registry.cleanse_phase(r.attr_cd), r.attr_cd, r.attr_seq))
        pairs = []
        for row in ordered:
            outcome = await self.process_attribute(row, self.policies.chain(row.attr_cd), context)
            if outcome.value_cd and outcome.attr_cd == BRAND_ATTR:
                context.brand_cd = outcome.value_cd
            elif outcome.value_cd and outcome.attr_cd == CATEGORY_ATTR:
                context.category_cd = outcome.value_cd
            pairs.append((row, outcome))

        outcomes = [outcome for _, outcome in pairs]
        reconcile_single_values(outcomes, self.registry.is_single_select)

        run_at = datetime.utcnow()
        for row, outcome in pairs:
            outcome.apply_to(
                row,
                outcome.provenance(self.batch_id, context.temp_row_id, self.company_cd, self.worker_id, run_at),
            )
            if outcome.quality_status != QualityStatus.OK:
                self.errors.add(
                    PipelineStep.CLEANSE,
                    ErrorCode(outcome.reason_cds[-1]),
                    record_ref=f"temp_row_id={context.temp_row_id}",
                    detail=f"{outcome.attr_cd}[{outcome.attr_seq}] {outcome.quality_status.value}: "
                           + "; ".join(outcome.messages),
                    raw_fragment=row.source_raw,
                )
        return outcomes

    # ------------------------------------------------------------------
    # Single attribute
    # ------------------------------------------------------------------

    async def process_attribute(
        self,
        staged: ClProductAttr,
        policy_chain: List[CleansePolicy],
        context: RecordContext,
    ) -> CleansedAttribute:
        """
        Cleanse one staged attribute against its policy chain.

        Never raises for data problems; the verdict carries them.
        """
        definition = self.registry.get(staged.attr_cd)
        data_type = ((definition.data_type if definition else staged.data_type) or "").upper()
        raw = first_non_empty(staged.source_label, staged.source_id)

        outcome = CleansedAttribute(
            attr_cd=staged.attr_cd,
            attr_seq=staged.attr_seq,
            data_type=data_type or None,
            source_raw=staged.source_raw if staged.source_raw is not None else raw,
        )

        if definition is None:
            outcome.value_text = raw
            outcome.flag(QualityStatus.WARN, ErrorCode.MISSING_ATTR_DEFINITION,
                         f"No attribute definition for {staged.attr_cd}")
            return outcome

        policy = select_policy(policy_chain, context.brand_cd, context.category_cd)
        outcome.use_policy(policy, self.policies.rule_version(policy))
        if policy is None:
            outcome.value_text = raw
            outcome.flag(QualityStatus.WARN, ErrorCode.MISSING_CLEANSE_POLICY,
                         f"No cleanse policy for {staged.attr_cd} (brand={context.brand_cd}, "
                         f"category={context.category_cd})")
            return outcome

        if data_type == DataType.REF.value:
            await self._cleanse_ref(staged, policy, context, outcome)
        elif data_type == DataType.LIST.value:
            await self._cleanse_list(staged, policy, definition.g_list_group_cd, outcome)
        elif data_type in (DataType.TEXT.value, DataType.NUM.value, DataType.DATE.value, DataType.TIMESTAMPTZ.value):
            self._cleanse_scalar(data_type, raw, outcome)
        else:
            outcome.value_text = raw
            outcome.flag(QualityStatus.WARN, ErrorCode.INVALID_TYPE_CAST,
                         f"Unsupported data type '{data_type}'")
        return outcome

    def _cleanse_scalar(self, data_type: str, raw: Optional[str], outcome: CleansedAttribute) -> None:
        if raw is None:
            outcome.flag(QualityStatus.NG, ErrorCode.SOURCE_RAW_NOT_FOUND, "Source value is empty")
            return

        outcome.value_text = raw
        try:
            if data_type == DataType.NUM.value:
                outcome.value_num = parse_decimal(raw)
            elif data_type in (DataType.DATE.value, DataType.TIMESTAMPTZ.value):
                outcome.value_date = parse_datetime(raw)
        except ValueError as e:
            outcome.flag(QualityStatus.NG, ErrorCode.INVALID_TYPE_CAST, f"Cannot cast to {data_type}: {e}")

    async def _cleanse_ref(
        self,
        staged: ClProductAttr,
        policy: CleansePolicy,
        context: RecordContext,
        outcome: CleansedAttribute,
    ) -> None:
        source_id, source_label = staged.source_id, staged.source_label
        matcher = (policy.matcher_kind or "").upper()

        if matcher not in REF_MATCHERS:
            outcome.value_text = first_non_empty(source_label, source_id)
            outcome.flag(QualityStatus.WARN, ErrorCode.MISSING_MATCH_KIND,
                         f"Matcher '{policy.matcher_kind}' is not supported for REF")
            return

        shape = self.shapes.get(policy.ref_map_id) if policy.ref_map_id is not None else None
        if shape is None:
            outcome.value_text = first_non_empty(source_label, source_id)
            outcome.flag(QualityStatus.NG, ErrorCode.REF_TABLE_MAP_NOT_FOUND,
                         f"Reference map {policy.ref_map_id} is missing or invalid")
            return

        if matcher == MatcherKind.DERIVE_COALESCE.value and not first_non_empty(source_id, source_label):
            source_id, source_label = self._derive(context, policy.derive_from_attr_cds or [])

        code, label = await self.resolver.resolve(shape, source_id, source_label)
        if code is not None:
            outcome.value_cd = code
            outcome.value_text = label or first_non_empty(source_label, source_id)
            return

        outcome.value_text = first_non_empty(source_label, source_id)
        status = QualityStatus.NG if staged.is_required else QualityStatus.WARN
        outcome.flag(status, ErrorCode.REF_NOT_FOUND,
                     f"No reference match for id={source_id!r} label={source_label!r}")

    @staticmethod
    def _derive(context: RecordContext, attr_cds: List[str]) -> Tuple[Optional[str], Optional[str]]:
        """First non-empty id and label among the named sibling attributes"""
        source_id = None
        source_label = None
        for attr_cd in attr_cds:
            for sibling in context.siblings.get(attr_cd, []):
                source_id = source_id or first_non_empty(sibling.source_id)
                source_label = source_label or first_non_empty(sibling.source_label)
        return source_id, source_label

    async def _cleanse_list(
        self,
        staged: ClProductAttr,
        policy: CleansePolicy,
        definition_group_cd: Optional[str],
        outcome: CleansedAttribute,
    ) -> None:
        source_id = first_non_empty(staged.source_id)
        source_label = first_non_empty(staged.source_label)
        matcher = (policy.matcher_kind or "").upper()

        if matcher not in LIST_MATCHERS:
            outcome.value_text = first_non_empty(source_label, source_id)
            outcome.flag(QualityStatus.WARN, ErrorCode.MISSING_MATCH_KIND,
                         f"Matcher '{policy.matcher_kind}' is not supported for LIST")
            return

        group_cd = policy.g_list_group_cd or definition_group_cd
        group_id = self.policies.list_group_id(group_cd)
        if group_cd and group_id is None:
            outcome.value_text = first_non_empty(source_label, source_id)
            outcome.flag(QualityStatus.WARN, ErrorCode.LIST_GROUP_NOT_FOUND,
                         f"List group {group_cd} does not exist")
            return

        item_id = await self._match_list(matcher, group_id, source_id, source_label)
        if item_id is None:
            outcome.value_text = first_non_empty(source_label, source_id)
            status = QualityStatus.NG if staged.is_required else QualityStatus.WARN
            outcome.flag(status, ErrorCode.LIST_GROUP_NOT_FOUND,
                         f"No list mapping in group {group_cd} for id={source_id!r} label={source_label!r}")
            return

        item = await self._list_item(item_id)
        if item is None:
            outcome.value_text = first_non_empty(source_label, source_id)
            outcome.flag(QualityStatus.WARN, ErrorCode.LIST_GROUP_NOT_FOUND,
                         f"List item {item_id} is missing or inactive")
            return

        outcome.g_list_item_id = item_id
        outcome.value_cd, outcome.value_text = item

    async def _match_list(
        self,
        matcher: str,
        group_id: Optional[int],
        source_id: Optional[str],
        source_label: Optional[str],
    ) -> Optional[int]:
        filters = [
            AttrSourceMap.group_company_cd == self.company_cd,
            AttrSourceMap.is_active.is_(True),
        ]
        if group_id is not None:
            filters.append(AttrSourceMap.g_list_group_id == group_id)

        if matcher == MatcherKind.ID_EXACT.value:
            if source_id is None:
                return None
            filters.append(AttrSourceMap.source_attr_id == source_id)
        elif matcher == MatcherKind.LABEL_EXACT.value:
            if source_label is None:
                return None
            filters.append(AttrSourceMap.source_attr_nm == source_label)
        else:
            if source_id is None and source_label is None:
                return None
            if source_id is not None:
                filters.append(AttrSourceMap.source_attr_id == source_id)
            if source_label is not None:
                filters.append(AttrSourceMap.source_attr_nm == source_label)

        key = (matcher, group_id, source_id, source_label)
        if key not in self._list_map_cache:
            result = await self.session.execute(
                select(AttrSourceMap.g_list_item_id)
                .where(*filters)
                .order_by(AttrSourceMap.map_id)
                .limit(1)
            )
            self._list_map_cache[key] = result.scalar_one_or_none()
        return self._list_map_cache[key]

    async def _list_item(self, item_id: int) -> Optional[Tuple[str, Optional[str]]]:
        if item_id not in self._list_item_cache:
            result = await self.session.execute(
                select(ListItemG.g_item_cd, ListItemG.g_item_label).where(
                    ListItemG.g_list_item_id == item_id,
                    ListItemG.is_active.is_(True),
                )
            )
            row = result.first()
            self._list_item_cache[item_id] = (row[0], row[1]) if row else None
        return self._list_item_cache[item_id]
