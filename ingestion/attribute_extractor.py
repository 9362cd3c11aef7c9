"""
Staged attribute extraction: side payload + fixed-column map → cl_product_attr rows.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
import json
import logging

from core.error_codes import ErrorCode
from models.base import ProjectionKind, ValueRole
from models.reference import FixedToAttrMap
from models.staging import ClProductAttr
from ingestion.cleansing.registry import AttributeDefinitionRegistry

logger = logging.getLogger(__name__)

SOURCE_PREFIX = "source_"
ATTRIBUTE_PROJECTIONS = (ProjectionKind.PRODUCT.value, ProjectionKind.PRODUCT_EAV.value)


@dataclass
class ExtractionIssue:
    error_code: ErrorCode
    detail: str
    column_key: str


def _blank(value: Optional[str]) -> bool:
    return value is None or not str(value).strip()


def strip_source_prefix(column: Optional[str]) -> Optional[str]:
    if not column:
        return None
    return column[len(SOURCE_PREFIX):] if column.lower().startswith(SOURCE_PREFIX) else column


class AttributeExtractor:
    """
    Build the staged attributes of one record.

    Columns projected to PRODUCT or PRODUCT_EAV with an attr_cd become
    attributes in column order. A fixed-column map decides which columns
    supply the source id and label; without one the column's transformed
    value is the source id.
    """

    def __init__(
        self,
        registry: AttributeDefinitionRegistry,
        fixed_maps: Optional[Iterable[FixedToAttrMap]] = None,
    ):
        self.registry = registry
        self.fixed_maps: Dict[str, FixedToAttrMap] = {}
        # Lowest priority number wins, map_id breaks ties
        for fixed_map in sorted(fixed_maps or [], key=lambda m: (m.priority or 0, m.map_id or 0)):
            self.fixed_maps.setdefault(fixed_map.attr_cd.upper(), fixed_map)

    @classmethod
    async def load(cls, session: AsyncSession, company_cd: str) -> "AttributeExtractor":
        registry = await AttributeDefinitionRegistry.load(session)
        result = await session.execute(
            select(FixedToAttrMap).where(
                FixedToAttrMap.group_company_cd == company_cd,
                FixedToAttrMap.projection_kind.in_(ATTRIBUTE_PROJECTIONS),
                FixedToAttrMap.is_active.is_(True),
            )
        )
        maps = result.scalars().all()
        logger.info(f"Loaded {len(maps)} fixed-column maps for {company_cd}")
        return cls(registry, maps)

    def extract(
        self,
        batch_id: str,
        temp_row_id: Any,
        processed_columns: Mapping[str, Mapping[str, Any]],
    ) -> Tuple[List[ClProductAttr], List[ExtractionIssue]]:
        """
        Returns:
            (staged attribute rows, mapping issues to record as INGEST errors)
        """
        attributes: List[ClProductAttr] = []
        issues: List[ExtractionIssue] = []
        seqs: Dict[str, int] = {}
        consumed = set()

        columns = sorted(
            (
                (key, column) for key, column in processed_columns.items()
                if column.get("projection_kind") in ATTRIBUTE_PROJECTIONS
            ),
            key=lambda item: (item[1].get("csv_column_index", 0), item[0]),
        )

        for key, column in columns:
            attr_cd = (column.get("attr_cd") or "").strip()
            if not attr_cd:
                if column.get("is_required"):
                    issues.append(ExtractionIssue(
                        ErrorCode.MAPPING_NOT_FOUND,
                        f"Required column {column.get('csv_column_index')} ('{column.get('header')}') has no attr_cd",
                        key,
                    ))
                continue

            fixed_map = self.fixed_maps.get(attr_cd.upper())
            if fixed_map is not None:
                if (attr_cd, key) in consumed:
                    continue
                source_id, source_label, raw, used_keys = self._from_fixed_map(fixed_map, column, processed_columns)
                consumed.update((attr_cd, used) for used in used_keys)
                data_type = fixed_map.data_type_override or self.registry.data_type(attr_cd)
            else:
                source_id = column.get("transformed_value")
                source_label = None
                raw = {column.get("header") or key: column.get("raw_value")}
                data_type = self.registry.data_type(attr_cd)

            if _blank(source_id) and _blank(source_label):
                continue

            seqs[attr_cd] = seqs.get(attr_cd, 0) + 1
            attributes.append(ClProductAttr(
                batch_id=batch_id,
                temp_row_id=temp_row_id,
                attr_cd=attr_cd,
                attr_seq=seqs[attr_cd],
                source_id=None if _blank(source_id) else str(source_id).strip(),
                source_label=None if _blank(source_label) else str(source_label).strip(),
                source_raw=json.dumps(raw, ensure_ascii=False),
                data_type=data_type,
                is_required=bool(column.get("is_required")),
            ))

        return attributes, issues

    def _from_fixed_map(
        self,
        fixed_map: FixedToAttrMap,
        column: Mapping[str, Any],
        processed_columns: Mapping[str, Mapping[str, Any]],
    ) -> Tuple[Optional[str], Optional[str], Dict[str, Any], List[str]]:
        role = (fixed_map.value_role or ValueRole.ID_ONLY.value).upper()
        id_key, id_value = self._find(fixed_map.source_id_column, processed_columns)
        label_key, label_value = self._find(fixed_map.source_label_column, processed_columns)

        if role == ValueRole.ID_AND_LABEL.value:
            source_id = id_value if id_key else column.get("transformed_value")
            source_label = label_value
        elif role == ValueRole.LABEL_ONLY.value:
            source_id = None
            source_label = label_value if label_key else column.get("transformed_value")
        else:
            source_id = id_value if id_key else column.get("transformed_value")
            source_label = None

        raw = {}
        if fixed_map.source_id_column and not _blank(source_id):
            raw[fixed_map.source_id_column] = source_id
        if fixed_map.source_label_column and not _blank(source_label):
            raw[fixed_map.source_label_column] = source_label
        used = [k for k in (id_key, label_key) if k]
        return source_id, source_label, raw, used

    @staticmethod
    def _find(
        source_column: Optional[str],
        processed_columns: Mapping[str, Mapping[str, Any]],
    ) -> Tuple[Optional[str], Optional[str]]:
        """(payload key, transformed value) of the column whose target matches ``source_<target>``"""
        target = strip_source_prefix(source_column)
        if not target:
            return None, None
        for key, info in processed_columns.items():
            if (info.get("target_column") or "").lower() == target.lower():
                return key, info.get("transformed_value")
        return None, None
