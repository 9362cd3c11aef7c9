"""
Reference resolver: raw source id/label → canonical code/label.

Resolution shapes are a closed set (single-hop lookup or two-hop join) built
from m_ref_table_map rows. Every table and column name in a shape is checked
against the ORM metadata when the shape is built, so no identifier ever
reaches a query unless it belongs to a known table.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Tuple, Union
from sqlalchemy import select, and_, cast, String, MetaData, Table
from sqlalchemy.ext.asyncio import AsyncSession
import logging

from core.exceptions import ResolverConfigError
from models import Base
from models.reference import RefTableMap

logger = logging.getLogger(__name__)

MATCH_BY_ID = "ID"
MATCH_BY_AUTO = "AUTO"


@dataclass(frozen=True)
class SingleHop:
    """Lookup on one table, matched by id, returning one code column"""
    ref_map_id: int
    table: str
    id_col: str
    return_col: str


@dataclass(frozen=True)
class TwoHop:
    """
    hop1 matched by id (or id + label in AUTO mode), joined to hop2 through
    column-equality pairs, returning hop2's code and label.
    """
    ref_map_id: int
    hop1_table: str
    hop1_id_col: str
    hop1_label_col: Optional[str]
    match_by: str
    join_on: Tuple[Tuple[str, str], ...]
    hop2_table: str
    return_cd_col: str
    return_label_col: Optional[str]


ResolutionShape = Union[SingleHop, TwoHop]


def _clean_identifier(name: Optional[str]) -> Optional[str]:
    """Strip template braces and whitespace from a configured identifier"""
    if name is None:
        return None
    cleaned = name.replace("{", "").replace("}", "").strip()
    return cleaned or None


def _require_table(metadata: MetaData, ref_map_id: int, name: Optional[str]) -> Table:
    if not name or name not in metadata.tables:
        raise ResolverConfigError(
            "Unknown table in reference map",
            context={"ref_map_id": ref_map_id, "identifier": name},
        )
    return metadata.tables[name]


def _require_column(table: Table, ref_map_id: int, name: Optional[str]) -> str:
    if not name or name not in table.c:
        raise ResolverConfigError(
            "Unknown column in reference map",
            context={"ref_map_id": ref_map_id, "identifier": f"{table.name}.{name}"},
        )
    return name


def build_shape(ref_map: RefTableMap, metadata: MetaData = Base.metadata) -> ResolutionShape:
    """
    Build and validate a resolution shape from a m_ref_table_map row.

    Raises:
        ResolverConfigError: a table or column is not part of the schema
    """
    ref_map_id = ref_map.ref_map_id
    hop1 = _require_table(metadata, ref_map_id, _clean_identifier(ref_map.hop1_table))
    hop1_id_col = _require_column(hop1, ref_map_id, _clean_identifier(ref_map.hop1_id_col))

    hop2_name = _clean_identifier(ref_map.hop2_table)
    if not hop2_name:
        return_cols = [c for c in (ref_map.hop1_return_cols or []) if _clean_identifier(c)]
        return_col = _clean_identifier(return_cols[0]) if return_cols else hop1_id_col
        return SingleHop(
            ref_map_id=ref_map_id,
            table=hop1.name,
            id_col=hop1_id_col,
            return_col=_require_column(hop1, ref_map_id, return_col),
        )

    hop2 = _require_table(metadata, ref_map_id, hop2_name)
    label_col = _clean_identifier(ref_map.hop1_label_col)
    if label_col:
        _require_column(hop1, ref_map_id, label_col)

    join_on = []
    for hop1_col, hop2_col in (ref_map.hop2_join_on or {}).items():
        join_on.append((
            _require_column(hop1, ref_map_id, _clean_identifier(hop1_col)),
            _require_column(hop2, ref_map_id, _clean_identifier(hop2_col)),
        ))

    return_label_col = _clean_identifier(ref_map.hop2_return_label_col)
    if return_label_col:
        _require_column(hop2, ref_map_id, return_label_col)

    return TwoHop(
        ref_map_id=ref_map_id,
        hop1_table=hop1.name,
        hop1_id_col=hop1_id_col,
        hop1_label_col=label_col,
        match_by=(ref_map.hop1_match_by or MATCH_BY_ID).strip().upper(),
        join_on=tuple(join_on),
        hop2_table=hop2.name,
        return_cd_col=_require_column(hop2, ref_map_id, _clean_identifier(ref_map.hop2_return_cd_col)),
        return_label_col=return_label_col,
    )


async def load_shapes(session: AsyncSession, metadata: MetaData = Base.metadata) -> Dict[int, ResolutionShape]:
    """
    Load every active reference map as a validated shape.

    Maps that fail validation are logged and left out; attributes pointing
    at them are reported as REF_TABLE_MAP_NOT_FOUND by the cleansing engine.
    """
    result = await session.execute(select(RefTableMap).where(RefTableMap.is_active.is_(True)))
    shapes: Dict[int, ResolutionShape] = {}
    for ref_map in result.scalars().all():
        try:
            shapes[ref_map.ref_map_id] = build_shape(ref_map, metadata)
        except ResolverConfigError as e:
            logger.warning(f"Reference map {ref_map.ref_map_id} ({ref_map.attr_cd}) rejected: {e}")
    return shapes


class ReferenceResolver:
    """
    Resolve source id/label pairs through validated shapes.

    Results (hits and misses) are cached for the lifetime of the resolver,
    which is one batch: reference tables are read-only during a run.
    """

    def __init__(
        self,
        session: AsyncSession,
        company_cd: Optional[str] = None,
        metadata: MetaData = Base.metadata,
    ):
        self.session = session
        self.company_cd = company_cd
        self.metadata = metadata
        self._cache: Dict[tuple, Tuple[Optional[str], Optional[str]]] = {}

    async def resolve(
        self,
        shape: ResolutionShape,
        source_id: Optional[str],
        source_label: Optional[str],
    ) -> Tuple[Optional[str], Optional[str]]:
        """
        Resolve to (code, label), or (None, None) on a miss.

        Never raises for a resolution miss; database failures propagate.
        """
        source_id = (source_id or "").strip() or None
        source_label = (source_label or "").strip() or None

        key = (shape, source_id, source_label)
        if key in self._cache:
            return self._cache[key]

        if isinstance(shape, SingleHop):
            resolved = await self._resolve_single(shape, source_id)
        else:
            resolved = await self._resolve_join(shape, source_id, source_label)

        self._cache[key] = resolved
        return resolved

    def _scope_filters(self, table: Table) -> list:
        filters = []
        if "is_active" in table.c:
            filters.append(table.c.is_active.is_(True))
        return filters

    async def _resolve_single(self, shape: SingleHop, source_id: Optional[str]):
        if source_id is None:
            return None, None

        table = self.metadata.tables[shape.table]
        filters = [cast(table.c[shape.id_col], String) == source_id]
        filters.extend(self._scope_filters(table))

        stmt = select(table.c[shape.return_col]).where(and_(*filters)).limit(1)
        row = (await self.session.execute(stmt)).first()
        if row is None or row[0] is None:
            return None, None
        return str(row[0]), None

    async def _resolve_join(
        self,
        shape: TwoHop,
        source_id: Optional[str],
        source_label: Optional[str],
    ):
        if not shape.join_on:
            logger.warning(
                f"Reference map {shape.ref_map_id} has no join definition "
                f"({shape.hop1_table} → {shape.hop2_table}); treating as unresolved"
            )
            return None, None

        hop1 = self.metadata.tables[shape.hop1_table].alias("hop1")
        hop2 = self.metadata.tables[shape.hop2_table].alias("hop2")

        if shape.match_by == MATCH_BY_AUTO:
            if source_id is None or source_label is None or not shape.hop1_label_col:
                return None, None
            filters = [
                cast(hop1.c[shape.hop1_id_col], String) == source_id,
                hop1.c[shape.hop1_label_col] == source_label,
            ]
        elif shape.match_by in ("", MATCH_BY_ID):
            if source_id is None:
                return None, None
            filters = [cast(hop1.c[shape.hop1_id_col], String) == source_id]
        else:
            logger.warning(
                f"Reference map {shape.ref_map_id} uses unknown match mode "
                f"'{shape.match_by}'; treating as unresolved"
            )
            return None, None

        filters.extend(self._scope_filters(hop1))
        filters.extend(self._scope_filters(hop2))
        if self.company_cd and "group_company_cd" in hop1.c:
            filters.append(hop1.c.group_company_cd == self.company_cd)

        on_clause = and_(*[hop1.c[left] == hop2.c[right] for left, right in shape.join_on])
        label_column = hop2.c[shape.return_label_col] if shape.return_label_col else None
        columns = [hop2.c[shape.return_cd_col]]
        if label_column is not None:
            columns.append(label_column)

        stmt = (
            select(*columns)
            .select_from(hop1.join(hop2, on_clause))
            .where(and_(*filters))
            .limit(1)
        )
        row = (await self.session.execute(stmt)).first()
        if row is None or row[0] is None:
            return None, None

        label = row[1] if label_column is not None else None
        return str(row[0]), (str(label) if label is not None else None)
