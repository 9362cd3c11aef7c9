# ============================================================================
# File: ingestion/csv_ingestor.py
# Description: Ingest stage - vendor CSV → batch + staging rows
# ============================================================================
"""
CSV Ingestor - parse one vendor file into staging rows.

Flow:
1. Resolve the import profile (m_data_import_setting + m_data_import_d)
2. Create the batch; the idempotency key blocks a second batch for the
   same source object
3. Read the file with pandas, every cell as a string
4. Per row: apply column transforms, build the side payload, hoist fixed
   columns, stage the row (PRODUCT → temp_product_parsed + cl_product_attr,
   EVENT → temp_product_event)
5. Row problems go to record_error (step INGEST) and the row is skipped

The whole file is one transaction: a crash leaves no half-ingested batch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
import pandas as pd
import json
import logging
import uuid

from core.config import settings
from core.error_codes import ErrorCode
from core.exceptions import CSVParseError, DuplicateBatchError, ImportProfileNotFoundError
from models.base import BatchStatus, DataKind, PipelineStep, ProjectionKind, StepStatus
from models.batch_run import BatchRun
from models.reference import DataImportColumn, DataImportSetting
from models.staging import TempProductEvent, TempProductParsed
from ingestion.attribute_extractor import AttributeExtractor
from ingestion.record_errors import RecordErrorWriter
from ingestion.transforms import apply_transform
from schemas.staging import ProcessedColumn

logger = logging.getLogger(__name__)

INGEST_SECTION = "INGEST"
INJECTED_COLUMN_SEQ = 0
INJECTED_HEADER = "[injected:group_company_cd]"
PROJECTION_KINDS = {kind.value for kind in ProjectionKind}
# Staging columns the ingestor fills itself
INGESTOR_COLUMNS = frozenset({"source_group_company_cd"})

# attr_cd → temp_product_event column, first non-empty value wins
EVENT_COLUMNS = {
    "PRODUCT_CD": "source_product_id",
    "STORE": "source_store_id_raw",
    "NEW_USED_KBN": "source_new_used_kbn_raw",
    "EVENT_TS": "event_ts_raw",
    "EVENT_KIND": "event_kind_raw",
    "EVENT_QUANTITY": "qty_raw",
}


@dataclass
class ImportProfile:
    setting: DataImportSetting
    columns: List[DataImportColumn]

    @property
    def encoding(self) -> str:
        return self.setting.character_cd or settings.CSV_ENCODING

    @property
    def delimiter(self) -> str:
        return self.setting.delimiter or ","

    @property
    def header_row_index(self) -> int:
        return max(self.setting.header_row_index or 1, 1)


@dataclass
class IngestResult:
    batch_id: str
    data_kind: DataKind
    counts: Dict[str, int] = field(default_factory=dict)


class RowRejected(Exception):
    """A CSV row that cannot be staged"""

    def __init__(self, error_code: ErrorCode, detail: str):
        super().__init__(detail)
        self.error_code = error_code
        self.detail = detail


def build_idem_key(path: Path) -> str:
    """``<path>:<mtime ns>:<size>``: a re-delivered file with new content gets a new key"""
    stat = path.stat()
    return f"{path.resolve()}:{stat.st_mtime_ns}:{stat.st_size}"


def new_batch_id(company_cd: str, data_kind: DataKind) -> str:
    return f"{company_cd}-{data_kind.value}-{datetime.utcnow():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:8]}"


def _cell(value: Any) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str) and pd.isna(value):
        return None
    return str(value)


class CSVIngestor:
    """Ingest one CSV file for (company, data kind) into a new batch"""

    def __init__(self, session: AsyncSession, company_cd: str, data_kind: DataKind = DataKind.PRODUCT):
        self.session = session
        self.company_cd = company_cd
        self.data_kind = DataKind(data_kind)
        self.extractor: Optional[AttributeExtractor] = None
        self._bad_lines: List[List[str]] = []

    async def load_profile(self) -> ImportProfile:
        """
        Raises:
            ImportProfileNotFoundError: no active profile for company + entity
        """
        result = await self.session.execute(
            select(DataImportSetting)
            .where(
                DataImportSetting.group_company_cd == self.company_cd,
                DataImportSetting.target_entity == self.data_kind.value,
                DataImportSetting.is_active.is_(True),
            )
            .order_by(DataImportSetting.profile_id)
            .limit(1)
        )
        setting = result.scalar_one_or_none()
        if setting is None:
            raise ImportProfileNotFoundError(
                "No active import profile",
                context={"group_company_cd": self.company_cd, "target_entity": self.data_kind.value},
            )

        column_result = await self.session.execute(
            select(DataImportColumn)
            .where(DataImportColumn.profile_id == setting.profile_id)
            .order_by(DataImportColumn.column_seq, DataImportColumn.projection_kind, DataImportColumn.id)
        )
        columns = list(column_result.scalars().all())
        logger.info(f"Import profile {setting.usage_nm}: {len(columns)} column rules")
        return ImportProfile(setting, columns)

    async def create_batch(self, path: Path) -> BatchRun:
        """
        Raises:
            DuplicateBatchError: a batch with the same idempotency key exists
        """
        idem_key = build_idem_key(path)
        result = await self.session.execute(
            select(BatchRun.batch_id).where(BatchRun.idem_key == idem_key)
        )
        existing = result.scalar_one_or_none()
        if existing is not None:
            raise DuplicateBatchError(
                "File already ingested",
                context={"idem_key": idem_key, "batch_id": existing},
            )

        batch = BatchRun(
            batch_id=new_batch_id(self.company_cd, self.data_kind),
            idem_key=idem_key,
            group_company_cd=self.company_cd,
            data_kind=self.data_kind,
            file_key=str(path),
            status=BatchStatus.RUNNING,
            counts={},
            started_at=datetime.utcnow(),
        )
        self.session.add(batch)
        await self.session.flush()
        logger.info(f"Created batch {batch.batch_id} for {path.name}")
        return batch

    def read_frame(self, path: Path, profile: ImportProfile) -> pd.DataFrame:
        """
        Raises:
            CSVParseError: the file cannot be decoded or tokenized at all
        """
        self._bad_lines = []

        def _on_bad_line(fields: List[str]) -> None:
            self._bad_lines.append(fields)
            return None

        try:
            return pd.read_csv(
                path,
                sep=profile.delimiter,
                encoding=profile.encoding,
                header=profile.header_row_index - 1,
                dtype=str,
                keep_default_na=False,
                engine="python",
                on_bad_lines=_on_bad_line,
            )
        except (UnicodeDecodeError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise CSVParseError(
                "Failed to read CSV file",
                context={"file_path": str(path), "encoding": profile.encoding},
                original_exception=e,
            )

    # ------------------------------------------------------------------
    # Stage entry point
    # ------------------------------------------------------------------

    async def ingest(self, path) -> IngestResult:
        """
        Ingest ``path`` into a new batch and commit.

        Raises:
            ImportProfileNotFoundError, DuplicateBatchError, CSVParseError
        """
        path = Path(path)
        if not path.exists():
            raise CSVParseError("CSV file not found", context={"file_path": str(path)})

        profile = await self.load_profile()
        if self.data_kind == DataKind.PRODUCT:
            self.extractor = await AttributeExtractor.load(self.session, self.company_cd)

        try:
            batch = await self.create_batch(path)
            frame = self.read_frame(path, profile)
            counts = await self._stage_rows(batch, frame, profile)
            batch.counts = {INGEST_SECTION: counts}
            await self.session.commit()
        except IntegrityError as e:
            await self.session.rollback()
            raise DuplicateBatchError(
                "File already ingested",
                context={"file_path": str(path)},
                original_exception=e,
            )
        except Exception:
            await self.session.rollback()
            raise

        logger.info(
            f"[{batch.batch_id}] Ingest complete: read={counts['read']}, "
            f"ok={counts['ok']}, ng={counts['ng']}"
        )
        return IngestResult(batch.batch_id, self.data_kind, counts)

    async def _stage_rows(self, batch: BatchRun, frame: pd.DataFrame, profile: ImportProfile) -> Dict[str, int]:
        errors = RecordErrorWriter(self.session, batch.batch_id)
        headers = [str(h) for h in frame.columns]
        counts = {"read": 0, "ok": 0, "ng": 0}

        for index, fields in enumerate(self._bad_lines, start=1):
            counts["read"] += 1
            counts["ng"] += 1
            errors.add(
                PipelineStep.INGEST,
                ErrorCode.MISSING_COLUMN,
                record_ref=f"bad_line={index}",
                detail=f"Expected {len(headers)} columns, got {len(fields)}",
                raw_fragment=json.dumps(fields, ensure_ascii=False),
            )

        for position, values in enumerate(frame.itertuples(index=False, name=None)):
            line_no = position + 1
            counts["read"] += 1
            cells = [_cell(v) for v in values]
            try:
                if any(c is None for c in cells):
                    raise RowRejected(
                        ErrorCode.MISSING_COLUMN,
                        f"Row has {sum(c is not None for c in cells)} of {len(headers)} columns",
                    )
                payload, hoisted, missing = self.map_row(cells, headers, profile.columns, line_no)
                if missing:
                    raise RowRejected(ErrorCode.REQUIRED_FIELD_EMPTY, "; ".join(missing))
            except RowRejected as rejected:
                counts["ng"] += 1
                errors.add(
                    PipelineStep.INGEST,
                    rejected.error_code,
                    record_ref=f"line={line_no}",
                    detail=rejected.detail,
                    raw_fragment=json.dumps(dict(zip(headers, cells)), ensure_ascii=False),
                )
                continue

            if self.data_kind == DataKind.EVENT:
                self.session.add(TempProductEvent(
                    batch_id=batch.batch_id,
                    line_no=line_no,
                    idem_key=f"{batch.batch_id}:{line_no}",
                    source_group_company_cd=self.company_cd,
                    extras=payload,
                    step_status=StepStatus.READY.value,
                    **hoisted,
                ))
            else:
                temp_row_id = uuid.uuid4()
                self.session.add(TempProductParsed(
                    temp_row_id=temp_row_id,
                    batch_id=batch.batch_id,
                    line_no=line_no,
                    source_group_company_cd=self.company_cd,
                    extras=payload,
                    step_status=StepStatus.READY.value,
                    **hoisted,
                ))
                attributes, issues = self.extractor.extract(
                    batch.batch_id, temp_row_id, payload["processed_columns"]
                )
                self.session.add_all(attributes)
                for issue in issues:
                    errors.add(
                        PipelineStep.INGEST,
                        issue.error_code,
                        record_ref=f"line={line_no}",
                        detail=issue.detail,
                        raw_fragment=issue.column_key,
                    )
            counts["ok"] += 1

            if counts["read"] % settings.CHECKPOINT_EVERY == 0:
                await self.session.flush()

        return counts

    def map_row(
        self,
        cells: List[Optional[str]],
        headers: List[str],
        columns: List[DataImportColumn],
        line_no: int,
    ) -> Tuple[Dict[str, Any], Dict[str, Optional[str]], List[str]]:
        """
        Returns:
            (side payload, hoisted staging columns, required-field messages)
        """
        source_raw: Dict[str, Optional[str]] = {}
        processed: Dict[str, Dict[str, Any]] = {}
        hoisted: Dict[str, Optional[str]] = {}
        missing: List[str] = []
        sub_index = 0

        for header, cell in zip(headers, cells):
            source_raw[header] = cell

        for rule in columns:
            if rule.projection_kind not in PROJECTION_KINDS:
                logger.warning(f"Column rule {rule.id} has unknown projection '{rule.projection_kind}', skipped")
                continue
            seq = rule.column_seq
            if seq == INJECTED_COLUMN_SEQ:
                raw_value, header = self.company_cd, INJECTED_HEADER
            elif seq - 1 < len(cells):
                raw_value, header = cells[seq - 1], headers[seq - 1]
            else:
                if rule.is_required:
                    missing.append(f"column {seq} ({rule.attr_cd or rule.target_column}) is not in the file")
                continue

            transformed = apply_transform(raw_value, rule.transform_expr)
            if rule.attr_cd:
                key = f"col_{seq}_{rule.attr_cd.replace(':', '_')}"
            else:
                key = f"col_{seq}_sub{sub_index}"
                sub_index += 1

            mapping_success = False
            if rule.target_column and rule.projection_kind in (ProjectionKind.PRODUCT.value, ProjectionKind.EVENT.value):
                mapping_success = self._hoist(rule, raw_value, transformed, hoisted)
                if rule.is_required and (transformed is None or not transformed.strip()):
                    missing.append(f"column {seq} ({rule.attr_cd or rule.target_column}) is required but empty")

            processed[key] = ProcessedColumn(
                csv_column_index=seq,
                header=header,
                raw_value=raw_value,
                transformed_value=transformed,
                target_column=rule.target_column,
                projection_kind=rule.projection_kind,
                attr_cd=rule.attr_cd,
                transform_expr=rule.transform_expr,
                is_required=bool(rule.is_required),
                is_injected=seq == INJECTED_COLUMN_SEQ,
                mapping_success=mapping_success,
            ).model_dump()

        payload = {
            "source_raw": source_raw,
            "processed_columns": processed,
            "csv_headers": headers,
            "data_row_number": line_no,
        }
        return payload, hoisted, missing

    def _hoist(
        self,
        rule: DataImportColumn,
        raw_value: Optional[str],
        transformed: Optional[str],
        hoisted: Dict[str, Optional[str]],
    ) -> bool:
        if self.data_kind == DataKind.EVENT:
            column = EVENT_COLUMNS.get((rule.attr_cd or "").upper())
            if column == "source_store_id_raw" and "store_nm" in (rule.target_column or "").lower():
                return False
            value = raw_value
            model = TempProductEvent
        else:
            column = f"source_{rule.target_column.lower()}"
            value = transformed
            model = TempProductParsed

        if not column or column not in model.__table__.c or column in INGESTOR_COLUMNS:
            return False
        if hoisted.get(column) in (None, "") and value not in (None, ""):
            hoisted[column] = value.strip() if model is TempProductParsed else value
            return True
        return False
