"""
Cleansing outcome: typed value, quality verdict, detail and provenance.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from core.error_codes import ErrorCode
from models.base import QualityStatus, PipelineStep
from models.reference import CleansePolicy
from models.staging import ClProductAttr

QUALITY_RANK = {QualityStatus.OK: 0, QualityStatus.WARN: 1, QualityStatus.NG: 2}


@dataclass
class CleansedAttribute:
    """
    Result of cleansing one staged attribute.

    Exactly one typed value is populated according to the data type
    (value_text accompanies value_cd for LIST/REF and the raw text for
    NUM/DATE). Quality starts OK and only ever gets worse.
    """
    attr_cd: str
    attr_seq: int
    data_type: Optional[str]
    source_raw: Optional[str]
    quality_status: QualityStatus = QualityStatus.OK
    reason_cds: List[str] = field(default_factory=list)
    messages: List[str] = field(default_factory=list)

    value_text: Optional[str] = None
    value_num: Optional[Decimal] = None
    value_date: Optional[datetime] = None
    value_cd: Optional[str] = None
    g_list_item_id: Optional[int] = None

    policy_id: Optional[int] = None
    rule_set_id: Optional[int] = None
    matcher_kind: Optional[str] = None
    step_no: Optional[int] = None
    rule_version: str = "UNKNOWN"

    @property
    def is_ng(self) -> bool:
        return self.quality_status == QualityStatus.NG

    def flag(self, status: QualityStatus, reason: ErrorCode, message: str) -> None:
        """Record a reason and lower the verdict to ``status`` if it is worse"""
        if QUALITY_RANK[status] > QUALITY_RANK[self.quality_status]:
            self.quality_status = status
        self.reason_cds.append(reason.value)
        self.messages.append(message)

    def use_policy(self, policy: Optional[CleansePolicy], rule_version: str) -> None:
        self.rule_version = rule_version
        if policy is None:
            return
        self.policy_id = policy.policy_id
        self.rule_set_id = policy.rule_set_id
        self.matcher_kind = policy.matcher_kind
        self.step_no = policy.step_no

    def quality_detail(self) -> Dict[str, Any]:
        return {
            "result": self.quality_status.value,
            "reason_cds": list(self.reason_cds),
            "messages": list(self.messages),
            "evidence": {
                "source_raw": self.source_raw,
                "value_text": self.value_text,
                "value_num": str(self.value_num) if self.value_num is not None else None,
                "value_date": self.value_date.isoformat() if self.value_date else None,
                "value_cd": self.value_cd,
            },
        }

    def provenance(
        self,
        batch_id: str,
        temp_row_id: Any,
        company_cd: str,
        worker_id: str,
        run_at: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Fresh provenance list with a single CLEANSE entry"""
        run_at = run_at or datetime.utcnow()
        return [{
            "stage": PipelineStep.CLEANSE.value,
            "rule": {
                "rule_set_id": self.rule_set_id,
                "rule_version": self.rule_version,
                "policy_id": self.policy_id,
                "attr_cd": self.attr_cd,
                "matcher_kind": self.matcher_kind,
                "step_no": self.step_no,
            },
            "input": {
                "source_raw": self.source_raw,
                "context": {"group_company_cd": company_cd},
            },
            "audit": {
                "batch_id": batch_id,
                "temp_row_id": str(temp_row_id),
                "run_at": run_at.isoformat(),
                "worker_id": worker_id,
            },
        }]

    def apply_to(self, row: ClProductAttr, provenance: List[Dict[str, Any]]) -> None:
        """Overwrite the cleansed columns of the staged row"""
        row.data_type = self.data_type
        row.value_text = self.value_text
        row.value_num = self.value_num
        row.value_date = self.value_date
        row.value_cd = self.value_cd
        row.g_list_item_id = self.g_list_item_id
        row.quality_status = self.quality_status.value
        row.quality_detail = self.quality_detail()
        row.provenance = provenance
        row.rule_version = self.rule_version
