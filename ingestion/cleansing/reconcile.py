from typing import Dict, List, Callable
import logging

from core.error_codes import ErrorCode
from models.base import QualityStatus
from ingestion.cleansing.quality import QUALITY_RANK, CleansedAttribute

logger = logging.getLogger(__name__)


def _representative_key(attr: CleansedAttribute):
    step = attr.step_no if attr.step_no not in (None, 0) else 10_000
    return (QUALITY_RANK[attr.quality_status], step, attr.attr_seq)


def reconcile_single_values(
    attributes: List[CleansedAttribute],
    is_single: Callable[[str], bool],
) -> List[CleansedAttribute]:
    """
    Keep one value per single-select attribute of a record.

    The representative is the best quality, then the lowest policy step,
    then the earliest attr_seq. Every other non-NG value is demoted to WARN
    with SINGLE_VALUE_CONFLICT. Returns the demoted attributes.
    """
    grouped: Dict[str, List[CleansedAttribute]] = {}
    for attr in attributes:
        if is_single(attr.attr_cd):
            grouped.setdefault(attr.attr_cd, []).append(attr)

    demoted = []
    for attr_cd, values in grouped.items():
        if len(values) < 2:
            continue
        keeper = min(values, key=_representative_key)
        for attr in values:
            if attr is keeper or attr.is_ng:
                continue
            attr.flag(
                QualityStatus.WARN,
                ErrorCode.SINGLE_VALUE_CONFLICT,
                f"{attr_cd} allows a single value; kept attr_seq={keeper.attr_seq}",
            )
            demoted.append(attr)
        logger.info(f"Single-value conflict on {attr_cd}: kept seq {keeper.attr_seq}, demoted {len(values) - 1}")
    return demoted
