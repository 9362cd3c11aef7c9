from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


# ============================================================================
# ENUMS
# ============================================================================

class BatchStatus(str, enum.Enum):
    """Batch lifecycle status"""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


class DataKind(str, enum.Enum):
    """Kind of vendor feed carried by a batch"""
    PRODUCT = "PRODUCT"
    EVENT = "EVENT"


class PipelineStep(str, enum.Enum):
    """Stage that produced a record_error row"""
    INGEST = "INGEST"
    CLEANSE = "CLEANSE"
    UPSERT = "UPSERT"


class QualityStatus(str, enum.Enum):
    """Per-attribute cleansing verdict"""
    OK = "OK"
    WARN = "WARN"
    NG = "NG"


class DataType(str, enum.Enum):
    """Declared attribute data types"""
    TEXT = "TEXT"
    NUM = "NUM"
    DATE = "DATE"
    TIMESTAMPTZ = "TIMESTAMPTZ"
    LIST = "LIST"
    REF = "REF"


class MatcherKind(str, enum.Enum):
    """Policy matcher kinds understood by the cleansing engine"""
    ID_EXACT = "ID_EXACT"
    LABEL_EXACT = "LABEL_EXACT"
    DERIVE_COALESCE = "DERIVE_COALESCE"
    DERIVE_FROM_GP = "DERIVE_FROM_GP"


class ProjectionKind(str, enum.Enum):
    """Where an import column is projected to"""
    PRODUCT = "PRODUCT"
    PRODUCT_EAV = "PRODUCT_EAV"
    EVENT = "EVENT"


class ValueRole(str, enum.Enum):
    """Which source columns a fixed-column map keeps"""
    ID_AND_LABEL = "ID_AND_LABEL"
    ID_ONLY = "ID_ONLY"
    LABEL_ONLY = "LABEL_ONLY"


class StepStatus(str, enum.Enum):
    """Processing state of a staged row"""
    READY = "READY"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
