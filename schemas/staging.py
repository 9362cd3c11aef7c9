"""
Pydantic schema of one processed CSV column in the staging side payload
"""

from pydantic import BaseModel, Field, validator
from typing import Optional
from models.base import ProjectionKind


class ProcessedColumn(BaseModel):
    """
    Everything known about one source column of one CSV row.

    Stored under extras_json.processed_columns so the staged record keeps
    every column, mapped or not.
    """

    csv_column_index: int = Field(..., ge=0, description="1-based CSV column; 0 for injected values")
    header: str
    raw_value: str = ""
    transformed_value: Optional[str] = None
    target_column: str = ""
    projection_kind: ProjectionKind
    attr_cd: str = ""
    transform_expr: str = ""
    is_required: bool = False
    is_injected: bool = False
    mapping_success: bool = False

    @validator("raw_value", "target_column", "attr_cd", "transform_expr", pre=True)
    def none_to_empty(cls, v):
        return "" if v is None else v

    @validator("attr_cd")
    def clean_attr_cd(cls, v):
        return v.strip()

    class Config:
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "csv_column_index": 3,
                "header": "ブランドID",
                "raw_value": " 0123 ",
                "transformed_value": "0123",
                "target_column": "brand_id",
                "projection_kind": "PRODUCT",
                "attr_cd": "BRAND",
                "transform_expr": "trim(@)",
                "is_required": True,
                "is_injected": False,
                "mapping_success": True
            }
        }
