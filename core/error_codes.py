"""
Stable error codes written to record_error.error_cd
"""

import enum


class ErrorCode(str, enum.Enum):
    """Error classification codes, grouped by the stage that emits them"""

    # Ingest
    PARSE_FAILED = "PARSE_FAILED"
    MISSING_COLUMN = "MISSING_COLUMN"
    MAPPING_NOT_FOUND = "MAPPING_NOT_FOUND"
    REQUIRED_FIELD_EMPTY = "REQUIRED_FIELD_EMPTY"

    # Cleanse
    MISSING_ATTR_DEFINITION = "MISSING_ATTR_DEFINITION"
    MISSING_CLEANSE_POLICY = "MISSING_CLEANSE_POLICY"
    SOURCE_RAW_NOT_FOUND = "SOURCE_RAW_NOT_FOUND"
    INVALID_TYPE_CAST = "INVALID_TYPE_CAST"
    REF_NOT_FOUND = "REF_NOT_FOUND"
    REF_TABLE_MAP_NOT_FOUND = "REF_TABLE_MAP_NOT_FOUND"
    LIST_GROUP_NOT_FOUND = "LIST_GROUP_NOT_FOUND"
    MISSING_MATCH_KIND = "MISSING_MATCH_KIND"
    SINGLE_VALUE_CONFLICT = "SINGLE_VALUE_CONFLICT"

    # Upsert
    UPSERT_KEY_MISSING = "UPSERT_KEY_MISSING"
    IDENT_FAILED = "IDENT_FAILED"
    CATEGORY_NOT_FOUND = "CATEGORY_NOT_FOUND"
    FIXED_COL_UPDATE_FAILED = "FIXED_COL_UPDATE_FAILED"
    EAV_SYNC_FAILED = "EAV_SYNC_FAILED"
    PRODUCT_MANAGEMENT_FAILED = "PRODUCT_MANAGEMENT_FAILED"
    UPSERT_UNKNOWN_ERROR = "UPSERT_UNKNOWN_ERROR"
    EVENT_PRODUCT_NOT_FOUND = "EVENT_PRODUCT_NOT_FOUND"
    EVENT_INVALID = "EVENT_INVALID"
