"""
SQLAlchemy ORM models for database tables.

This package defines the database schema of the product catalog pipeline:

Models:
    base: Base declarative class and shared enums (BatchStatus, QualityStatus, DataType, ...)
    batch_run: Batch lifecycle, counters document and claim lease
    staging: Staged records (temp_product_parsed, temp_product_event) and
             staged / cleansed attributes (cl_product_attr)
    reference: Import profiles, attribute registry, cleanse policies,
               reference maps and golden dictionaries
    product: Identity, master, EAV and management aggregate tables
    record_error: Per-record error trail

Database Schema:
    All models inherit from the Base declarative class and use
    PostgreSQL-specific features (JSONB, UUID, partial unique indexes,
    sequences). Importing this package registers every table on
    Base.metadata, which the reference resolver uses as its allow-list.

Usage:
    from models import Product, ProductEav, ClProductAttr
    from models.base import QualityStatus, BatchStatus

Relationships:
    - BatchRun → TempProductParsed → ClProductAttr (one-to-many per stage)
    - ProductIdent → Product → ProductEav (identity, master, attributes)
    - ProductManagement → ProductManagementEav (management aggregate)
"""

from models.base import Base
from models.batch_run import BatchRun
from models.staging import TempProductParsed, ClProductAttr, TempProductEvent
from models.reference import (
    Company,
    BrandG,
    CategoryG,
    ListGroupG,
    ListItemG,
    AttrSourceMap,
    BrandSourceMap,
    CategorySourceMap,
    AttrDefinition,
    CleanseRuleSet,
    CleansePolicy,
    RefTableMap,
    DataImportSetting,
    DataImportColumn,
    FixedToAttrMap,
)
from models.product import (
    ProductIdent,
    Product,
    ProductEav,
    ProductManagement,
    ProductManagementEav,
)
from models.record_error import RecordError

__all__ = [
    "Base",
    "BatchRun",
    "TempProductParsed",
    "ClProductAttr",
    "TempProductEvent",
    "Company",
    "BrandG",
    "CategoryG",
    "ListGroupG",
    "ListItemG",
    "AttrSourceMap",
    "BrandSourceMap",
    "CategorySourceMap",
    "AttrDefinition",
    "CleanseRuleSet",
    "CleansePolicy",
    "RefTableMap",
    "DataImportSetting",
    "DataImportColumn",
    "FixedToAttrMap",
    "ProductIdent",
    "Product",
    "ProductEav",
    "ProductManagement",
    "ProductManagementEav",
    "RecordError",
]
