"""
Cleanse stage: staged attributes → typed, reference-resolved values.

Modules:
    resolver: Reference resolver over validated single-hop / two-hop shapes
    registry: Attribute definition registry and cleanse policy book
    normalize: Number and date parsers for vendor text
    quality: Cleansing outcome with quality detail and provenance
    reconcile: Single-value reconciliation inside one record
    engine: Cleansing engine driving one batch
"""

__all__ = [
    "CleansingEngine",
    "ReferenceResolver",
    "SingleHop",
    "TwoHop",
    "AttributeDefinitionRegistry",
    "CleansePolicyBook",
    "CleansedAttribute",
]
