"""
Upsert stage: cleansed attributes → golden product, EAV and management rows.

Modules:
    counters: Per-run insert / update / skip / error accumulator
    diff: Typed column diffing with volatile-provenance stripping
    identity: Identity resolver (company + source code → g_product_id)
    eav: EAV synchronizer shared by product and management aggregates
    management: Management aggregate writer
    engine: Per-product upsert engine for PRODUCT batches
    events: Last-event updates for EVENT batches
"""

__all__ = [
    "UpsertEngine",
    "EventUpsertEngine",
    "IdentityResolver",
    "EavSynchronizer",
    "ProductManagementWriter",
    "UpsertCounters",
]
