"""
Catalog pipeline components: Ingest → Cleanse → Upsert.

Modules:
    csv_ingestor: CSV file → batch + staging rows (pandas)
    transforms: Whitelisted column transforms of import profiles
    attribute_extractor: Side payload + fixed-column map → staged attributes
    record_errors: record_error trail writer
    batch: Batch coordinator (claim lease, checkpoints, finalize)
    runner: Pipeline orchestrator
    scheduler: APScheduler integration scanning the inbound directory

Subpackages:
    cleansing: Reference resolver, attribute registry, cleansing engine
    upsert: Identity resolver, diffing, EAV sync, upsert engines

Architecture:
    Each stage is idempotent and can be re-run for the same batch:

    1. Ingest - one transaction per file; the batch idempotency key blocks
       a second ingest of the same source object
    2. Cleanse - staged attributes are overwritten in place, committed in
       chunks
    3. Upsert - one transaction per product; failures are recorded and the
       batch continues

Usage:
    from ingestion.runner import PipelineRunner

    runner = PipelineRunner()
    result = await runner.run_file("data/inbound/KM_PRODUCT.csv", "KM", DataKind.PRODUCT)
    print(result["status"], result["counts"]["UPSERT"])

Error Handling:
    Record-level problems land in record_error with a stable error code.
    Infrastructure failures propagate as exceptions from core.exceptions.
"""

__all__ = [
    "PipelineRunner",
    "PipelineScheduler",
    "BatchCoordinator",
    "CSVIngestor",
    "AttributeExtractor",
    "RecordErrorWriter",
]
