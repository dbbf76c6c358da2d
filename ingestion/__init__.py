"""
LEI ingestion pipeline components.

Modules:
    store: SnapshotFile / JobStatus persistence, including the atomic job claim
    schedule: Parsing of the timer configuration
    scheduler: APScheduler-driven FULL/DELTA runs, manual triggers, resume,
               retention and startup recovery
    processor: Resumable streaming processor with checkpoints
    retention: Payload retention cleanup
    status: Read-only status facade plus resume

Subpackages:
    extractors: GLEIF download (GLEIFDownloader) and streaming reader (SnapshotReader)
    transformers: GLEIF JSON to LEIRecordCreate (LEINormalizer)
    loaders: Upsert engine with audit trail (LEIRecordLoader)

Architecture:
    1. Acquire - Stream the golden copy to disk, verify it, register a SnapshotFile
    2. Process - Read records lazily, validate, batch
    3. Load - Upsert each batch and advance the checkpoint in one transaction

    A run starts only after the job kind was claimed (IDLE/COMPLETED -> RUNNING)
    with a conditional UPDATE, so scheduled and manual runs exclude each other.

Usage:
    from ingestion.scheduler import IngestionScheduler

    scheduler = IngestionScheduler()
    scheduler.start()
    await scheduler.trigger_full()

Error Handling:
    All components raise exceptions from core.exceptions. Every run-aborting
    error carries a FailureCategory that is persisted on the snapshot.
"""

__all__ = [
    "IngestionScheduler",
    "SnapshotProcessor",
    "GLEIFDownloader",
    "SnapshotReader",
    "LEINormalizer",
    "LEIRecordLoader",
    "RetentionCleaner",
    "IngestionStatusService",
]
