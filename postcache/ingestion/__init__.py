"""Export ingestion: reader, engine and batching pipeline."""

from .engine import IngestionEngine, diff_tag_ids
from .export_reader import read_export
from .models import IngestOutcome, IngestResult, IngestStats, RecordIn
from .pipeline import IngestionPipeline
from .tag_cache import TagCache

__all__ = ["IngestOutcome", "IngestResult", "IngestStats", "IngestionEngine", "IngestionPipeline", "RecordIn", "TagCache", "diff_tag_ids", "read_export"]
