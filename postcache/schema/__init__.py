"""ORM models for the canonical store, the selection table and the schema marker."""

from .records import Record, RecordSource, RecordTag, Tag
from .selection import SelectableRecord, SelectionState
from .versioning import SchemaVersion

__all__ = ["Record", "RecordSource", "RecordTag", "SchemaVersion", "SelectableRecord", "SelectionState", "Tag"]
