"""Bulk post export ingestion, selection and local asset cache maintenance."""

__version__ = "0.1.0"
