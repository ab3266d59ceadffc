"""Medical document ingestion service: upload, text extraction, structured extraction."""

__version__ = "1.0.0"
