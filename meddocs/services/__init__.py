"""
Services Package

  pipeline.py    DocumentPipeline state machine + stale-run sweeper
  dispatcher.py  In-process / Celery dispatch of pipeline runs
  ingestion.py   DocumentService: upload, list, get, reprocess, delete, file
  findings.py    Recent lab results and summaries for a user
"""

from meddocs.services.dispatcher import CeleryDispatcher, InProcessDispatcher, build_dispatcher
from meddocs.services.pipeline import DocumentPipeline, fail_stale_documents

__all__ = [
    "CeleryDispatcher",
    "InProcessDispatcher",
    "build_dispatcher",
    "DocumentPipeline",
    "fail_stale_documents",
]
