"""
Service layer for mail ingestion.
"""

from .batch_import_service import BatchImportService
from .context import IngestionContext, build_ingestion_context, load_project_context
from .discovery_service import DiscoveryService, build_search_query
from .message_pipeline import MessageIngestionPipeline
from .persistence_service import PersistenceService
from .realtime_service import RealtimeIngestionService, decode_push_envelope
from .thread_reconstruction import ThreadReconstructionEngine, build_role_directory, summarize
from .watch_service import WatchService

__all__ = [
    "BatchImportService",
    "DiscoveryService",
    "IngestionContext",
    "MessageIngestionPipeline",
    "PersistenceService",
    "RealtimeIngestionService",
    "ThreadReconstructionEngine",
    "WatchService",
    "build_ingestion_context",
    "build_role_directory",
    "build_search_query",
    "decode_push_envelope",
    "load_project_context",
    "summarize",
]
