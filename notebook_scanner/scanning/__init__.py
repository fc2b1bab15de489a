"""
Scanning subsystem exports.
"""

from .annotations import parse_annotations
from .errors import (
    Conflict,
    InvalidTransition,
    JobNotFound,
    NotFound,
    OwnerResolutionError,
    PageNotFound,
    RecognitionFailure,
    ScanError,
)
from .job_queue import NoopRecognitionQueue, RecognitionQueue, RQRecognitionQueue, WorkerConfig, run_recognition_job
from .jobs import ScanJobService
from .models import (
    CalendarEventRecord,
    ImageRef,
    NotebookRecord,
    PageIdentity,
    PageRecord,
    PageTranscriptRecord,
    RoutingResult,
    RoutingState,
    ScanJobRecord,
    ScanJobState,
    StructuredOutput,
    TaskRecord,
)
from .recognition import DoclingRecognitionEngine, OpenAIVisionRecognitionEngine, RecognitionEngine
from .registry import PageRegistry
from .repository import InMemoryScanRepository, ScanRepository, SqlAlchemyScanRepository
from .router import ContentRouter
from .storage import LocalImageStorage, StoragePaths
from .tokens import TokenService
from .worker import HttpCallbackSink, RecognitionWorker, ServiceCallbackSink

__all__ = [
    "CalendarEventRecord",
    "Conflict",
    "ContentRouter",
    "DoclingRecognitionEngine",
    "HttpCallbackSink",
    "ImageRef",
    "InMemoryScanRepository",
    "InvalidTransition",
    "JobNotFound",
    "LocalImageStorage",
    "NoopRecognitionQueue",
    "NotFound",
    "NotebookRecord",
    "OpenAIVisionRecognitionEngine",
    "OwnerResolutionError",
    "PageIdentity",
    "PageNotFound",
    "PageRecord",
    "PageRegistry",
    "PageTranscriptRecord",
    "RQRecognitionQueue",
    "RecognitionEngine",
    "RecognitionFailure",
    "RecognitionQueue",
    "RecognitionWorker",
    "RoutingResult",
    "RoutingState",
    "ScanError",
    "ScanJobRecord",
    "ScanJobService",
    "ScanJobState",
    "ScanRepository",
    "ServiceCallbackSink",
    "SqlAlchemyScanRepository",
    "StoragePaths",
    "StructuredOutput",
    "TaskRecord",
    "TokenService",
    "WorkerConfig",
    "parse_annotations",
    "run_recognition_job",
]
