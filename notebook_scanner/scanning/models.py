from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class ScanJobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanJobState.DONE, ScanJobState.FAILED)


ACTIVE_JOB_STATES = (ScanJobState.PENDING, ScanJobState.PROCESSING)

SUPERSEDED_REASON = "superseded"
TIMEOUT_REASON = "timeout"


class RoutingState(str, Enum):
    PENDING = "pending"
    ROUTED = "routed"
    FAILED = "failed"


@dataclass
class ImageRef:
    url: str
    captured_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class StructuredOutput:
    """
    Parsed recognition result: narrative text with markers stripped plus the
    marker-tagged lines bucketed in the order they appeared on the page.
    """

    cleaned_text: str
    tasks: List[str] = field(default_factory=list)
    calendar: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls) -> "StructuredOutput":
        return cls(cleaned_text="")


@dataclass
class PageIdentity:
    page_id: str
    notebook_id: str
    page_index: int


@dataclass
class NotebookRecord:
    id: str
    owner_id: str
    title: str
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PageRecord:
    id: str
    notebook_id: str
    page_index: int
    token: str
    token_revoked: bool = False
    images: List[ImageRef] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def identity(self) -> PageIdentity:
        return PageIdentity(page_id=self.id, notebook_id=self.notebook_id, page_index=self.page_index)


@dataclass
class ScanJobRecord:
    id: str
    page_id: str
    state: ScanJobState
    image_urls: List[str] = field(default_factory=list)
    raw_text: Optional[str] = None
    structured: Optional[StructuredOutput] = None
    error_message: Optional[str] = None
    routing_state: Optional[RoutingState] = None
    routing_error: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TaskListRecord:
    id: str
    owner_id: str
    name: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class TaskRecord:
    id: str
    owner_id: str
    list_id: str
    title: str
    position: int
    source_job_id: str
    source_page_id: str
    note: str = ""
    completed: bool = False
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class CalendarRecord:
    id: str
    owner_id: str
    name: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class CalendarEventRecord:
    """
    Draft event. Date/time extraction is left to a person or a later
    component, so start/end stay unset and the raw line is kept verbatim.
    """

    id: str
    owner_id: str
    calendar_id: str
    title: str
    description: str
    position: int
    source_job_id: str
    source_page_id: str
    is_draft: bool = True
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PageTranscriptRecord:
    page_id: str
    notebook_id: str
    owner_id: str
    job_id: str
    text: str
    notes: List[str] = field(default_factory=list)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class RoutingResult:
    job_id: str
    page_id: str
    task_ids: List[str] = field(default_factory=list)
    event_ids: List[str] = field(default_factory=list)
    transcript_page_id: Optional[str] = None
