from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from notebook_scanner.scanning import (
    CalendarEventRecord,
    NotebookRecord,
    PageRecord,
    PageTranscriptRecord,
    ScanJobRecord,
    TaskRecord,
)


class CreateNotebookRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=200)


class RegisterPageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    page_index: int = Field(ge=0)


class RegisterPageRangeRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    start: int = Field(ge=0)
    end: int = Field(ge=0)


class SubmitScanRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    page_id: str
    image_urls: List[str] = Field(min_length=1)


class WorkerCallbackRequest(BaseModel):
    """Exactly one of ``text`` (recognized page) or ``error`` (worker failure)."""

    model_config = ConfigDict(extra="forbid")

    text: Optional[str] = None
    error: Optional[str] = None


def notebook_payload(notebook: NotebookRecord) -> dict:
    return {
        "id": notebook.id,
        "owner_id": notebook.owner_id,
        "title": notebook.title,
        "created_at": notebook.created_at,
    }


def page_payload(page: PageRecord, include_token: bool = True) -> dict:
    payload = {
        "id": page.id,
        "notebook_id": page.notebook_id,
        "page_index": page.page_index,
        "token_revoked": page.token_revoked,
        "images": [{"url": img.url, "captured_at": img.captured_at} for img in page.images],
    }
    if include_token:
        payload["token"] = page.token
    return payload


def job_payload(job: ScanJobRecord) -> dict:
    structured = None
    if job.structured is not None:
        structured = {
            "cleaned_text": job.structured.cleaned_text,
            "tasks": job.structured.tasks,
            "calendar": job.structured.calendar,
            "notes": job.structured.notes,
        }
    return {
        "id": job.id,
        "page_id": job.page_id,
        "state": job.state,
        "image_urls": job.image_urls,
        "raw_text": job.raw_text,
        "structured": structured,
        "error": job.error_message,
        "routing_state": job.routing_state,
        "routing_error": job.routing_error,
        "updated_at": job.updated_at,
    }


def task_payload(task: TaskRecord) -> dict:
    return {
        "id": task.id,
        "list_id": task.list_id,
        "title": task.title,
        "completed": task.completed,
        "source_page_id": task.source_page_id,
        "source_job_id": task.source_job_id,
    }


def event_payload(event: CalendarEventRecord) -> dict:
    return {
        "id": event.id,
        "calendar_id": event.calendar_id,
        "title": event.title,
        "description": event.description,
        "is_draft": event.is_draft,
        "start": event.start,
        "end": event.end,
        "source_page_id": event.source_page_id,
        "source_job_id": event.source_job_id,
    }


def transcript_payload(transcript: PageTranscriptRecord) -> dict:
    return {
        "page_id": transcript.page_id,
        "job_id": transcript.job_id,
        "text": transcript.text,
        "notes": transcript.notes,
        "updated_at": transcript.updated_at,
    }
