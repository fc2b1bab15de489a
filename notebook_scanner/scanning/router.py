from __future__ import annotations

import logging
from datetime import datetime
from typing import List

from .errors import OwnerResolutionError
from .models import (
    CalendarEventRecord,
    CalendarRecord,
    PageTranscriptRecord,
    RoutingResult,
    StructuredOutput,
    TaskListRecord,
    TaskRecord,
)
from .repository import ScanRepository

logger = logging.getLogger(__name__)

DEFAULT_TASK_LIST_NAME = "Inbox"
DEFAULT_CALENDAR_NAME = "Notebook"


class ContentRouter:
    """
    Persists a scan's structured output as the notebook owner's tasks, draft
    calendar events and page transcript.

    Record ids are derived from the job id and the item position, so routing
    the same job again inserts nothing new and leaves edits to existing
    records alone.
    """

    def __init__(self, repository: ScanRepository):
        self.repo = repository

    def route(
        self,
        owner_id: str,
        notebook_id: str,
        page_id: str,
        job_id: str,
        structured: StructuredOutput,
        include_transcript: bool = True,
    ) -> RoutingResult:
        """
        Store ``structured`` for the owner. With ``include_transcript`` off the
        page transcript is left as it is, which keeps a newer scan's text in place
        when an older job is routed again.
        """
        self._resolve_owner(owner_id, notebook_id)

        task_list = self.repo.ensure_task_list(
            TaskListRecord(id=f"{owner_id}-tasks-default", owner_id=owner_id, name=DEFAULT_TASK_LIST_NAME)
        )
        tasks = self._map_tasks(owner_id, task_list.id, page_id, job_id, structured.tasks)
        inserted_tasks = self.repo.ensure_tasks(tasks)

        calendar = self.repo.ensure_calendar(
            CalendarRecord(id=f"{owner_id}-calendar-default", owner_id=owner_id, name=DEFAULT_CALENDAR_NAME)
        )
        events = self._map_events(owner_id, calendar.id, page_id, job_id, structured.calendar)
        inserted_events = self.repo.ensure_calendar_events(events)

        if include_transcript:
            self.repo.upsert_transcript(
                PageTranscriptRecord(
                    page_id=page_id,
                    notebook_id=notebook_id,
                    owner_id=owner_id,
                    job_id=job_id,
                    text=structured.cleaned_text,
                    notes=list(structured.notes),
                    updated_at=datetime.utcnow(),
                )
            )
        else:
            logger.info("Job %s is not the latest scan of page %s; transcript left unchanged", job_id, page_id)
        logger.info(
            "Routed job %s: %s/%s tasks, %s/%s events new",
            job_id,
            inserted_tasks,
            len(tasks),
            inserted_events,
            len(events),
        )
        return RoutingResult(
            job_id=job_id,
            page_id=page_id,
            task_ids=[t.id for t in tasks],
            event_ids=[e.id for e in events],
            transcript_page_id=page_id if include_transcript else None,
        )

    def _resolve_owner(self, owner_id: str, notebook_id: str) -> None:
        if not owner_id:
            raise OwnerResolutionError("No owner given for routed content")
        notebook = self.repo.get_notebook(notebook_id)
        if not notebook:
            raise OwnerResolutionError(f"Notebook not found: {notebook_id}")
        if notebook.owner_id != owner_id:
            raise OwnerResolutionError(f"Notebook {notebook_id} is not owned by {owner_id}")

    def _map_tasks(
        self,
        owner_id: str,
        list_id: str,
        page_id: str,
        job_id: str,
        items: List[str],
    ) -> List[TaskRecord]:
        return [
            TaskRecord(
                id=f"{job_id}-task-{position}",
                owner_id=owner_id,
                list_id=list_id,
                title=item,
                position=position,
                source_job_id=job_id,
                source_page_id=page_id,
            )
            for position, item in enumerate(items)
        ]

    def _map_events(
        self,
        owner_id: str,
        calendar_id: str,
        page_id: str,
        job_id: str,
        items: List[str],
    ) -> List[CalendarEventRecord]:
        return [
            CalendarEventRecord(
                id=f"{job_id}-cal-{position}",
                owner_id=owner_id,
                calendar_id=calendar_id,
                title=item,
                description=item,
                position=position,
                source_job_id=job_id,
                source_page_id=page_id,
            )
            for position, item in enumerate(items)
        ]
