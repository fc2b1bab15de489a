from __future__ import annotations

import json
import logging
import threading
from copy import deepcopy
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    select,
    text,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .errors import Conflict, TokenCollision
from .models import (
    ACTIVE_JOB_STATES,
    CalendarEventRecord,
    CalendarRecord,
    ImageRef,
    NotebookRecord,
    PageRecord,
    PageTranscriptRecord,
    RoutingState,
    ScanJobRecord,
    ScanJobState,
    StructuredOutput,
    TaskListRecord,
    TaskRecord,
)

logger = logging.getLogger(__name__)

Base = declarative_base()

# Enum columns persist member names.
_ACTIVE_STATES_SQL = "state IN ('PENDING', 'PROCESSING')"


class NotebookModel(Base):
    __tablename__ = "notebooks"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    title = Column(String)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class PageModel(Base):
    __tablename__ = "pages"
    __table_args__ = (UniqueConstraint("notebook_id", "page_index", name="uq_pages_notebook_slot"),)
    id = Column(String, primary_key=True)
    notebook_id = Column(String, index=True)
    page_index = Column(Integer)
    token = Column(String, unique=True)
    token_revoked = Column(Boolean, default=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class PageImageModel(Base):
    __tablename__ = "page_images"
    id = Column(Integer, primary_key=True, autoincrement=True)
    page_id = Column(String, index=True)
    url = Column(String)
    captured_at = Column(DateTime)


class RetiredTokenModel(Base):
    __tablename__ = "retired_tokens"
    token = Column(String, primary_key=True)
    page_id = Column(String, index=True)
    retired_at = Column(DateTime)


class ScanJobModel(Base):
    __tablename__ = "scan_jobs"
    __table_args__ = (
        Index(
            "uq_scan_jobs_active_page",
            "page_id",
            unique=True,
            sqlite_where=text(_ACTIVE_STATES_SQL),
            postgresql_where=text(_ACTIVE_STATES_SQL),
        ),
    )
    id = Column(String, primary_key=True)
    page_id = Column(String, index=True)
    state = Column(Enum(ScanJobState))
    image_urls_json = Column(Text)
    raw_text = Column(Text)
    cleaned_text = Column(Text)
    tasks_json = Column(Text)
    calendar_json = Column(Text)
    notes_json = Column(Text)
    error_message = Column(String)
    routing_state = Column(Enum(RoutingState))
    routing_error = Column(String)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class TaskListModel(Base):
    __tablename__ = "task_lists"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    name = Column(String)
    created_at = Column(DateTime)


class TaskModel(Base):
    __tablename__ = "tasks"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    list_id = Column(String, index=True)
    title = Column(String)
    note = Column(Text)
    completed = Column(Boolean, default=False)
    position = Column(Integer)
    source_job_id = Column(String, index=True)
    source_page_id = Column(String)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class CalendarModel(Base):
    __tablename__ = "calendars"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    name = Column(String)
    created_at = Column(DateTime)


class CalendarEventModel(Base):
    __tablename__ = "calendar_events"
    id = Column(String, primary_key=True)
    owner_id = Column(String, index=True)
    calendar_id = Column(String, index=True)
    title = Column(String)
    description = Column(Text)
    position = Column(Integer)
    is_draft = Column(Boolean, default=True)
    start = Column(DateTime)
    end = Column(DateTime)
    source_job_id = Column(String, index=True)
    source_page_id = Column(String)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)


class PageTranscriptModel(Base):
    __tablename__ = "page_transcripts"
    page_id = Column(String, primary_key=True)
    notebook_id = Column(String, index=True)
    owner_id = Column(String, index=True)
    job_id = Column(String)
    text = Column(Text)
    notes_json = Column(Text)
    updated_at = Column(DateTime)


class ScanRepository:
    """
    Persistence boundary for the scanning core. One handle is built at process
    start and passed to every service that needs it. All methods are
    synchronous; the only cross-request invariant (one active job per page) is
    enforced inside ``replace_active_job``.
    """

    # Notebook operations
    def get_notebook(self, notebook_id: str) -> Optional[NotebookRecord]:
        raise NotImplementedError

    def save_notebook(self, notebook: NotebookRecord) -> None:
        raise NotImplementedError

    # Page operations
    def get_page(self, page_id: str) -> Optional[PageRecord]:
        raise NotImplementedError

    def get_page_by_token(self, token: str) -> Optional[PageRecord]:
        raise NotImplementedError

    def get_page_by_slot(self, notebook_id: str, page_index: int) -> Optional[PageRecord]:
        raise NotImplementedError

    def list_pages(self, notebook_id: str) -> List[PageRecord]:
        raise NotImplementedError

    def token_in_use(self, token: str) -> bool:
        """True for tokens held by a page or retired by rotation."""
        raise NotImplementedError

    def insert_page(self, page: PageRecord) -> None:
        """Raise ``Conflict`` for a taken slot, ``TokenCollision`` for a taken token."""
        raise NotImplementedError

    def append_page_image(self, page_id: str, image: ImageRef) -> bool:
        raise NotImplementedError

    def replace_page_token(self, page_id: str, token: str) -> bool:
        raise NotImplementedError

    def revoke_page_token(self, page_id: str) -> bool:
        raise NotImplementedError

    # Scan job operations
    def get_job(self, job_id: str) -> Optional[ScanJobRecord]:
        raise NotImplementedError

    def replace_active_job(self, job: ScanJobRecord, reason: str) -> List[str]:
        """
        Atomically fail every non-terminal job of ``job.page_id`` with ``reason``
        and insert ``job``. Returns the ids of the superseded jobs.
        """
        raise NotImplementedError

    def transition_job(
        self,
        job_id: str,
        from_states: Sequence[ScanJobState],
        to_state: ScanJobState,
        **values: Any,
    ) -> bool:
        """
        Compare-and-set the job state. ``values`` may carry ``raw_text``,
        ``structured``, ``error_message`` and ``routing_state``. Returns False
        when the job is missing or not in one of ``from_states``.
        """
        raise NotImplementedError

    def update_job_routing(self, job_id: str, state: RoutingState, error: Optional[str] = None) -> None:
        raise NotImplementedError

    def latest_job_for_page(self, page_id: str) -> Optional[ScanJobRecord]:
        raise NotImplementedError

    def latest_done_job(self, page_id: str) -> Optional[ScanJobRecord]:
        """The most recently created job of the page that reached ``done``."""
        raise NotImplementedError

    def list_stale_jobs(self, cutoff: datetime) -> List[ScanJobRecord]:
        raise NotImplementedError

    # Routed content
    def ensure_task_list(self, task_list: TaskListRecord) -> TaskListRecord:
        raise NotImplementedError

    def ensure_tasks(self, tasks: Iterable[TaskRecord]) -> int:
        """Insert tasks whose id is new; existing rows keep their edits. Returns inserted count."""
        raise NotImplementedError

    def list_tasks(self, owner_id: str) -> List[TaskRecord]:
        raise NotImplementedError

    def ensure_calendar(self, calendar: CalendarRecord) -> CalendarRecord:
        raise NotImplementedError

    def ensure_calendar_events(self, events: Iterable[CalendarEventRecord]) -> int:
        raise NotImplementedError

    def list_calendar_events(self, owner_id: str) -> List[CalendarEventRecord]:
        raise NotImplementedError

    def upsert_transcript(self, transcript: PageTranscriptRecord) -> None:
        raise NotImplementedError

    def get_transcript(self, page_id: str) -> Optional[PageTranscriptRecord]:
        raise NotImplementedError


def _apply_job_values(job: ScanJobRecord, values: Dict[str, Any]) -> None:
    for key in ("raw_text", "structured", "error_message", "routing_state"):
        if key in values:
            setattr(job, key, values[key])


class InMemoryScanRepository(ScanRepository):
    """
    In-memory store for local runs and tests. It mirrors the DB shape, keeps
    copies of dataclasses to avoid cross-mutation between calls, and
    serializes writes behind a single lock.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self.notebooks: Dict[str, NotebookRecord] = {}
        self.pages: Dict[str, PageRecord] = {}
        self.retired_tokens: Dict[str, str] = {}
        self.jobs: Dict[str, ScanJobRecord] = {}
        self.task_lists: Dict[str, TaskListRecord] = {}
        self.tasks: Dict[str, TaskRecord] = {}
        self.calendars: Dict[str, CalendarRecord] = {}
        self.events: Dict[str, CalendarEventRecord] = {}
        self.transcripts: Dict[str, PageTranscriptRecord] = {}

    def _clone(self, obj):
        return deepcopy(obj)

    def get_notebook(self, notebook_id: str) -> Optional[NotebookRecord]:
        notebook = self.notebooks.get(notebook_id)
        return self._clone(notebook) if notebook else None

    def save_notebook(self, notebook: NotebookRecord) -> None:
        with self._lock:
            self.notebooks[notebook.id] = self._clone(notebook)

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        page = self.pages.get(page_id)
        return self._clone(page) if page else None

    def get_page_by_token(self, token: str) -> Optional[PageRecord]:
        for page in self.pages.values():
            if page.token == token:
                return self._clone(page)
        return None

    def get_page_by_slot(self, notebook_id: str, page_index: int) -> Optional[PageRecord]:
        for page in self.pages.values():
            if page.notebook_id == notebook_id and page.page_index == page_index:
                return self._clone(page)
        return None

    def list_pages(self, notebook_id: str) -> List[PageRecord]:
        pages = [p for p in self.pages.values() if p.notebook_id == notebook_id]
        return [self._clone(p) for p in sorted(pages, key=lambda p: p.page_index)]

    def token_in_use(self, token: str) -> bool:
        if token in self.retired_tokens:
            return True
        return any(p.token == token for p in self.pages.values())

    def insert_page(self, page: PageRecord) -> None:
        with self._lock:
            if self.get_page_by_slot(page.notebook_id, page.page_index):
                raise Conflict(f"Page {page.page_index} already exists in notebook {page.notebook_id}")
            if self.token_in_use(page.token):
                raise TokenCollision("Token already in use")
            self.pages[page.id] = self._clone(page)

    def append_page_image(self, page_id: str, image: ImageRef) -> bool:
        with self._lock:
            page = self.pages.get(page_id)
            if not page:
                return False
            page.images.append(self._clone(image))
            page.updated_at = datetime.utcnow()
            return True

    def replace_page_token(self, page_id: str, token: str) -> bool:
        with self._lock:
            page = self.pages.get(page_id)
            if not page:
                return False
            if self.token_in_use(token):
                raise TokenCollision("Token already in use")
            self.retired_tokens[page.token] = page.id
            page.token = token
            page.token_revoked = False
            page.updated_at = datetime.utcnow()
            return True

    def revoke_page_token(self, page_id: str) -> bool:
        with self._lock:
            page = self.pages.get(page_id)
            if not page:
                return False
            page.token_revoked = True
            page.updated_at = datetime.utcnow()
            return True

    def get_job(self, job_id: str) -> Optional[ScanJobRecord]:
        job = self.jobs.get(job_id)
        return self._clone(job) if job else None

    def replace_active_job(self, job: ScanJobRecord, reason: str) -> List[str]:
        with self._lock:
            superseded: List[str] = []
            now = datetime.utcnow()
            for existing in self.jobs.values():
                if existing.page_id == job.page_id and existing.state in ACTIVE_JOB_STATES:
                    existing.state = ScanJobState.FAILED
                    existing.error_message = reason
                    existing.updated_at = now
                    superseded.append(existing.id)
            self.jobs[job.id] = self._clone(job)
            return superseded

    def transition_job(
        self,
        job_id: str,
        from_states: Sequence[ScanJobState],
        to_state: ScanJobState,
        **values: Any,
    ) -> bool:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job or job.state not in from_states:
                return False
            job.state = to_state
            _apply_job_values(job, self._clone(values))
            job.updated_at = datetime.utcnow()
            return True

    def update_job_routing(self, job_id: str, state: RoutingState, error: Optional[str] = None) -> None:
        with self._lock:
            job = self.jobs.get(job_id)
            if not job:
                return
            job.routing_state = state
            job.routing_error = error

    def latest_job_for_page(self, page_id: str) -> Optional[ScanJobRecord]:
        jobs = [j for j in self.jobs.values() if j.page_id == page_id]
        if not jobs:
            return None
        active = [j for j in jobs if j.state in ACTIVE_JOB_STATES]
        pick = active[0] if active else max(jobs, key=lambda j: j.created_at)
        return self._clone(pick)

    def latest_done_job(self, page_id: str) -> Optional[ScanJobRecord]:
        done = [j for j in self.jobs.values() if j.page_id == page_id and j.state == ScanJobState.DONE]
        return self._clone(max(reversed(done), key=lambda j: j.created_at)) if done else None

    def list_stale_jobs(self, cutoff: datetime) -> List[ScanJobRecord]:
        return [
            self._clone(j)
            for j in self.jobs.values()
            if j.state in ACTIVE_JOB_STATES and j.updated_at < cutoff
        ]

    def ensure_task_list(self, task_list: TaskListRecord) -> TaskListRecord:
        with self._lock:
            existing = self.task_lists.setdefault(task_list.id, self._clone(task_list))
            return self._clone(existing)

    def ensure_tasks(self, tasks: Iterable[TaskRecord]) -> int:
        inserted = 0
        with self._lock:
            for task in tasks:
                if task.id not in self.tasks:
                    self.tasks[task.id] = self._clone(task)
                    inserted += 1
        return inserted

    def list_tasks(self, owner_id: str) -> List[TaskRecord]:
        tasks = [t for t in self.tasks.values() if t.owner_id == owner_id]
        return [self._clone(t) for t in sorted(tasks, key=lambda t: (t.created_at, t.position))]

    def ensure_calendar(self, calendar: CalendarRecord) -> CalendarRecord:
        with self._lock:
            existing = self.calendars.setdefault(calendar.id, self._clone(calendar))
            return self._clone(existing)

    def ensure_calendar_events(self, events: Iterable[CalendarEventRecord]) -> int:
        inserted = 0
        with self._lock:
            for event in events:
                if event.id not in self.events:
                    self.events[event.id] = self._clone(event)
                    inserted += 1
        return inserted

    def list_calendar_events(self, owner_id: str) -> List[CalendarEventRecord]:
        events = [e for e in self.events.values() if e.owner_id == owner_id]
        return [self._clone(e) for e in sorted(events, key=lambda e: (e.created_at, e.position))]

    def upsert_transcript(self, transcript: PageTranscriptRecord) -> None:
        with self._lock:
            self.transcripts[transcript.page_id] = self._clone(transcript)

    def get_transcript(self, page_id: str) -> Optional[PageTranscriptRecord]:
        transcript = self.transcripts.get(page_id)
        return self._clone(transcript) if transcript else None


class SqlAlchemyScanRepository(ScanRepository):
    """
    SQL-backed repository using SQLAlchemy. Works with SQLite/Postgres URLs.
    The one-active-job-per-page rule is a partial unique index, so concurrent
    submissions from separate processes cannot both stay pending.
    """

    def __init__(self, database_url: str, supersede_attempts: int = 5):
        self.engine = create_engine(database_url, future=True)
        Base.metadata.create_all(self.engine)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.supersede_attempts = supersede_attempts

    def _session(self) -> Session:
        return self.SessionLocal()

    # region Notebook operations
    def get_notebook(self, notebook_id: str) -> Optional[NotebookRecord]:
        with self._session() as session:
            model = session.get(NotebookModel, notebook_id)
            if not model:
                return None
            return NotebookRecord(
                id=model.id,
                owner_id=model.owner_id,
                title=model.title,
                created_at=model.created_at,
                updated_at=model.updated_at,
            )

    def save_notebook(self, notebook: NotebookRecord) -> None:
        with self._session() as session:
            session.merge(
                NotebookModel(
                    id=notebook.id,
                    owner_id=notebook.owner_id,
                    title=notebook.title,
                    created_at=notebook.created_at,
                    updated_at=notebook.updated_at,
                )
            )
            session.commit()

    # endregion

    # region Page operations
    def _page_from_model(self, session: Session, model: PageModel) -> PageRecord:
        stmt = select(PageImageModel).where(PageImageModel.page_id == model.id).order_by(PageImageModel.id)
        images = [ImageRef(url=m.url, captured_at=m.captured_at) for m in session.execute(stmt).scalars().all()]
        return PageRecord(
            id=model.id,
            notebook_id=model.notebook_id,
            page_index=int(model.page_index),
            token=model.token,
            token_revoked=bool(model.token_revoked),
            images=images,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def get_page(self, page_id: str) -> Optional[PageRecord]:
        with self._session() as session:
            model = session.get(PageModel, page_id)
            return self._page_from_model(session, model) if model else None

    def get_page_by_token(self, token: str) -> Optional[PageRecord]:
        with self._session() as session:
            model = session.execute(select(PageModel).where(PageModel.token == token)).scalars().first()
            return self._page_from_model(session, model) if model else None

    def get_page_by_slot(self, notebook_id: str, page_index: int) -> Optional[PageRecord]:
        with self._session() as session:
            stmt = select(PageModel).where(PageModel.notebook_id == notebook_id, PageModel.page_index == page_index)
            model = session.execute(stmt).scalars().first()
            return self._page_from_model(session, model) if model else None

    def list_pages(self, notebook_id: str) -> List[PageRecord]:
        with self._session() as session:
            stmt = select(PageModel).where(PageModel.notebook_id == notebook_id).order_by(PageModel.page_index)
            return [self._page_from_model(session, m) for m in session.execute(stmt).scalars().all()]

    def token_in_use(self, token: str) -> bool:
        with self._session() as session:
            if session.get(RetiredTokenModel, token):
                return True
            stmt = select(PageModel.id).where(PageModel.token == token)
            return session.execute(stmt).first() is not None

    def insert_page(self, page: PageRecord) -> None:
        if self.get_page_by_slot(page.notebook_id, page.page_index):
            raise Conflict(f"Page {page.page_index} already exists in notebook {page.notebook_id}")
        if self.token_in_use(page.token):
            raise TokenCollision("Token already in use")
        with self._session() as session:
            session.add(
                PageModel(
                    id=page.id,
                    notebook_id=page.notebook_id,
                    page_index=page.page_index,
                    token=page.token,
                    token_revoked=page.token_revoked,
                    created_at=page.created_at,
                    updated_at=page.updated_at,
                )
            )
            for image in page.images:
                session.add(PageImageModel(page_id=page.id, url=image.url, captured_at=image.captured_at))
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                # Lost a race: decide which unique rule was hit.
                if self.get_page_by_slot(page.notebook_id, page.page_index):
                    raise Conflict(f"Page {page.page_index} already exists in notebook {page.notebook_id}")
                raise TokenCollision("Token already in use")

    def append_page_image(self, page_id: str, image: ImageRef) -> bool:
        with self._session() as session:
            model = session.get(PageModel, page_id)
            if not model:
                return False
            session.add(PageImageModel(page_id=page_id, url=image.url, captured_at=image.captured_at))
            model.updated_at = datetime.utcnow()
            session.commit()
            return True

    def replace_page_token(self, page_id: str, token: str) -> bool:
        if self.token_in_use(token):
            raise TokenCollision("Token already in use")
        with self._session() as session:
            model = session.get(PageModel, page_id)
            if not model:
                return False
            now = datetime.utcnow()
            session.add(RetiredTokenModel(token=model.token, page_id=page_id, retired_at=now))
            model.token = token
            model.token_revoked = False
            model.updated_at = now
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                raise TokenCollision("Token already in use")
            return True

    def revoke_page_token(self, page_id: str) -> bool:
        with self._session() as session:
            stmt = (
                update(PageModel)
                .where(PageModel.id == page_id)
                .values(token_revoked=True, updated_at=datetime.utcnow())
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    # endregion

    # region Job operations
    def _job_from_model(self, model: ScanJobModel) -> ScanJobRecord:
        structured = None
        if model.cleaned_text is not None:
            structured = StructuredOutput(
                cleaned_text=model.cleaned_text,
                tasks=json.loads(model.tasks_json or "[]"),
                calendar=json.loads(model.calendar_json or "[]"),
                notes=json.loads(model.notes_json or "[]"),
            )
        return ScanJobRecord(
            id=model.id,
            page_id=model.page_id,
            state=model.state,
            image_urls=json.loads(model.image_urls_json or "[]"),
            raw_text=model.raw_text,
            structured=structured,
            error_message=model.error_message,
            routing_state=model.routing_state,
            routing_error=model.routing_error,
            created_at=model.created_at,
            updated_at=model.updated_at,
        )

    def _job_columns(self, values: Dict[str, Any]) -> Dict[str, Any]:
        columns: Dict[str, Any] = {}
        if "raw_text" in values:
            columns["raw_text"] = values["raw_text"]
        if "error_message" in values:
            columns["error_message"] = values["error_message"]
        if "routing_state" in values:
            columns["routing_state"] = values["routing_state"]
        if "structured" in values:
            structured: Optional[StructuredOutput] = values["structured"]
            columns["cleaned_text"] = structured.cleaned_text if structured else None
            columns["tasks_json"] = json.dumps(structured.tasks) if structured else None
            columns["calendar_json"] = json.dumps(structured.calendar) if structured else None
            columns["notes_json"] = json.dumps(structured.notes) if structured else None
        return columns

    def get_job(self, job_id: str) -> Optional[ScanJobRecord]:
        with self._session() as session:
            model = session.get(ScanJobModel, job_id)
            return self._job_from_model(model) if model else None

    def replace_active_job(self, job: ScanJobRecord, reason: str) -> List[str]:
        for attempt in range(1, self.supersede_attempts + 1):
            with self._session() as session:
                active_filter = (
                    ScanJobModel.page_id == job.page_id,
                    ScanJobModel.state.in_(list(ACTIVE_JOB_STATES)),
                )
                superseded = list(session.execute(select(ScanJobModel.id).where(*active_filter)).scalars().all())
                if superseded:
                    session.execute(
                        update(ScanJobModel)
                        .where(*active_filter)
                        .values(state=ScanJobState.FAILED, error_message=reason, updated_at=datetime.utcnow())
                    )
                model = ScanJobModel(
                    id=job.id,
                    page_id=job.page_id,
                    state=job.state,
                    image_urls_json=json.dumps(job.image_urls),
                    routing_state=job.routing_state,
                    created_at=job.created_at,
                    updated_at=job.updated_at,
                    **self._job_columns({"raw_text": job.raw_text, "error_message": job.error_message}),
                )
                session.add(model)
                try:
                    session.commit()
                    return superseded
                except IntegrityError:
                    session.rollback()
                    logger.info("Concurrent submission for page %s, retrying supersede (attempt %s)", job.page_id, attempt)
        raise Conflict(f"Could not record a new scan job for page {job.page_id}")

    def transition_job(
        self,
        job_id: str,
        from_states: Sequence[ScanJobState],
        to_state: ScanJobState,
        **values: Any,
    ) -> bool:
        with self._session() as session:
            stmt = (
                update(ScanJobModel)
                .where(ScanJobModel.id == job_id, ScanJobModel.state.in_(list(from_states)))
                .values(state=to_state, updated_at=datetime.utcnow(), **self._job_columns(values))
            )
            result = session.execute(stmt)
            session.commit()
            return result.rowcount == 1

    def update_job_routing(self, job_id: str, state: RoutingState, error: Optional[str] = None) -> None:
        with self._session() as session:
            stmt = update(ScanJobModel).where(ScanJobModel.id == job_id).values(routing_state=state, routing_error=error)
            session.execute(stmt)
            session.commit()

    def latest_job_for_page(self, page_id: str) -> Optional[ScanJobRecord]:
        with self._session() as session:
            stmt = select(ScanJobModel).where(ScanJobModel.page_id == page_id).order_by(ScanJobModel.created_at.desc())
            models = session.execute(stmt).scalars().all()
            if not models:
                return None
            active = [m for m in models if m.state in ACTIVE_JOB_STATES]
            return self._job_from_model(active[0] if active else models[0])

    def latest_done_job(self, page_id: str) -> Optional[ScanJobRecord]:
        with self._session() as session:
            stmt = (
                select(ScanJobModel)
                .where(ScanJobModel.page_id == page_id, ScanJobModel.state == ScanJobState.DONE)
                .order_by(ScanJobModel.created_at.desc())
                .limit(1)
            )
            model = session.execute(stmt).scalars().first()
            return self._job_from_model(model) if model else None

    def list_stale_jobs(self, cutoff: datetime) -> List[ScanJobRecord]:
        with self._session() as session:
            stmt = select(ScanJobModel).where(
                ScanJobModel.state.in_(list(ACTIVE_JOB_STATES)),
                ScanJobModel.updated_at < cutoff,
            )
            return [self._job_from_model(m) for m in session.execute(stmt).scalars().all()]

    # endregion

    # region Routed content
    def _insert_if_missing(self, model: Any, key: str) -> bool:
        """
        Insert ``model`` unless a row with primary key ``key`` exists. A row
        inserted concurrently by another writer counts as existing.
        """
        with self._session() as session:
            if session.get(type(model), key) is not None:
                return False
            session.add(model)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("%s %s inserted concurrently, keeping existing row", type(model).__name__, key)
                return False
            return True

    def ensure_task_list(self, task_list: TaskListRecord) -> TaskListRecord:
        self._insert_if_missing(
            TaskListModel(
                id=task_list.id,
                owner_id=task_list.owner_id,
                name=task_list.name,
                created_at=task_list.created_at,
            ),
            task_list.id,
        )
        with self._session() as session:
            model = session.get(TaskListModel, task_list.id)
            return TaskListRecord(id=model.id, owner_id=model.owner_id, name=model.name, created_at=model.created_at)

    def ensure_tasks(self, tasks: Iterable[TaskRecord]) -> int:
        inserted = 0
        for task in tasks:
            model = TaskModel(
                id=task.id,
                owner_id=task.owner_id,
                list_id=task.list_id,
                title=task.title,
                note=task.note,
                completed=task.completed,
                position=task.position,
                source_job_id=task.source_job_id,
                source_page_id=task.source_page_id,
                created_at=task.created_at,
                updated_at=task.updated_at,
            )
            if self._insert_if_missing(model, task.id):
                inserted += 1
        return inserted

    def list_tasks(self, owner_id: str) -> List[TaskRecord]:
        with self._session() as session:
            stmt = (
                select(TaskModel)
                .where(TaskModel.owner_id == owner_id)
                .order_by(TaskModel.created_at, TaskModel.position)
            )
            return [
                TaskRecord(
                    id=m.id,
                    owner_id=m.owner_id,
                    list_id=m.list_id,
                    title=m.title,
                    position=int(m.position or 0),
                    source_job_id=m.source_job_id,
                    source_page_id=m.source_page_id,
                    note=m.note or "",
                    completed=bool(m.completed),
                    created_at=m.created_at,
                    updated_at=m.updated_at,
                )
                for m in session.execute(stmt).scalars().all()
            ]

    def ensure_calendar(self, calendar: CalendarRecord) -> CalendarRecord:
        self._insert_if_missing(
            CalendarModel(
                id=calendar.id,
                owner_id=calendar.owner_id,
                name=calendar.name,
                created_at=calendar.created_at,
            ),
            calendar.id,
        )
        with self._session() as session:
            model = session.get(CalendarModel, calendar.id)
            return CalendarRecord(id=model.id, owner_id=model.owner_id, name=model.name, created_at=model.created_at)

    def ensure_calendar_events(self, events: Iterable[CalendarEventRecord]) -> int:
        inserted = 0
        for event in events:
            model = CalendarEventModel(
                id=event.id,
                owner_id=event.owner_id,
                calendar_id=event.calendar_id,
                title=event.title,
                description=event.description,
                position=event.position,
                is_draft=event.is_draft,
                start=event.start,
                end=event.end,
                source_job_id=event.source_job_id,
                source_page_id=event.source_page_id,
                created_at=event.created_at,
                updated_at=event.updated_at,
            )
            if self._insert_if_missing(model, event.id):
                inserted += 1
        return inserted

    def list_calendar_events(self, owner_id: str) -> List[CalendarEventRecord]:
        with self._session() as session:
            stmt = (
                select(CalendarEventModel)
                .where(CalendarEventModel.owner_id == owner_id)
                .order_by(CalendarEventModel.created_at, CalendarEventModel.position)
            )
            return [
                CalendarEventRecord(
                    id=m.id,
                    owner_id=m.owner_id,
                    calendar_id=m.calendar_id,
                    title=m.title,
                    description=m.description or "",
                    position=int(m.position or 0),
                    source_job_id=m.source_job_id,
                    source_page_id=m.source_page_id,
                    is_draft=bool(m.is_draft),
                    start=m.start,
                    end=m.end,
                    created_at=m.created_at,
                    updated_at=m.updated_at,
                )
                for m in session.execute(stmt).scalars().all()
            ]

    def upsert_transcript(self, transcript: PageTranscriptRecord) -> None:
        for attempt in (1, 2):
            with self._session() as session:
                session.merge(
                    PageTranscriptModel(
                        page_id=transcript.page_id,
                        notebook_id=transcript.notebook_id,
                        owner_id=transcript.owner_id,
                        job_id=transcript.job_id,
                        text=transcript.text,
                        notes_json=json.dumps(transcript.notes),
                        updated_at=transcript.updated_at,
                    )
                )
                try:
                    session.commit()
                    return
                except IntegrityError:
                    session.rollback()
                    # The row appeared between merge's lookup and its insert; merge again to update it.
                    if attempt == 2:
                        raise

    def get_transcript(self, page_id: str) -> Optional[PageTranscriptRecord]:
        with self._session() as session:
            model = session.get(PageTranscriptModel, page_id)
            if not model:
                return None
            return PageTranscriptRecord(
                page_id=model.page_id,
                notebook_id=model.notebook_id,
                owner_id=model.owner_id,
                job_id=model.job_id,
                text=model.text or "",
                notes=json.loads(model.notes_json or "[]"),
                updated_at=model.updated_at,
            )

    # endregion
