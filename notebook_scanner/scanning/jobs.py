from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from .annotations import parse_annotations
from .errors import InvalidTransition, JobNotFound, OwnerResolutionError, PageNotFound
from .models import (
    ACTIVE_JOB_STATES,
    SUPERSEDED_REASON,
    TIMEOUT_REASON,
    RoutingResult,
    RoutingState,
    ScanJobRecord,
    ScanJobState,
)
from .repository import ScanRepository
from .router import ContentRouter

logger = logging.getLogger(__name__)


class ScanJobService:
    """
    Drives scan jobs through pending -> processing -> done | failed.

    The job record is the only state; every transition is a compare-and-set
    against the repository, so callbacks may arrive from any process, in any
    number, after restarts. Worker callbacks that repeat an outcome the job
    already has are absorbed as no-ops.
    """

    def __init__(self, repository: ScanRepository, router: Optional[ContentRouter] = None):
        self.repo = repository
        self.router = router or ContentRouter(repository)

    def submit(self, page_id: str, image_urls: Sequence[str]) -> ScanJobRecord:
        if not self.repo.get_page(page_id):
            raise PageNotFound("page not found")
        urls = [u for u in image_urls if u]
        if not urls:
            raise ValueError("At least one image is required to submit a scan")

        job = ScanJobRecord(
            id=str(uuid.uuid4()),
            page_id=page_id,
            state=ScanJobState.PENDING,
            image_urls=urls,
        )
        superseded = self.repo.replace_active_job(job, reason=SUPERSEDED_REASON)
        for old_id in superseded:
            logger.info("Scan job %s superseded by %s for page %s", old_id, job.id, page_id)
        logger.info("Submitted scan job %s for page %s with %s image(s)", job.id, page_id, len(urls))
        return self._require_job(job.id)

    def mark_processing(self, job_id: str) -> ScanJobRecord:
        job = self._require_job(job_id)
        if job.state == ScanJobState.PROCESSING:
            return job
        if job.state.is_terminal:
            raise InvalidTransition(f"Job {job_id} is already {job.state.value}")
        if not self.repo.transition_job(job_id, [ScanJobState.PENDING], ScanJobState.PROCESSING):
            return self._require_non_terminal(job_id)
        logger.info("Scan job %s acknowledged by worker", job_id)
        return self._require_job(job_id)

    def complete(self, job_id: str, raw_text: str) -> ScanJobRecord:
        job = self._require_job(job_id)
        if job.state.is_terminal:
            return self._absorb_duplicate_completion(job, raw_text)

        structured = parse_annotations(raw_text)
        moved = self.repo.transition_job(
            job_id,
            ACTIVE_JOB_STATES,
            ScanJobState.DONE,
            raw_text=raw_text,
            structured=structured,
            error_message=None,
            routing_state=RoutingState.PENDING,
        )
        if not moved:
            # Another callback or a supersede resolved the job first.
            return self._absorb_duplicate_completion(self._require_job(job_id), raw_text)

        logger.info(
            "Scan job %s done: %s task(s), %s calendar item(s), %s note(s)",
            job_id,
            len(structured.tasks),
            len(structured.calendar),
            len(structured.notes),
        )
        self._route(self._require_job(job_id))
        return self._require_job(job_id)

    def fail(self, job_id: str, error_detail: str) -> ScanJobRecord:
        job = self._require_job(job_id)
        detail = error_detail or "recognition failed"
        if job.state == ScanJobState.FAILED:
            logger.info("Ignoring failure callback for already failed job %s", job_id)
            return job
        if job.state == ScanJobState.DONE:
            raise InvalidTransition(f"Job {job_id} already completed")

        if not self.repo.transition_job(job_id, ACTIVE_JOB_STATES, ScanJobState.FAILED, error_message=detail):
            job = self._require_job(job_id)
            if job.state == ScanJobState.FAILED:
                return job
            raise InvalidTransition(f"Job {job_id} already completed")
        logger.warning("Scan job %s failed: %s", job_id, detail)
        return self._require_job(job_id)

    def reroute(self, job_id: str) -> ScanJobRecord:
        job = self._require_job(job_id)
        if job.state != ScanJobState.DONE:
            raise InvalidTransition(f"Job {job_id} is {job.state.value}, only done jobs can be routed")
        self._route(job)
        return self._require_job(job_id)

    def get_job(self, job_id: str) -> ScanJobRecord:
        return self._require_job(job_id)

    def current_job(self, page_id: str) -> Optional[ScanJobRecord]:
        if not self.repo.get_page(page_id):
            raise PageNotFound("page not found")
        return self.repo.latest_job_for_page(page_id)

    def reap_stale(self, max_age: timedelta, now: Optional[datetime] = None) -> List[ScanJobRecord]:
        """
        Fail every non-terminal job that has not moved within ``max_age``.
        Jobs that resolve while the sweep runs are left alone.
        """
        cutoff = (now or datetime.utcnow()) - max_age
        reaped: List[ScanJobRecord] = []
        for job in self.repo.list_stale_jobs(cutoff):
            if self.repo.transition_job(job.id, ACTIVE_JOB_STATES, ScanJobState.FAILED, error_message=TIMEOUT_REASON):
                logger.warning("Scan job %s timed out (last update %s)", job.id, job.updated_at)
                reaped.append(self._require_job(job.id))
        return reaped

    def _route(self, job: ScanJobRecord) -> Optional[RoutingResult]:
        page = self.repo.get_page(job.page_id)
        notebook = self.repo.get_notebook(page.notebook_id) if page else None
        try:
            if not page:
                raise OwnerResolutionError(f"Page {job.page_id} no longer exists")
            owner_id = notebook.owner_id if notebook else ""
            # An older scan never replaces the transcript of a newer finished one.
            latest = self.repo.latest_done_job(page.id)
            result = self.router.route(
                owner_id,
                page.notebook_id,
                page.id,
                job.id,
                job.structured,
                include_transcript=latest is None or latest.id == job.id,
            )
        except OwnerResolutionError as exc:
            # Recognition succeeded; only routing is marked failed.
            logger.warning("Routing failed for scan job %s: %s", job.id, exc.message)
            self.repo.update_job_routing(job.id, RoutingState.FAILED, exc.message)
            return None
        except Exception as exc:  # noqa: BLE001
            logger.exception("Storing routed content for scan job %s failed", job.id)
            self.repo.update_job_routing(job.id, RoutingState.FAILED, str(exc) or exc.__class__.__name__)
            return None
        self.repo.update_job_routing(job.id, RoutingState.ROUTED, None)
        return result

    def _absorb_duplicate_completion(self, job: ScanJobRecord, raw_text: str) -> ScanJobRecord:
        if job.state == ScanJobState.DONE and job.raw_text == raw_text:
            logger.info("Ignoring duplicate completion callback for job %s", job.id)
            return job
        raise InvalidTransition(f"Job {job.id} is already {job.state.value}")

    def _require_job(self, job_id: str) -> ScanJobRecord:
        job = self.repo.get_job(job_id)
        if not job:
            raise JobNotFound(f"Scan job not found: {job_id}")
        return job

    def _require_non_terminal(self, job_id: str) -> ScanJobRecord:
        job = self._require_job(job_id)
        if job.state.is_terminal:
            raise InvalidTransition(f"Job {job_id} is already {job.state.value}")
        return job
