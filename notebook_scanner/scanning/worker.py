from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence

import httpx

from .errors import InvalidTransition, JobNotFound, RecognitionFailure, ScanError
from .jobs import ScanJobService
from .recognition import RecognitionEngine

logger = logging.getLogger(__name__)


class CallbackSink(Protocol):
    def acknowledge(self, job_id: str) -> None:
        ...

    def succeed(self, job_id: str, raw_text: str) -> None:
        ...

    def fail(self, job_id: str, error_detail: str) -> None:
        ...


class ServiceCallbackSink:
    """
    Reports outcomes straight into a ``ScanJobService``. Used when the worker
    shares the database with the API.
    """

    def __init__(self, service: ScanJobService):
        self.service = service

    def acknowledge(self, job_id: str) -> None:
        self.service.mark_processing(job_id)

    def succeed(self, job_id: str, raw_text: str) -> None:
        self.service.complete(job_id, raw_text)

    def fail(self, job_id: str, error_detail: str) -> None:
        self.service.fail(job_id, error_detail)


class HttpCallbackSink:
    """
    Reports outcomes to the API's worker callback endpoints. HTTP 404 and 409
    answers come back as the matching typed errors.
    """

    def __init__(self, base_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.Client(timeout=timeout)

    def acknowledge(self, job_id: str) -> None:
        self._post(f"/page-scans/jobs/{job_id}/processing", None)

    def succeed(self, job_id: str, raw_text: str) -> None:
        self._post(f"/page-scans/jobs/{job_id}/callback", {"text": raw_text})

    def fail(self, job_id: str, error_detail: str) -> None:
        self._post(f"/page-scans/jobs/{job_id}/callback", {"error": error_detail})

    def _post(self, path: str, payload: Optional[dict]) -> None:
        response = self.client.post(f"{self.base_url}{path}", json=payload)
        if response.status_code == 404:
            raise JobNotFound(response.text)
        if response.status_code == 409:
            raise InvalidTransition(response.text)
        response.raise_for_status()


class RecognitionWorker:
    """
    Runs one recognition attempt: acknowledge -> recognize -> report.
    The worker holds no job state; a superseded or already resolved job is
    skipped instead of recognized.
    """

    def __init__(self, engine: RecognitionEngine, sink: CallbackSink):
        self.engine = engine
        self.sink = sink

    def run(self, job_id: str, image_urls: Sequence[str]) -> bool:
        try:
            self.sink.acknowledge(job_id)
        except InvalidTransition:
            logger.info("Scan job %s already resolved, skipping recognition", job_id)
            return False

        try:
            raw_text = self.engine.recognize(image_urls)
        except RecognitionFailure as exc:
            self._report_failure(job_id, exc.message)
            return False
        except Exception as exc:  # noqa: BLE001
            self._report_failure(job_id, str(exc) or exc.__class__.__name__)
            raise

        try:
            self.sink.succeed(job_id, raw_text)
        except InvalidTransition:
            logger.info("Scan job %s was resolved while recognizing; result dropped", job_id)
            return False
        return True

    def _report_failure(self, job_id: str, detail: str) -> None:
        try:
            self.sink.fail(job_id, detail)
        except ScanError as exc:
            logger.warning("Could not record failure for scan job %s: %s", job_id, exc.message)
