from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from redis import Redis
from rq import Queue, Worker

from .jobs import ScanJobService
from .models import ScanJobRecord
from .recognition import DoclingRecognitionEngine, OpenAIVisionRecognitionEngine, RecognitionEngine
from .repository import SqlAlchemyScanRepository
from .worker import CallbackSink, HttpCallbackSink, RecognitionWorker, ServiceCallbackSink

logger = logging.getLogger(__name__)


@dataclass
class WorkerConfig:
    database_url: str
    engine: str = "openai"
    api_key: str = ""
    model: str = "openai/gpt-4o-mini"
    base_url: Optional[str] = "https://openrouter.ai/api/v1"
    image_detail: str = "low"
    # When set, outcomes are POSTed to the API instead of written to the database.
    callback_base_url: Optional[str] = None
    perform_ocr: bool = True
    engine_version: str = "docling-latest"


def build_engine(config: WorkerConfig) -> RecognitionEngine:
    if config.engine == "openai":
        return OpenAIVisionRecognitionEngine(
            api_key=config.api_key,
            model=config.model,
            base_url=config.base_url,
            image_detail=config.image_detail,
        )
    if config.engine == "docling":
        return DoclingRecognitionEngine(perform_ocr=config.perform_ocr, engine_version=config.engine_version)
    raise ValueError(f"Unknown recognition engine: {config.engine}")


def build_sink(config: WorkerConfig) -> CallbackSink:
    if config.callback_base_url:
        return HttpCallbackSink(config.callback_base_url)
    repo = SqlAlchemyScanRepository(config.database_url)
    return ServiceCallbackSink(ScanJobService(repo))


def run_recognition_job(job_id: str, image_urls: List[str], config: WorkerConfig) -> bool:
    """
    RQ task entrypoint. Creates all required components and runs one
    recognition attempt for a scan job.
    """
    worker = RecognitionWorker(engine=build_engine(config), sink=build_sink(config))
    return worker.run(job_id, image_urls)


class RecognitionQueue:
    def enqueue_recognition(self, job: ScanJobRecord, config: WorkerConfig):
        raise NotImplementedError


class NoopRecognitionQueue(RecognitionQueue):
    """
    Used when no Redis is configured: jobs stay pending until an external
    worker picks them up or the reaper times them out.
    """

    def enqueue_recognition(self, job: ScanJobRecord, config: WorkerConfig):
        logger.info("No recognition queue configured; scan job %s left pending", job.id)
        return None


class RQRecognitionQueue(RecognitionQueue):
    """
    Redis-backed recognition queue using RQ. Workers are started by calling
    `work()` in a dedicated process.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379/0", queue_name: str = "page-scans"):
        self.redis = Redis.from_url(redis_url)
        self.queue = Queue(queue_name, connection=self.redis)

    def enqueue_recognition(self, job: ScanJobRecord, config: WorkerConfig):
        """
        Enqueue recognition for a scan job. The RQ job id is the scan job id,
        so a job is never queued twice.
        """
        return self.queue.enqueue(run_recognition_job, job.id, list(job.image_urls), config, job_id=job.id, retry=None)

    def work(self):
        worker = Worker([self.queue], connection=self.redis)
        worker.work(with_scheduler=True)
