from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from sqlalchemy.engine import make_url

from notebook_scanner.scanning import (
    LocalImageStorage,
    NoopRecognitionQueue,
    NotebookRecord,
    NotFound,
    PageNotFound,
    PageRegistry,
    RecognitionQueue,
    RQRecognitionQueue,
    ScanJobService,
    ScanRepository,
    SqlAlchemyScanRepository,
    StoragePaths,
    WorkerConfig,
)


def database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite+pysqlite:///./data/notebook_scanner.db")


def image_storage_root() -> Path:
    return Path(os.getenv("IMAGE_STORAGE_ROOT", "./data/images"))


@lru_cache(maxsize=1)
def get_repo() -> ScanRepository:
    url = database_url()
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    return SqlAlchemyScanRepository(url)


@lru_cache(maxsize=1)
def get_registry() -> PageRegistry:
    return PageRegistry(get_repo())


@lru_cache(maxsize=1)
def get_scan_service() -> ScanJobService:
    return ScanJobService(get_repo())


@lru_cache(maxsize=1)
def get_storage() -> LocalImageStorage:
    base_url = os.getenv("PUBLIC_IMAGE_BASE_URL", "http://localhost:8000/images")
    return LocalImageStorage(StoragePaths(image_storage_root()), base_url)


@lru_cache(maxsize=1)
def get_queue() -> RecognitionQueue:
    redis_url = os.getenv("REDIS_URL")
    if not redis_url:
        return NoopRecognitionQueue()
    return RQRecognitionQueue(redis_url, queue_name=os.getenv("RECOGNITION_QUEUE", "page-scans"))


@lru_cache(maxsize=1)
def get_worker_config() -> WorkerConfig:
    return WorkerConfig(
        database_url=database_url(),
        engine=os.getenv("RECOGNITION_ENGINE", "openai"),
        api_key=os.getenv("OPENROUTER_API_KEY") or os.getenv("OPENAI_API_KEY", ""),
        model=os.getenv("RECOGNITION_MODEL", "openai/gpt-4o-mini"),
        base_url=os.getenv("RECOGNITION_BASE_URL", "https://openrouter.ai/api/v1"),
        callback_base_url=os.getenv("CALLBACK_BASE_URL") or None,
    )


def reset_caches() -> None:
    for factory in (get_repo, get_registry, get_scan_service, get_storage, get_queue, get_worker_config):
        factory.cache_clear()


def require_owned_notebook(notebook_id: str, owner_id: str) -> NotebookRecord:
    """Missing and foreign notebooks look the same to the caller."""
    notebook = get_repo().get_notebook(notebook_id)
    if not notebook or notebook.owner_id != owner_id:
        raise NotFound(f"Notebook not found: {notebook_id}")
    return notebook


def require_owned_page(page_id: str, owner_id: str):
    page = get_registry().get_page(page_id)
    notebook = get_repo().get_notebook(page.notebook_id)
    if not notebook or notebook.owner_id != owner_id:
        raise PageNotFound("page not found")
    return page
