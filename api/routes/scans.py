from __future__ import annotations

from fastapi import APIRouter

from notebook_scanner.scanning import ImageRef

from api.dependencies import get_queue, get_registry, get_scan_service, get_worker_config
from api.schemas import SubmitScanRequest, WorkerCallbackRequest, job_payload

router = APIRouter(prefix="/page-scans", tags=["page-scans"])


@router.post("")
def submit_scan(body: SubmitScanRequest):
    job = get_scan_service().submit(body.page_id, body.image_urls)
    registry = get_registry()
    for url in job.image_urls:
        registry.append_image(body.page_id, ImageRef(url=url))
    get_queue().enqueue_recognition(job, get_worker_config())
    return {"job": job_payload(job)}


@router.get("/{page_id}")
def get_page_scan(page_id: str):
    job = get_scan_service().current_job(page_id)
    return {"job": job_payload(job) if job else None}


@router.get("/jobs/{job_id}")
def get_scan_job(job_id: str):
    return {"job": job_payload(get_scan_service().get_job(job_id))}


@router.post("/jobs/{job_id}/processing")
def acknowledge_scan_job(job_id: str):
    return {"job": job_payload(get_scan_service().mark_processing(job_id))}


@router.post("/jobs/{job_id}/callback")
def scan_job_callback(job_id: str, body: WorkerCallbackRequest):
    if (body.text is None) == (body.error is None):
        raise ValueError("Provide exactly one of 'text' or 'error'")
    service = get_scan_service()
    if body.text is not None:
        job = service.complete(job_id, body.text)
    else:
        job = service.fail(job_id, body.error)
    return {"job": job_payload(job)}


@router.post("/jobs/{job_id}/route")
def reroute_scan_job(job_id: str):
    return {"job": job_payload(get_scan_service().reroute(job_id))}
