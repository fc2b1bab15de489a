from __future__ import annotations

from typing import List

from fastapi import APIRouter, File, Header, UploadFile

from notebook_scanner.scanning import ImageRef, NotFound
from notebook_scanner.scanning.storage import CONTENT_TYPE_SUFFIXES

from api.dependencies import (
    get_queue,
    get_registry,
    get_repo,
    get_scan_service,
    get_storage,
    get_worker_config,
    require_owned_page,
)
from api.schemas import job_payload, page_payload, transcript_payload

router = APIRouter(prefix="/pages", tags=["pages"])


@router.get("/resolve/{token}")
def resolve_token(token: str):
    identity = get_registry().resolve(token)
    return {
        "page_id": identity.page_id,
        "notebook_id": identity.notebook_id,
        "page_index": identity.page_index,
    }


@router.post("/{page_id}/images")
async def upload_page_images(page_id: str, files: List[UploadFile] = File(...)):
    registry = get_registry()
    registry.get_page(page_id)

    payloads = []
    for upload in files:
        if (upload.content_type or "").lower() not in CONTENT_TYPE_SUFFIXES:
            raise ValueError(f"Unsupported image type: {upload.content_type}")
        data = await upload.read()
        if not data:
            raise ValueError(f"Uploaded file is empty: {upload.filename}")
        payloads.append((data, upload.content_type))
    if not payloads:
        raise ValueError("No images uploaded")

    storage = get_storage()
    urls = []
    for data, content_type in payloads:
        url = storage.save_page_image(page_id, data, content_type)
        registry.append_image(page_id, ImageRef(url=url))
        urls.append(url)

    job = get_scan_service().submit(page_id, urls)
    get_queue().enqueue_recognition(job, get_worker_config())
    return {"job": job_payload(job), "images": urls}


@router.post("/{page_id}/token/rotate")
def rotate_token(page_id: str, x_user_id: str = Header(...)):
    require_owned_page(page_id, x_user_id)
    return page_payload(get_registry().rotate_token(page_id))


@router.post("/{page_id}/token/revoke")
def revoke_token(page_id: str, x_user_id: str = Header(...)):
    require_owned_page(page_id, x_user_id)
    return page_payload(get_registry().revoke_token(page_id), include_token=False)


@router.get("/{page_id}/transcript")
def get_transcript(page_id: str, x_user_id: str = Header(...)):
    require_owned_page(page_id, x_user_id)
    transcript = get_repo().get_transcript(page_id)
    if not transcript:
        raise NotFound(f"No transcript for page {page_id}")
    return transcript_payload(transcript)
