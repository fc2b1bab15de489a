from __future__ import annotations

import uuid

from fastapi import APIRouter, Header

from notebook_scanner.scanning import NotebookRecord

from api.dependencies import get_registry, get_repo, require_owned_notebook
from api.schemas import (
    CreateNotebookRequest,
    RegisterPageRangeRequest,
    RegisterPageRequest,
    notebook_payload,
    page_payload,
)

router = APIRouter(prefix="/notebooks", tags=["notebooks"])


@router.post("")
def create_notebook(body: CreateNotebookRequest, x_user_id: str = Header(...)):
    notebook = NotebookRecord(id=str(uuid.uuid4()), owner_id=x_user_id, title=body.title.strip())
    get_repo().save_notebook(notebook)
    return notebook_payload(notebook)


@router.get("/{notebook_id}/pages")
def list_pages(notebook_id: str, x_user_id: str = Header(...)):
    require_owned_notebook(notebook_id, x_user_id)
    return {"pages": [page_payload(p) for p in get_repo().list_pages(notebook_id)]}


@router.post("/{notebook_id}/pages")
def register_page(notebook_id: str, body: RegisterPageRequest, x_user_id: str = Header(...)):
    require_owned_notebook(notebook_id, x_user_id)
    page = get_registry().register(notebook_id, body.page_index)
    return page_payload(page)


@router.post("/{notebook_id}/pages/batch")
def register_pages(notebook_id: str, body: RegisterPageRangeRequest, x_user_id: str = Header(...)):
    require_owned_notebook(notebook_id, x_user_id)
    pages = get_registry().register_range(notebook_id, body.start, body.end)
    return {"pages": [page_payload(p) for p in pages]}
