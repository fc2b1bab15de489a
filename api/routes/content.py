from __future__ import annotations

from fastapi import APIRouter, Header

from api.dependencies import get_repo
from api.schemas import event_payload, task_payload

router = APIRouter(tags=["content"])


@router.get("/tasks")
def list_tasks(x_user_id: str = Header(...)):
    return {"tasks": [task_payload(t) for t in get_repo().list_tasks(x_user_id)]}


@router.get("/events")
def list_events(x_user_id: str = Header(...)):
    return {"events": [event_payload(e) for e in get_repo().list_calendar_events(x_user_id)]}
