"""FastAPI application for the campus arrival portal.

The app exposes the student checklist and token lookup, the volunteer
verification queue, and admin settings.  It reads configuration from
environment variables (see ``config``) and stores everything in a
relational database through SQLModel.  Redis is optional and used for
queue snapshots, change notifications and login rate limiting.

Requests authenticate the passcode way: POST bodies carry ``username`` and
``password``; GET endpoints take them as query parameters.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import redis
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

import config
from database import create_db_engine, init_db
from errors import QueueError, StudentNotFound
from models import Volunteer, VolunteerRole
from schemas import (
    AvailabilityRequest,
    CompleteRequest,
    Credentials,
    IssueTokenRequest,
    SettingsUpdateRequest,
    StepUpdateRequest,
    StudentLoginRequest,
)
from services import (
    UPDATES_CHANNEL,
    authenticate_volunteer,
    broadcast_queue,
    check_rate_limit,
    ensure_admin,
    get_cached_queue,
    get_redis,
    queue_snapshot,
    search_students,
    student_summary,
    token_summary,
    update_student_step,
    volunteer_summary,
)
from store import QueueStore
from token_queue import TokenQueueManager

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Campus Arrival Portal")

_store: Optional[QueueStore] = None


def get_store() -> QueueStore:
    global _store
    if _store is None:
        _store = QueueStore(create_db_engine())
    return _store


def get_manager(store: QueueStore = Depends(get_store)) -> TokenQueueManager:
    return TokenQueueManager(store)


@app.on_event("startup")
def on_startup() -> None:
    # Initialise the database, the bootstrap admin, and repair cached flags
    store = get_store()
    init_db(store.engine)
    if config.ADMIN_PASS:
        ensure_admin(store, config.ADMIN_USERNAME, config.ADMIN_PASS)
    TokenQueueManager(store).fetch_queue()
    logger.info("Arrival portal started")


@app.exception_handler(QueueError)
async def queue_error_handler(request: Request, exc: QueueError) -> JSONResponse:
    if exc.http_status >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.message, "error": exc.code})


def _require_volunteer(
    store: QueueStore, username: str, password: str, role: Optional[VolunteerRole] = None
) -> Volunteer:
    volunteer = authenticate_volunteer(store, username, password, role=role)
    if volunteer is None:
        raise HTTPException(status_code=401, detail="Invalid username or password")
    return volunteer


def _login(store: QueueStore, creds: Credentials, role: Optional[VolunteerRole] = None) -> Volunteer:
    if not check_rate_limit(creds.username.strip().lower(), "login"):
        raise HTTPException(status_code=429, detail="Too many login attempts. Please wait a few minutes.")
    return _require_volunteer(store, creds.username, creds.password, role=role)


@app.get("/health")
def health() -> Dict[str, Any]:
    return {"status": "ok"}


# ----- student -----

@app.post("/student/login")
def student_login(request: StudentLoginRequest, store: QueueStore = Depends(get_store)) -> Dict[str, Any]:
    student = store.get_student(request.roll_no.strip())
    if student is None:
        raise HTTPException(status_code=401, detail="Invalid IAT Roll Number")
    return {"student": student_summary(student)}


@app.get("/student/{roll_no}/token")
def student_token(roll_no: str, manager: TokenQueueManager = Depends(get_manager)) -> Dict[str, Any]:
    return manager.token_status(roll_no)


# ----- volunteer -----

@app.post("/volunteer/login")
def volunteer_login(request: Credentials, store: QueueStore = Depends(get_store)) -> Dict[str, Any]:
    volunteer = _login(store, request)
    return {"volunteer": volunteer_summary(volunteer)}


@app.get("/volunteer/queue")
def volunteer_queue(
    username: str, password: str, manager: TokenQueueManager = Depends(get_manager)
) -> Dict[str, Any]:
    volunteer = _require_volunteer(manager.store, username, password)
    snapshot = queue_snapshot(manager)
    snapshot["my_token"] = token_summary(manager.current_claim(volunteer.id))
    return snapshot


@app.get("/volunteer/stats")
def volunteer_stats(
    username: str, password: str, manager: TokenQueueManager = Depends(get_manager)
) -> Dict[str, Any]:
    _require_volunteer(manager.store, username, password)
    return manager.dashboard_stats()


@app.post("/volunteer/tokens")
def issue_token(request: IssueTokenRequest, manager: TokenQueueManager = Depends(get_manager)) -> Dict[str, Any]:
    volunteer = _require_volunteer(manager.store, request.username, request.password)
    token = manager.issue_token(request.roll_no.strip(), actor_id=volunteer.id)
    manager.assign_idle_volunteers()
    broadcast_queue(manager)
    return {"token": token_summary(manager.store.get_token(token.id))}


@app.post("/volunteer/availability")
def set_availability(
    request: AvailabilityRequest, manager: TokenQueueManager = Depends(get_manager)
) -> Dict[str, Any]:
    volunteer = _require_volunteer(manager.store, request.username, request.password)
    updated = manager.set_availability(volunteer.id, request.available)
    broadcast_queue(manager)
    return {
        "volunteer": volunteer_summary(updated),
        "my_token": token_summary(manager.current_claim(volunteer.id)),
    }


@app.post("/volunteer/claim")
def claim_next(request: Credentials, manager: TokenQueueManager = Depends(get_manager)) -> Dict[str, Any]:
    volunteer = _require_volunteer(manager.store, request.username, request.password)
    token = manager.auto_assign_next(volunteer.id)
    broadcast_queue(manager)
    return {"my_token": token_summary(token)}


@app.post("/volunteer/complete")
def complete_verification(
    request: CompleteRequest, manager: TokenQueueManager = Depends(get_manager)
) -> Dict[str, Any]:
    volunteer = _require_volunteer(manager.store, request.username, request.password)
    token = manager.complete_verification(request.token_id)
    manager.assign_idle_volunteers()
    broadcast_queue(manager)
    return {
        "token": token_summary(token),
        "my_token": token_summary(manager.current_claim(volunteer.id)),
    }


@app.post("/volunteer/skip")
def skip_token(request: Credentials, manager: TokenQueueManager = Depends(get_manager)) -> Dict[str, Any]:
    volunteer = _require_volunteer(manager.store, request.username, request.password)
    skipped = manager.skip_assigned_token(volunteer.id)
    broadcast_queue(manager)
    return {
        "skipped": token_summary(skipped),
        "my_token": token_summary(manager.current_claim(volunteer.id)),
    }


@app.post("/volunteer/students/step")
def update_step(request: StepUpdateRequest, manager: TokenQueueManager = Depends(get_manager)) -> Dict[str, Any]:
    _require_volunteer(manager.store, request.username, request.password)
    student = update_student_step(manager, request.roll_no.strip(), request.step, request.value)
    manager.assign_idle_volunteers()
    broadcast_queue(manager)
    return {"student": student_summary(student)}


@app.get("/volunteer/students")
def volunteer_students(
    username: str, password: str, q: str = "", store: QueueStore = Depends(get_store)
) -> Dict[str, Any]:
    _require_volunteer(store, username, password)
    tokens = {token.student_roll_no: token for token in store.list_tokens()}
    students = [
        {**student_summary(student), "token": token_summary(tokens.get(student.roll_no))}
        for student in search_students(store, q)
    ]
    return {"students": students, "count": len(students)}


@app.get("/volunteer/students/{roll_no}")
def volunteer_student(
    roll_no: str, username: str, password: str, store: QueueStore = Depends(get_store)
) -> Dict[str, Any]:
    _require_volunteer(store, username, password)
    student = store.get_student(roll_no)
    if student is None:
        raise StudentNotFound(f"No student with roll number {roll_no}")
    return {"student": student_summary(student), "token": token_summary(store.get_token_for_student(roll_no))}


@app.get("/volunteer/events")
async def volunteer_events(username: str, password: str, manager: TokenQueueManager = Depends(get_manager)):
    """Server-Sent Events endpoint for real-time queue updates."""
    await asyncio.to_thread(_require_volunteer, manager.store, username, password)

    async def event_stream():
        redis_client = get_redis()
        if not redis_client:
            # Fallback: just send periodic queue snapshots
            while True:
                try:
                    data = await asyncio.to_thread(queue_snapshot, manager)
                    yield f"data: {json.dumps({'type': 'queue_update', 'data': data})}\n\n"
                except QueueError as e:
                    yield f"data: {json.dumps({'type': 'error', 'message': e.message})}\n\n"
                await asyncio.sleep(config.POLL_INTERVAL_SECONDS)
        else:
            cached = await asyncio.to_thread(get_cached_queue)
            if cached:
                yield f"data: {json.dumps({'type': 'queue_update', 'data': cached})}\n\n"
            pubsub = redis_client.pubsub()
            pubsub.subscribe(UPDATES_CHANNEL)
            try:
                while True:
                    try:
                        message = await asyncio.to_thread(pubsub.get_message, True, 1.0)
                        if message and message["type"] == "message":
                            yield f"data: {message['data']}\n\n"
                        else:
                            yield f"data: {json.dumps({'type': 'heartbeat'})}\n\n"
                        await asyncio.sleep(0.1)
                    except redis.RedisError as e:
                        logger.warning("Update channel read failed: %s", e)
                        yield f"data: {json.dumps({'type': 'error', 'message': str(e)})}\n\n"
                        await asyncio.sleep(1)
            finally:
                pubsub.close()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


# ----- admin -----

@app.post("/admin/login")
def admin_login(request: Credentials, store: QueueStore = Depends(get_store)) -> Dict[str, Any]:
    admin = _login(store, request, role=VolunteerRole.admin)
    return {"admin": volunteer_summary(admin)}


@app.get("/admin/settings")
def admin_settings(username: str, password: str, store: QueueStore = Depends(get_store)) -> Dict[str, Any]:
    _require_volunteer(store, username, password, role=VolunteerRole.admin)
    settings = store.get_settings()
    return {"skip_offset": settings.skip_offset, "portal_name": settings.portal_name}


@app.post("/admin/settings")
def update_settings(request: SettingsUpdateRequest, store: QueueStore = Depends(get_store)) -> Dict[str, Any]:
    _require_volunteer(store, request.username, request.password, role=VolunteerRole.admin)
    fields: Dict[str, Any] = {"skip_offset": request.skip_offset}
    if request.portal_name:
        fields["portal_name"] = request.portal_name
    settings = store.update_settings(**fields)
    logger.info("Skip offset set to %s", settings.skip_offset)
    return {"skip_offset": settings.skip_offset, "portal_name": settings.portal_name}


@app.get("/admin/timeline")
def admin_timeline(
    username: str, password: str, limit: int = 50, store: QueueStore = Depends(get_store)
) -> Dict[str, Any]:
    _require_volunteer(store, username, password, role=VolunteerRole.admin)
    events = store.list_events(limit=limit)
    return {
        "events": [
            {
                "token_id": e.token_id,
                "event_type": e.event_type.value if hasattr(e.event_type, "value") else e.event_type,
                "volunteer_id": e.volunteer_id,
                "at": e.at.isoformat(),
            }
            for e in events
        ]
    }


if __name__ == "__main__":
    import os

    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
