"""Portal glue around the token queue.

This module holds the pieces the HTTP layer needs besides the queue
manager itself: credential hashing and login lookups, student step
updates, response shaping, and the optional Redis integration (queue
snapshot cache, pub/sub change notifications and login rate limiting).
Redis is only used when ``REDIS_URL`` is set and every Redis failure
degrades to uncached behaviour.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import redis
from werkzeug.security import check_password_hash, generate_password_hash

import config
from errors import InvalidStep, StudentNotFound
from models import (
    PREREQUISITE_STEPS,
    STUDENT_STEPS,
    TOTAL_STEPS,
    ApprovalToken,
    Student,
    Volunteer,
    VolunteerRole,
    utcnow,
)
from store import QueueStore
from token_queue import TokenQueueManager

logger = logging.getLogger(__name__)

QUEUE_CACHE_KEY = "arrival:queue"
UPDATES_CHANNEL = "arrival:updates"

EDITABLE_STEPS = {"fees_paid", "flagged"} | {field for field, _ in STUDENT_STEPS}

# Redis connection
_redis_client: Optional[redis.Redis] = None


def get_redis() -> Optional[redis.Redis]:
    """Get Redis client if configured and reachable."""
    global _redis_client
    if not config.REDIS_URL:
        return None

    if _redis_client is None:
        try:
            client = redis.from_url(config.REDIS_URL, decode_responses=True)
            client.ping()
            _redis_client = client
        except redis.RedisError as e:
            logger.warning("Redis connection failed: %s", e)
            return None

    return _redis_client


# ===== CREDENTIALS =====

def hash_password(password: str) -> str:
    # Werkzeug 3 defaults to scrypt; pin explicitly for stability.
    return generate_password_hash(password, method="scrypt", salt_length=16)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return check_password_hash(str(password_hash or ""), str(password or ""))
    except ValueError:
        return False


def create_volunteer(
    store: QueueStore,
    username: str,
    password: str,
    role: VolunteerRole = VolunteerRole.volunteer,
    can_verify_lhc: bool = False,
    is_available: bool = False,
) -> Volunteer:
    return store.create_volunteer(
        username=username.strip(),
        password_hash=hash_password(password),
        role=role,
        can_verify_lhc=can_verify_lhc,
        is_available=is_available,
    )


def ensure_admin(store: QueueStore, username: str, password: str) -> Volunteer:
    """Create the bootstrap admin, or reset its password if it exists."""
    existing = store.get_volunteer_by_username(username)
    if existing is None:
        logger.info("Creating admin account %s", username)
        return create_volunteer(store, username, password, role=VolunteerRole.admin)
    return store.update_volunteer(existing.id, password_hash=hash_password(password), role=VolunteerRole.admin)


def authenticate_volunteer(
    store: QueueStore, username: str, password: str, role: Optional[VolunteerRole] = None
) -> Optional[Volunteer]:
    """Find the account for a login.

    An exact username match is tried first, then a case-insensitive one
    where the oldest matching account wins.
    """
    name = (username or "").strip()
    if not name or not password:
        return None

    candidates = []
    exact = store.get_volunteer_by_username(name)
    if exact is not None:
        candidates.append(exact)
    candidates.extend(v for v in store.search_volunteers(name) if exact is None or v.id != exact.id)

    for volunteer in candidates:
        if role is not None and volunteer.role != role:
            continue
        if verify_password(password, volunteer.password_hash):
            return volunteer
    return None


# ===== STUDENTS =====

def update_student_step(manager: TokenQueueManager, roll_no: str, step: str, value: bool) -> Student:
    """Set one checklist flag on a student.

    Verifying LHC documents for a student in the queue goes through the
    queue manager so the volunteer's token is released.
    """
    if step not in EDITABLE_STEPS:
        raise InvalidStep(f"Unknown step {step!r}")
    store = manager.store
    if step == "lhc_docs_status" and value:
        token = store.get_token_for_student(roll_no)
        if token is not None:
            manager.complete_verification(token.id)
            student = store.get_student(roll_no)
            if student is None:
                raise StudentNotFound(f"No student with roll number {roll_no}")
            return student
    return store.update_student(roll_no, **{step: value})


def search_students(store: QueueStore, query: str = "") -> List[Student]:
    """Students newest first, filtered by roll number or name ignoring case."""
    students = store.list_students()
    needle = query.strip().lower()
    if not needle:
        return students
    return [s for s in students if needle in s.roll_no.lower() or needle in s.name.lower()]


def student_summary(student: Student) -> Dict[str, Any]:
    return {
        "roll_no": student.roll_no,
        "name": student.name,
        "fees_paid": student.fees_paid,
        "flagged": student.flagged,
        "token_assigned": student.token_assigned,
        "eligible_for_token": all(getattr(student, step) for step in PREREQUISITE_STEPS),
        "progress": student.progress,
        "total_steps": TOTAL_STEPS,
        "steps": [
            {"step": idx, "field": field, "name": name, "done": bool(getattr(student, field))}
            for idx, (field, name) in enumerate(STUDENT_STEPS, start=1)
        ],
    }


def volunteer_summary(volunteer: Volunteer) -> Dict[str, Any]:
    return {
        "id": volunteer.id,
        "username": volunteer.username,
        "role": volunteer.role.value if isinstance(volunteer.role, VolunteerRole) else volunteer.role,
        "can_verify_lhc": volunteer.can_verify_lhc,
        "is_available": volunteer.is_available,
    }


def token_summary(token: Optional[ApprovalToken]) -> Optional[Dict[str, Any]]:
    if token is None:
        return None
    return {
        "token_id": token.id,
        "token_number": token.token_number,
        "roll_no": token.student_roll_no,
        "volunteer_id": token.volunteer_id,
        "is_processing": token.is_processing,
    }


# ===== QUEUE SNAPSHOTS =====

def queue_snapshot(manager: TokenQueueManager) -> Dict[str, Any]:
    return {
        "queue": [entry.to_dict() for entry in manager.fetch_queue()],
        "stats": manager.dashboard_stats(),
    }


def broadcast_queue(manager: TokenQueueManager) -> None:
    """Cache the current queue and notify subscribers.  No-op without Redis."""
    if get_redis() is None:
        return
    snapshot = queue_snapshot(manager)
    cache_queue_snapshot(snapshot)
    publish_queue_update(snapshot)


# ===== REDIS HELPER FUNCTIONS =====

def cache_queue_snapshot(snapshot: Dict[str, Any]) -> None:
    """Cache queue data in Redis with 30 second TTL."""
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.setex(QUEUE_CACHE_KEY, 30, json.dumps(snapshot))
        except redis.RedisError as e:
            logger.warning("Redis cache error: %s", e)


def get_cached_queue() -> Optional[Dict[str, Any]]:
    redis_client = get_redis()
    if redis_client:
        try:
            cached = redis_client.get(QUEUE_CACHE_KEY)
            if cached:
                return json.loads(cached)
        except redis.RedisError as e:
            logger.warning("Redis get error: %s", e)
    return None


def publish_queue_update(snapshot: Dict[str, Any]) -> None:
    """Publish queue update to Redis channel for real-time updates."""
    redis_client = get_redis()
    if redis_client:
        try:
            redis_client.publish(UPDATES_CHANNEL, json.dumps({
                "type": "queue_update",
                "data": snapshot,
                "timestamp": utcnow().isoformat(),
            }))
        except redis.RedisError as e:
            logger.warning("Redis publish error: %s", e)


def check_rate_limit(key: str, action: str = "login", limit: int = 10, window: int = 300) -> bool:
    """Returns True if allowed, False if rate limited."""
    redis_client = get_redis()
    if not redis_client:
        return True

    try:
        rate_key = f"rate_limit:{action}:{key}"
        current = redis_client.get(rate_key)

        if current is None:
            redis_client.setex(rate_key, window, 1)
            return True
        elif int(current) < limit:
            redis_client.incr(rate_key)
            return True
        else:
            return False
    except redis.RedisError as e:
        logger.warning("Redis rate limit error: %s", e)
        return True
