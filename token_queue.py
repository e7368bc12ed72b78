"""Approval token queue for LHC document verification.

Students who have finished the fee, hostel/mess and insurance steps are
given a sequential token.  Volunteers who can verify LHC documents claim
the lowest unclaimed token while they are available, release it when the
verification is done, and can push a stuck token a few places back with
a skip.

The student row decides whether a token is still in the queue
(``lhc_docs_status`` false); the token row decides the order and who holds
it.  Completed tokens are kept as history.

The store commits each write on its own, so multi-step operations are
ordered to leave a readable state after every write.  In particular a skip
parks the moving token on a scratch number first, which means token
numbers never collide part way through.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import config
from errors import (
    AlreadyAssigned,
    NoAssignedToken,
    PersistenceUnavailable,
    PrerequisiteNotMet,
    QueueError,
    SkipFailed,
    StudentNotFound,
    TokenConflict,
    TokenNotFound,
    VolunteerNotFound,
)
from models import PREREQUISITE_STEPS, STUDENT_STEPS, ApprovalToken, Student, TokenEventType, Volunteer
from store import QueueStore

logger = logging.getLogger(__name__)

# Added to the highest token number to park a token during a skip.
SCRATCH_OFFSET = 1000


@dataclass
class QueueEntry:
    token: ApprovalToken
    student: Student
    position: int

    @property
    def claimable(self) -> bool:
        return self.token.volunteer_id is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": self.token.id,
            "token_number": self.token.token_number,
            "position": self.position,
            "roll_no": self.student.roll_no,
            "student_name": self.student.name,
            "volunteer_id": self.token.volunteer_id,
            "is_processing": self.token.is_processing,
            "claimable": self.claimable,
        }


def build_queue(students: Iterable[Student], tokens: Iterable[ApprovalToken]) -> List[QueueEntry]:
    """Order tokens of students still awaiting verification by token number."""
    by_roll = {student.roll_no: student for student in students}
    entries: List[QueueEntry] = []
    for token in sorted(tokens, key=lambda t: t.token_number):
        student = by_roll.get(token.student_roll_no)
        if student is None or student.lhc_docs_status:
            continue
        entries.append(QueueEntry(token=token, student=student, position=len(entries) + 1))
    return entries


class TokenQueueManager:
    def __init__(self, store: QueueStore, default_skip_offset: int = config.DEFAULT_SKIP_OFFSET) -> None:
        self.store = store
        self.default_skip_offset = default_skip_offset

    # ----- reads -----

    def active_queue(self) -> List[QueueEntry]:
        return build_queue(self.store.list_students(), self.store.list_tokens())

    def fetch_queue(self) -> List[QueueEntry]:
        """Return the active queue, repairing cached ``token_assigned`` flags first."""
        students = self.store.list_students()
        tokens = self.store.list_tokens()
        self.consistency_sweep(students, tokens)
        return build_queue(students, tokens)

    def consistency_sweep(
        self,
        students: Optional[List[Student]] = None,
        tokens: Optional[List[ApprovalToken]] = None,
    ) -> int:
        """Recompute ``token_assigned`` from the token rows.  Returns the number of repairs."""
        if students is None:
            students = self.store.list_students()
        if tokens is None:
            tokens = self.store.list_tokens()
        holders = {token.student_roll_no for token in tokens}
        repaired = 0
        for student in students:
            has_token = student.roll_no in holders
            if student.token_assigned != has_token:
                logger.warning(
                    "Student %s has token_assigned=%s but %s a token row; fixing",
                    student.roll_no,
                    student.token_assigned,
                    "has" if has_token else "has no",
                )
                self.store.update_student(student.roll_no, token_assigned=has_token)
                student.token_assigned = has_token
                repaired += 1
        return repaired

    def current_claim(self, volunteer_id: int) -> Optional[ApprovalToken]:
        """The unfinished token this volunteer holds, if any."""
        for token in self.store.list_tokens(volunteer_id=volunteer_id):
            student = self.store.get_student(token.student_roll_no)
            if student is not None and not student.lhc_docs_status:
                return token
        return None

    def skip_offset(self) -> int:
        settings = self.store.get_settings()
        return settings.skip_offset or self.default_skip_offset

    def token_status(self, roll_no: str) -> Dict[str, Any]:
        student = self.store.get_student(roll_no)
        if student is None:
            raise StudentNotFound(f"No student with roll number {roll_no}")
        token = self.store.get_token_for_student(roll_no)
        status: Dict[str, Any] = {
            "roll_no": roll_no,
            "token_number": None,
            "position": None,
            "ahead": 0,
            "is_processing": False,
            "verified": student.lhc_docs_status,
        }
        if token is None:
            return status
        position = next((e.position for e in self.active_queue() if e.token.id == token.id), None)
        status.update(
            token_number=token.token_number,
            position=position,
            ahead=position - 1 if position else 0,
            is_processing=token.is_processing,
        )
        return status

    def dashboard_stats(self) -> Dict[str, Any]:
        students = self.store.list_students()
        queue = build_queue(students, self.store.list_tokens())
        total = len(students)
        completed = sum(1 for s in students if s.final_approval_status)
        completion_rate = (completed / total * 100) if total > 0 else 0
        depth = sum(1 for entry in queue if entry.claimable)
        return {
            "total_students": total,
            "in_progress": total - completed,
            "completed": completed,
            "completion_rate": round(completion_rate, 1),
            "queue_depth": depth,
            "processing": len(queue) - depth,
            "step_stats": [
                {"step": idx, "name": name, "count": sum(1 for s in students if getattr(s, field))}
                for idx, (field, name) in enumerate(STUDENT_STEPS, start=1)
            ],
        }

    # ----- mutations -----

    def issue_token(self, roll_no: str, actor_id: Optional[int] = None) -> ApprovalToken:
        """Give the student the next token number.

        When ``actor_id`` is an available verifier with nothing in hand, the
        new token is created already claimed by them.
        """
        student = self.store.get_student(roll_no)
        if student is None:
            raise StudentNotFound(f"No student with roll number {roll_no}")
        missing = [step for step in PREREQUISITE_STEPS if not getattr(student, step)]
        if missing:
            raise PrerequisiteNotMet(f"{roll_no} has not completed: {', '.join(missing)}")

        existing = self.store.get_token_for_student(roll_no)
        if existing is not None:
            if not student.token_assigned:
                self.store.update_student(roll_no, token_assigned=True)
            raise AlreadyAssigned(f"{roll_no} already holds token #{existing.token_number}")

        claimer = self._claiming_actor(actor_id)
        number = self.store.max_token_number() + 1
        try:
            token = self.store.create_token(number, roll_no)
        except TokenConflict:
            if self.store.get_token_for_student(roll_no) is not None:
                raise AlreadyAssigned(f"{roll_no} already holds a token")
            raise
        # A failure here is repaired by the next consistency sweep
        self.store.update_student(roll_no, token_assigned=True)

        logger.info("Issued token #%s to %s", token.token_number, roll_no)
        self._record(token, TokenEventType.issued, actor_id)
        if claimer is not None and self.store.claim_token(token.id, claimer):
            self._record(token, TokenEventType.claimed, claimer)
            token = self.store.get_token(token.id) or token
        return token

    def auto_assign_next(self, volunteer_id: int) -> Optional[ApprovalToken]:
        """Hand the volunteer the lowest unclaimed token.

        Returns the token the volunteer holds afterwards.  Safe to call on
        every queue change: a volunteer who already holds a token keeps it.
        """
        volunteer = self.store.get_volunteer(volunteer_id)
        if volunteer is None:
            raise VolunteerNotFound(f"No volunteer with id {volunteer_id}")
        if not self._can_claim(volunteer):
            return None
        held = self.current_claim(volunteer_id)
        if held is not None:
            return held

        for entry in self.active_queue():
            if not entry.claimable:
                continue
            if self.store.claim_token(entry.token.id, volunteer_id):
                logger.info("Volunteer %s claimed token #%s", volunteer_id, entry.token.token_number)
                self._record(entry.token, TokenEventType.claimed, volunteer_id)
                return self._keep_single_claim(volunteer_id)
            held = self.current_claim(volunteer_id)
            if held is not None:
                # A concurrent call handed this volunteer a token first
                return held
            logger.info("Token #%s was claimed concurrently, trying the next one", entry.token.token_number)
        return None

    def _keep_single_claim(self, volunteer_id: int) -> Optional[ApprovalToken]:
        """Keep the lowest-numbered claim and give any others back to the queue."""
        claims = self.store.list_tokens(volunteer_id=volunteer_id)
        for extra in claims[1:]:
            if self.store.release_claim(extra.id, volunteer_id):
                logger.warning("Volunteer %s held token #%s twice over, released it", volunteer_id, extra.token_number)
                self._record(extra, TokenEventType.released, volunteer_id)
        return self.store.get_token(claims[0].id) if claims else None

    def assign_idle_volunteers(self) -> List[ApprovalToken]:
        """Run auto-assignment for every available verifier without a token."""
        assigned: List[ApprovalToken] = []
        for volunteer in self.store.list_volunteers(can_verify_lhc=True, is_available=True):
            if self.current_claim(volunteer.id) is not None:
                continue
            token = self.auto_assign_next(volunteer.id)
            if token is None:
                break
            assigned.append(token)
        return assigned

    def complete_verification(self, token_id: int) -> ApprovalToken:
        """Mark the student's LHC documents verified and release the token."""
        token = self.store.get_token(token_id)
        if token is None:
            raise TokenNotFound(f"No approval token with id {token_id}")
        releasing = token.volunteer_id

        self.store.update_student(token.student_roll_no, lhc_docs_status=True)
        self.store.update_token(token_id, volunteer_id=None, is_processing=False)
        released = self.store.get_token(token_id)
        if released is None or released.volunteer_id is not None:
            raise PersistenceUnavailable(f"Release of token #{token.token_number} was not stored")

        logger.info("Token #%s verified for %s", token.token_number, token.student_roll_no)
        self._record(released, TokenEventType.completed, releasing)
        if releasing is not None and self.store.get_volunteer(releasing) is not None:
            self.auto_assign_next(releasing)
        return released

    def set_availability(self, volunteer_id: int, available: bool) -> Volunteer:
        volunteer = self.store.update_volunteer(volunteer_id, is_available=available)
        logger.info("Volunteer %s is now %s", volunteer_id, "available" if available else "unavailable")
        if available:
            self.auto_assign_next(volunteer_id)
        return volunteer

    def skip_assigned_token(self, volunteer_id: int, offset: Optional[int] = None) -> ApprovalToken:
        """Move the volunteer's token ``offset`` places back in the active queue.

        The tokens it passes each move one slot forward, the skipped token
        takes the slot of the last one passed, and the volunteer is handed
        the new front of the queue.
        """
        if offset is None:
            offset = self.skip_offset()
        queue = self.active_queue()
        index = next((i for i, e in enumerate(queue) if e.token.volunteer_id == volunteer_id), None)
        if index is None:
            raise NoAssignedToken(f"Volunteer {volunteer_id} has no token to skip")
        current = queue[index].token

        target = min(index + max(offset, 0), len(queue) - 1)
        if target <= index:
            logger.info("Token #%s is already last in the queue; nothing to skip", current.token_number)
            return current

        passed = [entry.token for entry in queue[index + 1:target + 1]]
        slots = [current.token_number] + [token.token_number for token in passed]
        try:
            scratch = self.store.max_token_number() + SCRATCH_OFFSET
            self.store.update_token(current.id, token_number=scratch, volunteer_id=None, is_processing=False)
            for token, slot in zip(passed, slots):
                self.store.update_token(token.id, token_number=slot)
            moved = self.store.update_token(current.id, token_number=slots[-1])
        except QueueError as exc:
            logger.error("Skip of token #%s by volunteer %s failed: %s", current.token_number, volunteer_id, exc)
            raise SkipFailed(f"Skip of token #{current.token_number} failed: {exc.message}") from exc

        logger.info(
            "Volunteer %s skipped token #%s to #%s", volunteer_id, current.token_number, moved.token_number
        )
        self._record(moved, TokenEventType.skipped, volunteer_id)
        self.auto_assign_next(volunteer_id)
        return moved

    # ----- helpers -----

    @staticmethod
    def _can_claim(volunteer: Volunteer) -> bool:
        return volunteer.can_verify_lhc and volunteer.is_available

    def _claiming_actor(self, actor_id: Optional[int]) -> Optional[int]:
        if actor_id is None:
            return None
        volunteer = self.store.get_volunteer(actor_id)
        if volunteer is None or not self._can_claim(volunteer):
            return None
        if self.current_claim(actor_id) is not None:
            return None
        return actor_id

    def _record(self, token: ApprovalToken, event_type: TokenEventType, volunteer_id: Optional[int]) -> None:
        try:
            self.store.record_event(token.id, event_type, volunteer_id)
        except QueueError as exc:
            logger.warning("Could not record %s event for token #%s: %s", event_type.value, token.token_number, exc)
