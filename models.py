"""Database models for the arrival portal.

We use SQLModel to define the schema.  Students move through the arrival
steps, volunteers verify their documents, and approval tokens order the
students waiting for LHC document verification.  Settings is a single row
of portal-level configuration.  Token events are stored to provide an
audit trail of the queue.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

# Steps shown on the student checklist, in the order they are completed.
STUDENT_STEPS = [
    ("hostel_mess_status", "Hostel & Mess Registration"),
    ("insurance_status", "Insurance Verification"),
    ("lhc_docs_status", "LHC Documents"),
    ("final_approval_status", "Final Approval"),
]
TOTAL_STEPS = len(STUDENT_STEPS)

# A token can only be issued once these are all done.
PREREQUISITE_STEPS = ("fees_paid", "hostel_mess_status", "insurance_status")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Student(SQLModel, table=True):
    __tablename__ = "students"

    id: Optional[int] = Field(default=None, primary_key=True)
    roll_no: str = Field(index=True, unique=True)
    name: str
    fees_paid: bool = Field(default=False)
    hostel_mess_status: bool = Field(default=False)
    insurance_status: bool = Field(default=False)
    lhc_docs_status: bool = Field(default=False)
    final_approval_status: bool = Field(default=False)
    flagged: bool = Field(default=False)
    # Cached: true iff an approval token row exists for this student
    token_assigned: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def progress(self) -> int:
        return sum(1 for field, _ in STUDENT_STEPS if getattr(self, field))


class VolunteerRole(str, Enum):
    volunteer = "volunteer"
    admin = "admin"


class Volunteer(SQLModel, table=True):
    __tablename__ = "volunteers"

    id: Optional[int] = Field(default=None, primary_key=True)
    username: str = Field(index=True, unique=True)
    password_hash: str
    role: VolunteerRole = Field(default=VolunteerRole.volunteer)
    can_verify_lhc: bool = Field(default=False)
    is_available: bool = Field(default=False)


class ApprovalToken(SQLModel, table=True):
    __tablename__ = "approval_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    token_number: int = Field(index=True, unique=True)
    student_roll_no: str = Field(foreign_key="students.roll_no", index=True, unique=True)
    volunteer_id: Optional[int] = Field(default=None, foreign_key="volunteers.id", index=True)
    is_processing: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class TokenEventType(str, Enum):
    issued = "issued"
    claimed = "claimed"
    released = "released"
    completed = "completed"
    skipped = "skipped"


class TokenEvent(SQLModel, table=True):
    __tablename__ = "token_events"

    id: Optional[int] = Field(default=None, primary_key=True)
    token_id: int = Field(foreign_key="approval_tokens.id", index=True)
    event_type: TokenEventType
    volunteer_id: Optional[int] = None
    at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class Settings(SQLModel, table=True):
    __tablename__ = "settings"

    id: Optional[int] = Field(default=1, primary_key=True)
    skip_offset: int = Field(default=3)
    portal_name: str = Field(default="Campus Arrival Portal")
