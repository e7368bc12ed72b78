"""Persistence layer for students, volunteers, approval tokens and settings.

Every method opens its own short session and commits straight away, so
each write is an independent statement.  Nothing here spans several rows
in one transaction; the queue manager is written to cope with that.

Database failures of any kind are reported as ``PersistenceUnavailable``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

from sqlalchemy import func, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

import config
from errors import (
    PersistenceUnavailable,
    StudentNotFound,
    TokenConflict,
    TokenNotFound,
    VolunteerNotFound,
)
from models import (
    ApprovalToken,
    Settings,
    Student,
    TokenEvent,
    TokenEventType,
    Volunteer,
    VolunteerRole,
    utcnow,
)

logger = logging.getLogger(__name__)


class QueueStore:
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = Session(self.engine, expire_on_commit=False)
        try:
            yield session
        except SQLAlchemyError as exc:
            session.rollback()
            logger.warning("Store operation failed: %s", exc)
            raise PersistenceUnavailable() from exc
        finally:
            session.close()

    # ----- students -----

    def get_student(self, roll_no: str) -> Optional[Student]:
        with self._session() as session:
            return session.exec(select(Student).where(Student.roll_no == roll_no)).first()

    def list_students(self) -> List[Student]:
        with self._session() as session:
            statement = select(Student).order_by(col(Student.created_at).desc(), col(Student.id).desc())
            return list(session.exec(statement).all())

    def create_student(self, roll_no: str, name: str, **flags: bool) -> Student:
        with self._session() as session:
            student = Student(roll_no=roll_no, name=name, **flags)
            session.add(student)
            session.commit()
            session.refresh(student)
            return student

    def update_student(self, roll_no: str, **fields: Any) -> Student:
        with self._session() as session:
            student = session.exec(select(Student).where(Student.roll_no == roll_no)).first()
            if student is None:
                raise StudentNotFound(f"No student with roll number {roll_no}")
            for key, value in fields.items():
                setattr(student, key, value)
            session.add(student)
            session.commit()
            session.refresh(student)
            return student

    # ----- volunteers -----

    def get_volunteer(self, volunteer_id: int) -> Optional[Volunteer]:
        with self._session() as session:
            return session.get(Volunteer, volunteer_id)

    def get_volunteer_by_username(self, username: str) -> Optional[Volunteer]:
        with self._session() as session:
            return session.exec(select(Volunteer).where(Volunteer.username == username)).first()

    def search_volunteers(self, username: str) -> List[Volunteer]:
        """Case-insensitive username lookup, oldest account first."""
        with self._session() as session:
            statement = (
                select(Volunteer)
                .where(func.lower(Volunteer.username) == username.lower())
                .order_by(col(Volunteer.id))
            )
            return list(session.exec(statement).all())

    def list_volunteers(
        self, can_verify_lhc: Optional[bool] = None, is_available: Optional[bool] = None
    ) -> List[Volunteer]:
        with self._session() as session:
            statement = select(Volunteer).order_by(col(Volunteer.id))
            if can_verify_lhc is not None:
                statement = statement.where(Volunteer.can_verify_lhc == can_verify_lhc)
            if is_available is not None:
                statement = statement.where(Volunteer.is_available == is_available)
            return list(session.exec(statement).all())

    def create_volunteer(
        self,
        username: str,
        password_hash: str,
        role: VolunteerRole = VolunteerRole.volunteer,
        can_verify_lhc: bool = False,
        is_available: bool = False,
    ) -> Volunteer:
        with self._session() as session:
            volunteer = Volunteer(
                username=username,
                password_hash=password_hash,
                role=role,
                can_verify_lhc=can_verify_lhc,
                is_available=is_available,
            )
            session.add(volunteer)
            session.commit()
            session.refresh(volunteer)
            return volunteer

    def update_volunteer(self, volunteer_id: int, **fields: Any) -> Volunteer:
        with self._session() as session:
            volunteer = session.get(Volunteer, volunteer_id)
            if volunteer is None:
                raise VolunteerNotFound(f"No volunteer with id {volunteer_id}")
            for key, value in fields.items():
                setattr(volunteer, key, value)
            session.add(volunteer)
            session.commit()
            session.refresh(volunteer)
            return volunteer

    # ----- approval tokens -----

    def get_token(self, token_id: int) -> Optional[ApprovalToken]:
        with self._session() as session:
            return session.get(ApprovalToken, token_id)

    def get_token_for_student(self, roll_no: str) -> Optional[ApprovalToken]:
        with self._session() as session:
            statement = select(ApprovalToken).where(ApprovalToken.student_roll_no == roll_no)
            return session.exec(statement).first()

    def list_tokens(self, volunteer_id: Optional[int] = None) -> List[ApprovalToken]:
        """All tokens, history included, in ascending token number order."""
        with self._session() as session:
            statement = select(ApprovalToken).order_by(col(ApprovalToken.token_number))
            if volunteer_id is not None:
                statement = statement.where(ApprovalToken.volunteer_id == volunteer_id)
            return list(session.exec(statement).all())

    def max_token_number(self) -> int:
        with self._session() as session:
            return session.exec(select(func.max(ApprovalToken.token_number))).one() or 0

    def create_token(self, token_number: int, student_roll_no: str) -> ApprovalToken:
        with self._session() as session:
            token = ApprovalToken(token_number=token_number, student_roll_no=student_roll_no)
            session.add(token)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise TokenConflict(
                    f"Token #{token_number} or a token for {student_roll_no} already exists"
                ) from exc
            session.refresh(token)
            return token

    def update_token(self, token_id: int, **fields: Any) -> ApprovalToken:
        with self._session() as session:
            token = session.get(ApprovalToken, token_id)
            if token is None:
                raise TokenNotFound(f"No approval token with id {token_id}")
            for key, value in fields.items():
                setattr(token, key, value)
            token.updated_at = utcnow()
            session.add(token)
            session.commit()
            session.refresh(token)
            return token

    def claim_token(self, token_id: int, volunteer_id: int) -> bool:
        """Claim a token only if nobody holds it and the volunteer holds nothing else.

        Returns whether the claim was won.
        """
        held = aliased(ApprovalToken)
        holds_another = select(held.id).where(col(held.volunteer_id) == volunteer_id).exists()
        with self._session() as session:
            statement = (
                update(ApprovalToken)
                .where(col(ApprovalToken.id) == token_id)
                .where(col(ApprovalToken.volunteer_id).is_(None))
                .where(~holds_another)
                .values(volunteer_id=volunteer_id, is_processing=True, updated_at=utcnow())
            )
            result = session.exec(statement)  # type: ignore[call-overload]
            session.commit()
            return result.rowcount == 1

    def release_claim(self, token_id: int, volunteer_id: int) -> bool:
        """Give a token back to the queue if this volunteer still holds it."""
        with self._session() as session:
            statement = (
                update(ApprovalToken)
                .where(col(ApprovalToken.id) == token_id)
                .where(col(ApprovalToken.volunteer_id) == volunteer_id)
                .values(volunteer_id=None, is_processing=False, updated_at=utcnow())
            )
            result = session.exec(statement)  # type: ignore[call-overload]
            session.commit()
            return result.rowcount == 1

    # ----- settings -----

    def get_settings(self) -> Settings:
        with self._session() as session:
            settings = session.get(Settings, 1)
            if settings is None:
                return Settings(id=1, skip_offset=config.DEFAULT_SKIP_OFFSET)
            return settings

    def update_settings(self, **fields: Any) -> Settings:
        with self._session() as session:
            settings = session.get(Settings, 1)
            if settings is None:
                settings = Settings(id=1, skip_offset=config.DEFAULT_SKIP_OFFSET)
            for key, value in fields.items():
                setattr(settings, key, value)
            session.add(settings)
            session.commit()
            session.refresh(settings)
            return settings

    # ----- audit trail -----

    def record_event(
        self, token_id: int, event_type: TokenEventType, volunteer_id: Optional[int] = None
    ) -> TokenEvent:
        with self._session() as session:
            event = TokenEvent(token_id=token_id, event_type=event_type, volunteer_id=volunteer_id)
            session.add(event)
            session.commit()
            session.refresh(event)
            return event

    def list_events(self, limit: int = 50) -> List[TokenEvent]:
        with self._session() as session:
            statement = select(TokenEvent).order_by(col(TokenEvent.at).desc(), col(TokenEvent.id).desc()).limit(limit)
            return list(session.exec(statement).all())
