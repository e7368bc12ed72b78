"""Pydantic schemas for requests.

Only request bodies live here.  Responses are returned as plain dicts
built by the service layer.
"""
from typing import Optional

from pydantic import BaseModel, Field


class StudentLoginRequest(BaseModel):
    roll_no: str


class Credentials(BaseModel):
    username: str
    password: str


class IssueTokenRequest(Credentials):
    roll_no: str


class AvailabilityRequest(Credentials):
    available: bool


class CompleteRequest(Credentials):
    token_id: int


class StepUpdateRequest(Credentials):
    roll_no: str
    step: str
    value: bool


class SettingsUpdateRequest(Credentials):
    skip_offset: int = Field(ge=1)
    portal_name: Optional[str] = None
