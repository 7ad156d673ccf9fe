"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Literal, Optional
from uuid import UUID
from pydantic import BaseModel, Field, validator


class ClientSignalsPayload(BaseModel):
    """Browser signals used to fingerprint the voter."""

    render_signature: Optional[str] = Field(
        default=None, description="Canvas data URL drawn by the browser"
    )
    screen_width: Optional[int] = Field(default=None, ge=0)
    screen_height: Optional[int] = Field(default=None, ge=0)
    timezone_offset: Optional[int] = Field(
        default=None, description="Minutes from UTC as reported by the browser"
    )


class SessionRequest(ClientSignalsPayload):
    """Voter session start request."""

    class Config:
        json_schema_extra = {
            "example": {
                "render_signature": "data:image/png;base64,iVBORw0KGgo...",
                "screen_width": 1920,
                "screen_height": 1080,
                "timezone_offset": -420
            }
        }


class SessionResponse(BaseModel):
    """Voter session state."""

    session_id: str = Field(..., description="Opaque session identifier")
    has_voted: bool = Field(..., description="Whether this voter already voted")


class VoteRequest(ClientSignalsPayload):
    """Vote submission request model."""

    session_id: str = Field(..., description="Session identifier from POST /session")
    candidate_id: UUID = Field(..., description="Candidate being voted for")

    @validator("session_id")
    def validate_session_id(cls, v):
        """Validate session_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Session ID cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "session_id": "l3CwKq6...",
                "candidate_id": "6f1c2f9e-7d0a-4f57-9a53-0c6a1b0c8e21",
                "render_signature": "data:image/png;base64,iVBORw0KGgo...",
                "screen_width": 1920,
                "screen_height": 1080,
                "timezone_offset": -420
            }
        }


class VoteResponse(BaseModel):
    """Vote submission response model."""

    success: bool
    status: str = Field(..., description="Outcome of the submission")
    message: str
    vote_id: Optional[str] = None
    has_voted: bool


class SchoolResponse(BaseModel):
    id: str
    name: str
    logo_url: Optional[str] = None
    election_title: str
    election_description: str
    is_voting_open: bool
    created_at: datetime
    updated_at: datetime


class SchoolUpdateRequest(BaseModel):
    """Election settings editable by an administrator."""

    name: Optional[str] = None
    logo_url: Optional[str] = None
    election_title: Optional[str] = None
    election_description: Optional[str] = None
    is_voting_open: Optional[bool] = None

    @validator("logo_url")
    def empty_logo_is_none(cls, v):
        return v or None


class CandidateRequest(BaseModel):
    """Candidate create/update request model."""

    name: str = Field(..., min_length=1)
    candidate_number: int = Field(..., ge=1)
    photo_url: Optional[str] = None
    vision: str = ""
    mission: str = ""
    class_grade: str = ""

    @validator("name")
    def validate_name(cls, v):
        if not v.strip():
            raise ValueError("Name cannot be empty")
        return v.strip()

    @validator("photo_url")
    def empty_photo_is_none(cls, v):
        return v or None


class CandidateResponse(BaseModel):
    id: str
    school_id: str
    name: str
    candidate_number: int
    photo_url: Optional[str] = None
    vision: str
    mission: str
    class_grade: str
    created_at: datetime
    updated_at: datetime


class CandidateResult(BaseModel):
    candidate_id: str
    name: str
    candidate_number: int
    votes: int
    percentage: int


class ResultsResponse(BaseModel):
    """Tally response model."""

    candidates: list[CandidateResult]
    total_votes: int

    class Config:
        json_schema_extra = {
            "example": {
                "candidates": [
                    {"candidate_id": "6f1c...", "name": "Ayu", "candidate_number": 1,
                     "votes": 3, "percentage": 75},
                    {"candidate_id": "0b7e...", "name": "Budi", "candidate_number": 2,
                     "votes": 1, "percentage": 25}
                ],
                "total_votes": 4
            }
        }


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    detail: str = Field(..., description="Error message")
