"""Voice memo pipeline - Pydantic models for API validation."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

# --- Response Models ---


class AudioResponse(BaseModel):
    """An audio record as seen by its owner."""

    model_config = ConfigDict(extra="forbid", from_attributes=True)

    id: int = Field(..., description="Audio identifier")
    transcription: str | None = Field(
        default=None, description="Transcription text, null until transcription succeeds"
    )
    created_at: datetime = Field(..., description="When the audio was uploaded")


class AudioListResponse(BaseModel):
    """All audio records owned by the caller."""

    model_config = ConfigDict(extra="forbid")

    audios: list[AudioResponse] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Response for failed operations."""

    model_config = ConfigDict(extra="forbid")

    status: str = Field(default="error", description="Operation status")
    error_code: str = Field(..., description="Error taxonomy code")
    error_message: str = Field(..., description="Human-readable error description")


__all__ = [
    "AudioResponse",
    "AudioListResponse",
    "ErrorResponse",
]
