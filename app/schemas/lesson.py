"""Public group lesson schemas."""

from pydantic import BaseModel, Field, model_validator

from app.schemas.booking import SessionWindow


class LessonCreate(SessionWindow):
    """Schema for publishing a public group lesson."""

    title: str = Field(..., min_length=3, max_length=200)
    description: str | None = Field(None, max_length=5000)
    price_per_person_cents: int = Field(..., gt=0)
    min_participants: int = Field(default=1, ge=1)
    max_participants: int = Field(..., ge=1, le=100)

    @model_validator(mode="after")
    def validate_limits(self) -> "LessonCreate":
        if self.max_participants < self.min_participants:
            raise ValueError("max_participants must be at least min_participants")
        return self


class ParticipantDecline(BaseModel):
    reason: str | None = Field(None, max_length=1000)
