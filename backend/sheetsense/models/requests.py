"""Request bodies accepted by the HTTP layer."""

from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from .answer_sheet import FlagSeverity, FlagType


class ReasonRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)


class ManualOverrideRequest(BaseModel):
    question_id: str = Field(..., min_length=1)
    question_number: Optional[int] = Field(None, ge=1)
    corrected_answer: str = ""
    corrected_marks: float = Field(..., ge=0)
    reason: str = Field(..., min_length=1, max_length=500)


class MatchRequest(BaseModel):
    student_id: Optional[str] = None
    roll_number: Optional[str] = None

    @model_validator(mode="after")
    def _one_identifier(self):
        if not self.student_id and not self.roll_number:
            raise ValueError("Either student_id or roll_number is required")
        return self


class FlagCreateRequest(BaseModel):
    type: FlagType
    severity: FlagSeverity
    description: str = Field(..., min_length=1, max_length=500)


class FlagResolveRequest(BaseModel):
    resolution_notes: Optional[str] = Field(None, max_length=500)


class BulkResolveRequest(BaseModel):
    answer_sheet_ids: List[str] = Field(..., min_length=1)
    resolution_notes: Optional[str] = Field(None, max_length=500)
