from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field, constr, model_validator

from ..enums import ConflictResolution

ExternalId = constr(strip_whitespace=True, min_length=1, max_length=64)
StatementId = constr(strip_whitespace=True, min_length=1, max_length=36)


class PullJobCreate(BaseModel):
    """Start a pull for one or more remote systems (by external id)."""

    system_ids: List[ExternalId] = Field(min_length=1, max_length=100)


class ResolutionRequest(BaseModel):
    """How to resolve one conflicted statement."""

    resolution: ConflictResolution
    merged_content: Optional[str] = None

    @model_validator(mode="after")
    def require_merged_content(self) -> "ResolutionRequest":
        if self.resolution == ConflictResolution.MERGE and not self.merged_content:
            raise ValueError("merged_content is required when resolution is 'merge'")
        return self


class StatementResolution(ResolutionRequest):
    statement_id: StatementId


class ConflictCheckRequest(BaseModel):
    statement_ids: List[StatementId] = Field(min_length=1, max_length=500)


class PushJobCreate(BaseModel):
    """Push modified statements, optionally resolving conflicts first."""

    statement_ids: List[StatementId] = Field(min_length=1, max_length=500)
    resolutions: List[StatementResolution] = Field(default_factory=list)
