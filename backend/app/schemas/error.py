"""Standard error response schema."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ErrorResponse(BaseModel):
    # Extra structured details (field, reset_in_seconds, provider…) ride along
    model_config = ConfigDict(extra="allow")

    error: str = "error"
    detail: str
