from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from .clock import as_utc, utc_now

PREVIEW_MAX_CHARS = 300


class QuotaRecord(BaseModel):
    """Per-caller quota document as stored in the ``users`` collection."""

    used_today: int = Field(default=0, ge=0)
    total_quota: Optional[int] = None
    last_usage_date: Optional[str] = None  # YYYY-MM-DD (UTC)
    reset_at: Optional[datetime] = None
    email: Optional[str] = None

    @field_validator("reset_at")
    @classmethod
    def _utc_reset_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return as_utc(v) if v is not None else None

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "QuotaRecord":
        fields = {k: doc.get(k) for k in cls.model_fields if doc.get(k) is not None}
        return cls(**fields)


class PromptLogEntry(BaseModel):
    caller_id: str
    email: Optional[str] = None
    char_count: int = 0
    preview: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    source_ip: Optional[str] = None

    @classmethod
    def for_prompt(
        cls,
        caller_id: str,
        prompt_text: str,
        email: Optional[str] = None,
        source_ip: Optional[str] = None,
    ) -> "PromptLogEntry":
        return cls(
            caller_id=caller_id,
            email=email,
            char_count=len(prompt_text),
            preview=prompt_text[:PREVIEW_MAX_CHARS],
            source_ip=source_ip,
        )
