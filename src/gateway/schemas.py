from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class QuotaView(BaseModel):
    """Caller-facing view of today's quota. Never persisted."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    used: int = Field(ge=0)
    total: int = Field(gt=0)
    remaining: int = Field(ge=0)
    reset_at: datetime = Field(alias="resetAt")

    @classmethod
    def build(cls, used: int, total: int, reset_at: datetime) -> "QuotaView":
        return cls(used=used, total=total, remaining=max(0, total - used), reset_at=reset_at)

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class Limits(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    window_ms: int = Field(alias="windowMs")
    max_per_window: int = Field(alias="maxPerWindow")
    daily_quota: int = Field(alias="dailyQuota")
    max_prompt_chars: int = Field(alias="maxPromptChars")


class HealthResponse(BaseModel):
    ok: bool = True
    limits: Limits


class QuotaResponse(BaseModel):
    quota: QuotaView


class ErrorResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    code: str
    error: str
    quota: Optional[QuotaView] = None
    retry_after_sec: Optional[int] = Field(default=None, alias="retryAfterSec")
