from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi.responses import JSONResponse

from gateway.schemas import ErrorResponse, QuotaView
from providers.identity import Caller


async def _no_body() -> bytes:
    return b""


@dataclass(frozen=True)
class RequestContext:
    """Values derived by guards, threaded explicitly through the pipeline.

    Guards never mutate a context; they return a copy via ``dataclasses.replace``.
    """

    authorization: Optional[str] = None
    client_ip: Optional[str] = None
    content_length: Optional[int] = None
    read_body: Callable[[], Awaitable[bytes]] = _no_body
    body: Optional[Dict[str, Any]] = None
    caller: Optional[Caller] = None
    prompt_text: str = ""
    quota: Optional[QuotaView] = None


@dataclass(frozen=True)
class Rejection:
    status_code: int
    code: str
    message: str
    quota: Optional[QuotaView] = None
    retry_after_sec: Optional[int] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def to_response(self) -> JSONResponse:
        payload = ErrorResponse(
            code=self.code,
            error=self.message,
            quota=self.quota,
            retry_after_sec=self.retry_after_sec,
        ).model_dump(mode="json", by_alias=True, exclude_none=True)
        return JSONResponse(status_code=self.status_code, content=payload, headers=self.headers or None)
