import json
import logging
from dataclasses import replace
from typing import Awaitable, Callable, Union

from providers.identity import InvalidTokenError, TokenVerifier
from state.models import PromptLogEntry
from state.prompt_log import PromptLog
from state.quota import QuotaEngine
from state.store import QuotaStoreError
from .context import Rejection, RequestContext
from .sanitize import check_prompt, extract_prompt_text

logger = logging.getLogger(__name__)

GuardResult = Union[RequestContext, Rejection]
Guard = Callable[[RequestContext], Awaitable[GuardResult]]

SERVER_ERROR_MESSAGE = "Server error"


class AuthGuard:
    """Resolves the caller from an ``Authorization: Bearer <id token>`` header."""

    def __init__(self, verifier: TokenVerifier) -> None:
        self._verifier = verifier

    async def __call__(self, ctx: RequestContext) -> GuardResult:
        header = ctx.authorization
        if not header or not header.startswith("Bearer "):
            return Rejection(401, "NO_TOKEN", "Unauthorized. No token.", headers={"WWW-Authenticate": "Bearer"})

        token = header[len("Bearer "):].strip()
        try:
            caller = await self._verifier.verify(token)
        except InvalidTokenError:
            return Rejection(401, "INVALID_TOKEN", "Invalid token.", headers={"WWW-Authenticate": "Bearer"})
        return replace(ctx, caller=caller)


class ShapeGuard:
    def __init__(self, max_body_bytes: int) -> None:
        self._max_body_bytes = max_body_bytes

    def _too_large(self) -> Rejection:
        return Rejection(413, "PAYLOAD_TOO_LARGE", f"Request body too large. Max {self._max_body_bytes} bytes.")

    async def __call__(self, ctx: RequestContext) -> GuardResult:
        if ctx.content_length is not None and ctx.content_length > self._max_body_bytes:
            return self._too_large()
        raw = await ctx.read_body()
        if len(raw) > self._max_body_bytes:
            return self._too_large()

        try:
            body = json.loads(raw) if raw else None
        except ValueError:
            body = None
        contents = body.get("contents") if isinstance(body, dict) else None
        if not isinstance(contents, list) or not contents:
            return Rejection(400, "INVALID_REQUEST", "Invalid request format. 'contents' array required.")
        return replace(ctx, body=body)


class SanitizeGuard:
    def __init__(self, max_prompt_chars: int) -> None:
        self._max_prompt_chars = max_prompt_chars

    async def __call__(self, ctx: RequestContext) -> GuardResult:
        text = extract_prompt_text(ctx.body)
        problem = check_prompt(text, self._max_prompt_chars)
        if problem is not None:
            code, message = problem
            return Rejection(400, code, message)
        return replace(ctx, prompt_text=text)


class QuotaGuard:
    """Charges one unit of the caller's daily quota before anything goes upstream."""

    def __init__(self, engine: QuotaEngine) -> None:
        self._engine = engine

    async def __call__(self, ctx: RequestContext) -> GuardResult:
        caller = ctx.caller
        try:
            result = await self._engine.consume_quota(caller.uid, caller.email)
        except QuotaStoreError:
            logger.exception("Quota guard failed for %s", caller.uid)
            return Rejection(500, "QUOTA_GUARD_FAILED", SERVER_ERROR_MESSAGE)
        if not result.allowed:
            return Rejection(429, "DAILY_QUOTA_EXCEEDED", "Daily AI quota exceeded.", quota=result.quota)
        return replace(ctx, quota=result.quota)


class PromptLogGuard:
    """Best-effort prompt telemetry; never rejects."""

    def __init__(self, prompt_log: PromptLog, enabled: bool = True) -> None:
        self._prompt_log = prompt_log
        self._enabled = enabled

    async def __call__(self, ctx: RequestContext) -> GuardResult:
        if not self._enabled:
            return ctx
        try:
            entry = PromptLogEntry.for_prompt(
                caller_id=ctx.caller.uid,
                prompt_text=ctx.prompt_text,
                email=ctx.caller.email,
                source_ip=ctx.client_ip,
            )
            await self._prompt_log.record(entry)
        except Exception as e:
            logger.warning("Prompt log failed: %s", e)
        return ctx
