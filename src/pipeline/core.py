import logging
from typing import List, Sequence

from fastapi.responses import JSONResponse
from starlette.responses import Response

from gateway.config import Settings
from gateway.schemas import QuotaResponse
from providers.base import GenerationProvider
from providers.gemini import MissingApiKeyError, UpstreamError
from providers.identity import TokenVerifier
from state.prompt_log import PromptLog
from state.quota import QuotaEngine
from state.store import QuotaStoreError
from .context import Rejection, RequestContext
from .guards import (
    SERVER_ERROR_MESSAGE,
    AuthGuard,
    Guard,
    GuardResult,
    PromptLogGuard,
    QuotaGuard,
    SanitizeGuard,
    ShapeGuard,
)

logger = logging.getLogger(__name__)

REMAINING_HEADER = "X-RateLimit-User-Remaining"


class Pipeline:
    """Runs guards in order; the first Rejection ends the run."""

    def __init__(self, guards: Sequence[Guard]) -> None:
        self._guards: List[Guard] = list(guards)

    async def run(self, ctx: RequestContext) -> GuardResult:
        for guard in self._guards:
            result = await guard(ctx)
            if isinstance(result, Rejection):
                logger.info("Request rejected by %s: %s", type(guard).__name__, result.code)
                return result
            ctx = result
        return ctx


class Gateway:
    """The request-handling core behind the HTTP routes."""

    def __init__(
        self,
        settings: Settings,
        engine: QuotaEngine,
        verifier: TokenVerifier,
        provider: GenerationProvider,
        prompt_log: PromptLog,
    ) -> None:
        self._engine = engine
        self._provider = provider
        self._auth = AuthGuard(verifier)
        self._generate = Pipeline(
            [
                self._auth,
                ShapeGuard(settings.max_body_bytes),
                SanitizeGuard(settings.max_prompt_chars),
                QuotaGuard(engine),
                PromptLogGuard(prompt_log, enabled=settings.log_prompts),
            ]
        )

    @property
    def provider(self) -> GenerationProvider:
        return self._provider

    async def quota(self, ctx: RequestContext) -> Response:
        result = await self._auth(ctx)
        if isinstance(result, Rejection):
            return result.to_response()
        try:
            view = await self._engine.read_quota(result.caller.uid)
        except QuotaStoreError:
            logger.exception("Quota read failed for %s", result.caller.uid)
            return Rejection(500, "QUOTA_READ_FAILED", SERVER_ERROR_MESSAGE).to_response()
        return JSONResponse(QuotaResponse(quota=view).model_dump(mode="json", by_alias=True))

    async def generate(self, ctx: RequestContext) -> Response:
        result = await self._generate.run(ctx)
        if isinstance(result, Rejection):
            return result.to_response()
        return await self._forward(result)

    async def _forward(self, ctx: RequestContext) -> Response:
        # Quota is already charged at this point and is not refunded on failure.
        quota = ctx.quota
        try:
            data = await self._provider.generate(ctx.body)
        except MissingApiKeyError:
            logger.error("Upstream API key missing")
            return Rejection(500, "MISSING_GEMINI_KEY", "API key missing").to_response()
        except UpstreamError as e:
            if e.status_code == 429:
                return Rejection(
                    429, "UPSTREAM_GEMINI_429", e.message or "Gemini rate limit reached.", quota=quota
                ).to_response()
            return Rejection(
                e.status_code, "UPSTREAM_GEMINI_ERROR", e.message or "Gemini request failed.", quota=quota
            ).to_response()
        except Exception as e:
            logger.exception("Generate failed: %s", e)
            return Rejection(500, "SERVER_ERROR", SERVER_ERROR_MESSAGE).to_response()

        return JSONResponse(
            {**data, "quota": quota.to_json()},
            headers={REMAINING_HEADER: str(quota.remaining)},
        )
