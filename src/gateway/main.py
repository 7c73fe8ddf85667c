import logging
import sys
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from gateway.config import ConfigError, Settings, load_settings
from gateway.ratelimit import build_limiter, rate_limit_handler
from gateway.schemas import HealthResponse
from pipeline import Gateway, Rejection, RequestContext
from pipeline.core import REMAINING_HEADER
from providers.base import GenerationProvider
from providers.gemini import GeminiProvider
from providers.identity import FirebaseTokenVerifier, TokenVerifier, init_firebase
from state.mongo import close_mongo, init_mongo
from state.prompt_log import PromptLog
from state.quota import QuotaEngine
from state.store import MemoryQuotaStore, MongoQuotaStore, QuotaStore

logger = logging.getLogger(__name__)

# helmet-style defaults applied to every response
SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "SAMEORIGIN",
    "X-DNS-Prefetch-Control": "off",
    "Referrer-Policy": "no-referrer",
    "Cross-Origin-Resource-Policy": "same-origin",
}


def create_app(
    settings: Settings,
    *,
    engine: Optional[QuotaEngine] = None,
    verifier: Optional[TokenVerifier] = None,
    provider: Optional[GenerationProvider] = None,
    prompt_log: Optional[PromptLog] = None,
) -> FastAPI:
    """Build the gateway app.

    Collaborators that are not passed in are created on startup from
    ``settings``: MongoDB (or the in-memory fallback) for quota and prompt
    logs, Firebase for ID tokens and Gemini upstream.
    """
    app = FastAPI(title="QuotaGate", version="0.1.0")
    app.state.settings = settings
    app.state.gateway = None

    limiter = build_limiter(settings)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_handler(settings))
    app.add_exception_handler(Exception, _server_error_handler)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
        expose_headers=[REMAINING_HEADER],
    )

    @app.middleware("http")
    async def security_headers(request: Request, call_next):
        response = await call_next(request)
        for name, value in SECURITY_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    if engine is not None and verifier is not None:
        app.state.gateway = Gateway(
            settings,
            engine=engine,
            verifier=verifier,
            provider=provider or _build_provider(settings),
            prompt_log=prompt_log or PromptLog(),
        )

    @app.on_event("startup")
    async def startup_event() -> None:
        if app.state.gateway is not None:
            return

        store: QuotaStore
        if settings.mongodb_uri:
            _, db = await init_mongo(settings.mongodb_uri)
            store = MongoQuotaStore(db=db, max_attempts=settings.quota_max_attempts)
            log = prompt_log or PromptLog(db=db)
        else:
            logger.warning("MONGODB_URI not set; quota is kept in process memory and lost on restart")
            store = MemoryQuotaStore()
            log = prompt_log or PromptLog()

        app.state.gateway = Gateway(
            settings,
            engine=engine or QuotaEngine(store, default_quota=settings.user_daily_quota),
            verifier=verifier or FirebaseTokenVerifier(init_firebase(settings.require_identity_credentials())),
            provider=provider or _build_provider(settings),
            prompt_log=log,
        )
        logger.info("Gateway initialized (store=%s)", type(store).__name__)

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        gateway: Optional[Gateway] = app.state.gateway
        if gateway is not None:
            try:
                await gateway.provider.aclose()
            except Exception as e:  # pragma: no cover
                logger.warning("Failed to close upstream client: %s", e)
        await close_mongo()

    @app.get("/health", tags=["health"])
    async def health():
        payload = HealthResponse(limits=settings.limits_view())
        return JSONResponse(payload.model_dump(mode="json", by_alias=True))

    @app.get("/quota")
    async def quota(request: Request):
        return await _gateway(request).quota(_context(request))

    @app.post("/generate")
    @limiter.limit(settings.rate_limit_value)
    async def generate(request: Request):
        return await _gateway(request).generate(_context(request))

    return app


def _build_provider(settings: Settings) -> GeminiProvider:
    return GeminiProvider(
        api_key=settings.gemini_key,
        model=settings.gemini_model,
        base_url=settings.gemini_base_url,
        timeout=settings.upstream_timeout,
    )


def _gateway(request: Request) -> Gateway:
    gateway: Optional[Gateway] = request.app.state.gateway
    if gateway is None:
        raise RuntimeError("Gateway is not initialized; startup has not run")
    return gateway


def _context(request: Request) -> RequestContext:
    length = request.headers.get("content-length")
    return RequestContext(
        authorization=request.headers.get("authorization"),
        client_ip=get_remote_address(request),
        content_length=int(length) if length and length.isdigit() else None,
        read_body=request.body,
    )


async def _server_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path, exc_info=exc)
    response = Rejection(500, "SERVER_ERROR", "Server error").to_response()
    # sent from outside the http middleware stack
    response.headers.update(SECURITY_HEADERS)
    return response


def run() -> None:
    """Console entry point: load configuration and serve with uvicorn."""
    load_dotenv()
    try:
        settings = load_settings()
        service_account = settings.require_identity_credentials()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("%s", e)
        sys.exit(1)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        firebase_app = init_firebase(service_account)
    except ValueError as e:
        logger.error("Invalid FIREBASE_SERVICE_ACCOUNT: %s", e)
        sys.exit(1)

    app = create_app(settings, verifier=FirebaseTokenVerifier(firebase_app))
    logger.info("Server running on port %d", settings.port)
    logger.info(
        "Limits => windowMs=%d, max=%d, dailyQuota=%d, maxPromptChars=%d",
        settings.rate_limit_window_ms,
        settings.rate_limit_max,
        settings.user_daily_quota,
        settings.max_prompt_chars,
    )
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        proxy_headers=True,
        forwarded_allow_ips=settings.forwarded_allow_ips,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
