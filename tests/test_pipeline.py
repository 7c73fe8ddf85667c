import json
from dataclasses import replace
from typing import Any, Dict, List

import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from pipeline import Pipeline, Rejection, RequestContext
from pipeline.guards import AuthGuard, PromptLogGuard, QuotaGuard, SanitizeGuard, ShapeGuard
from providers.identity import Caller, InvalidTokenError, TokenVerifier
from state.prompt_log import PromptLog
from state.quota import QuotaEngine
from state.store import MemoryQuotaStore, QuotaStore, QuotaStoreError


class FakeVerifier(TokenVerifier):
    async def verify(self, token: str) -> Caller:
        if token.startswith("good-"):
            uid = token[len("good-"):]
            return Caller(uid=uid, email=f"{uid}@example.com")
        raise InvalidTokenError("bad token")


class BrokenStore(QuotaStore):
    async def read(self, caller_id):
        raise QuotaStoreError("down")

    async def atomic_update(self, caller_id, fn):
        raise QuotaStoreError("down")


class FakeLogCollection:
    def __init__(self):
        self.docs: List[Dict[str, Any]] = []

    async def insert_one(self, doc):
        self.docs.append(doc)


def _body_reader(payload: Any):
    raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")

    async def read() -> bytes:
        return raw

    return read


CALLER = Caller(uid="u1", email="u1@example.com")


@pytest.mark.asyncio
async def test_auth_guard_codes():
    guard = AuthGuard(FakeVerifier())

    missing = await guard(RequestContext())
    assert isinstance(missing, Rejection) and missing.code == "NO_TOKEN" and missing.status_code == 401

    wrong_scheme = await guard(RequestContext(authorization="Basic abc"))
    assert isinstance(wrong_scheme, Rejection) and wrong_scheme.code == "NO_TOKEN"

    invalid = await guard(RequestContext(authorization="Bearer nope"))
    assert isinstance(invalid, Rejection) and invalid.code == "INVALID_TOKEN"

    ok = await guard(RequestContext(authorization="Bearer good-u1"))
    assert isinstance(ok, RequestContext)
    assert ok.caller == CALLER


@pytest.mark.asyncio
async def test_shape_guard():
    guard = ShapeGuard(max_body_bytes=1024)

    for payload in ({}, {"contents": []}, {"contents": "x"}, [1, 2], b"{not json", b""):
        result = await guard(RequestContext(read_body=_body_reader(payload)))
        assert isinstance(result, Rejection), payload
        assert result.code == "INVALID_REQUEST"

    body = {"contents": [{"parts": [{"text": "hi"}]}]}
    ok = await guard(RequestContext(read_body=_body_reader(body)))
    assert isinstance(ok, RequestContext)
    assert ok.body == body


@pytest.mark.asyncio
async def test_shape_guard_rejects_oversized_bodies():
    guard = ShapeGuard(max_body_bytes=32)
    declared = await guard(RequestContext(content_length=10_000))
    assert isinstance(declared, Rejection) and declared.status_code == 413

    big = {"contents": [{"parts": [{"text": "x" * 100}]}]}
    actual = await guard(RequestContext(read_body=_body_reader(big)))
    assert isinstance(actual, Rejection) and actual.code == "PAYLOAD_TOO_LARGE"


@pytest.mark.asyncio
async def test_sanitize_guard_sets_prompt_text():
    guard = SanitizeGuard(max_prompt_chars=20)
    ctx = RequestContext(body={"contents": [{"parts": [{"text": " hello "}, {"text": "world"}]}]})
    ok = await guard(ctx)
    assert isinstance(ok, RequestContext)
    assert ok.prompt_text == "hello \nworld"

    too_long = await guard(RequestContext(body={"contents": [{"parts": [{"text": "y" * 21}]}]}))
    assert isinstance(too_long, Rejection)
    assert (too_long.status_code, too_long.code) == (400, "PROMPT_TOO_LONG")


@pytest.mark.asyncio
async def test_quota_guard_denies_when_exhausted():
    engine = QuotaEngine(MemoryQuotaStore(), default_quota=1)
    guard = QuotaGuard(engine)
    ctx = RequestContext(caller=CALLER)

    first = await guard(ctx)
    assert isinstance(first, RequestContext)
    assert first.quota.remaining == 0

    second = await guard(ctx)
    assert isinstance(second, Rejection)
    assert (second.status_code, second.code) == (429, "DAILY_QUOTA_EXCEEDED")
    assert second.quota.remaining == 0


@pytest.mark.asyncio
async def test_quota_guard_store_failure_is_server_error():
    guard = QuotaGuard(QuotaEngine(BrokenStore(), default_quota=5))
    result = await guard(RequestContext(caller=CALLER))
    assert isinstance(result, Rejection)
    assert (result.status_code, result.code) == (500, "QUOTA_GUARD_FAILED")
    assert result.message == "Server error"


@pytest.mark.asyncio
async def test_prompt_log_guard_records_and_never_rejects():
    col = FakeLogCollection()
    guard = PromptLogGuard(PromptLog(collection=col))
    ctx = RequestContext(caller=CALLER, prompt_text="hello", client_ip="10.1.1.1")
    assert await guard(ctx) is ctx
    assert col.docs[0]["source_ip"] == "10.1.1.1"

    # caller missing makes entry construction fail; still passes through
    broken = replace(ctx, caller=None)
    assert await guard(broken) is broken

    disabled = PromptLogGuard(PromptLog(collection=col), enabled=False)
    await disabled(ctx)
    assert len(col.docs) == 1


@pytest.mark.asyncio
async def test_pipeline_stops_at_first_rejection():
    calls: List[str] = []

    async def passing(ctx):
        calls.append("passing")
        return ctx

    async def rejecting(ctx):
        calls.append("rejecting")
        return Rejection(400, "NOPE", "no")

    async def never(ctx):  # pragma: no cover
        calls.append("never")
        return ctx

    result = await Pipeline([passing, rejecting, never]).run(RequestContext())
    assert isinstance(result, Rejection) and result.code == "NOPE"
    assert calls == ["passing", "rejecting"]


def test_rejection_response_shape():
    resp = Rejection(429, "RATE_LIMIT_HIT", "slow down", retry_after_sec=60).to_response()
    assert resp.status_code == 429
    assert json.loads(resp.body) == {"code": "RATE_LIMIT_HIT", "error": "slow down", "retryAfterSec": 60}
