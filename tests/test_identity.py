import pytest
from firebase_admin import auth

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from providers.identity import Caller, FirebaseTokenVerifier, InvalidTokenError


@pytest.mark.asyncio
async def test_verified_token_maps_to_caller(monkeypatch):
    seen = {}

    def fake_verify(token, app=None, check_revoked=False):
        seen["token"] = token
        return {"uid": "abc123", "email": "abc@example.com", "email_verified": True}

    monkeypatch.setattr("providers.identity.auth.verify_id_token", fake_verify)
    caller = await FirebaseTokenVerifier().verify("id-token")
    assert caller == Caller(uid="abc123", email="abc@example.com")
    assert seen["token"] == "id-token"


@pytest.mark.asyncio
async def test_invalid_token_is_rejected(monkeypatch):
    def fake_verify(token, app=None, check_revoked=False):
        raise auth.InvalidIdTokenError("Token expired")

    monkeypatch.setattr("providers.identity.auth.verify_id_token", fake_verify)
    with pytest.raises(InvalidTokenError):
        await FirebaseTokenVerifier().verify("stale")


@pytest.mark.asyncio
async def test_empty_token_and_missing_uid(monkeypatch):
    monkeypatch.setattr(
        "providers.identity.auth.verify_id_token",
        lambda token, app=None, check_revoked=False: {"email": "x@example.com"},
    )
    verifier = FirebaseTokenVerifier()
    with pytest.raises(InvalidTokenError):
        await verifier.verify("")
    with pytest.raises(InvalidTokenError):
        await verifier.verify("token-without-uid")
