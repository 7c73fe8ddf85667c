import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import firebase_admin
from firebase_admin import auth, credentials
from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)


class InvalidTokenError(Exception):
    pass


@dataclass(frozen=True)
class Caller:
    uid: str
    email: Optional[str] = None


class TokenVerifier(ABC):
    @abstractmethod
    async def verify(self, token: str) -> Caller:
        """Return the caller behind ``token`` or raise InvalidTokenError."""


def init_firebase(service_account: Dict[str, Any]) -> firebase_admin.App:
    """Initialize the default Firebase app once per process."""
    try:
        return firebase_admin.get_app()
    except ValueError:
        pass
    cred = credentials.Certificate(service_account)
    return firebase_admin.initialize_app(cred)


class FirebaseTokenVerifier(TokenVerifier):
    """Verifies Firebase ID tokens with the Admin SDK.

    ``verify_id_token`` is blocking (it may fetch Google's public keys), so it
    runs in the threadpool.
    """

    def __init__(self, app: Optional[firebase_admin.App] = None, check_revoked: bool = False) -> None:
        self._app = app
        self._check_revoked = check_revoked

    async def verify(self, token: str) -> Caller:
        if not token:
            raise InvalidTokenError("empty token")
        try:
            decoded = await run_in_threadpool(
                auth.verify_id_token, token, app=self._app, check_revoked=self._check_revoked
            )
        except (ValueError, auth.InvalidIdTokenError, auth.UserDisabledError, auth.CertificateFetchError) as e:
            logger.debug("Token verification failed: %s", e)
            raise InvalidTokenError(str(e)) from e

        uid = decoded.get("uid")
        if not uid:
            raise InvalidTokenError("token missing uid claim")
        return Caller(uid=uid, email=decoded.get("email"))
