"""Firebase ID token verification for bearer-authenticated endpoints."""

from __future__ import annotations

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx
import jwt
from cryptography import x509

from .errors import ConfigurationError, Unauthenticated


logger = logging.getLogger(__name__)

FIREBASE_CERTS_URL = "https://www.googleapis.com/robot/v1/metadata/x509/securetoken@system.gserviceaccount.com"
FIREBASE_ISSUER_PREFIX = "https://securetoken.google.com/"
CERTS_CACHE_SECONDS_DEFAULT = 3600
TOKEN_LEEWAY_SECONDS = 60


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


@dataclass(frozen=True)
class VerifiedIdentity:
    uid: str
    email: str = ""
    name: str = ""
    claims: dict[str, Any] = field(default_factory=dict)


class IdentityVerifier(Protocol):
    def verify(self, token: str) -> VerifiedIdentity: ...


def bearer_token(authorization: str | None) -> str | None:
    header = _clean_text(authorization)
    if not header.startswith("Bearer "):
        return None
    token = header[len("Bearer "):].strip()
    return token or None


def authenticate(verifier: IdentityVerifier, authorization: str | None) -> VerifiedIdentity:
    token = bearer_token(authorization)
    if token is None:
        raise Unauthenticated()
    return verifier.verify(token)


def _max_age_seconds(cache_control: str) -> int:
    match = re.search(r"max-age=(\d+)", cache_control or "")
    if not match:
        return CERTS_CACHE_SECONDS_DEFAULT
    return int(match.group(1))


class FirebaseTokenVerifier:
    """Validates Firebase ID tokens against Google's rotating signing certificates."""

    def __init__(
        self,
        project_id: str,
        *,
        certs_url: str = FIREBASE_CERTS_URL,
        timeout_seconds: int = 20,
    ):
        self.project_id = _clean_text(project_id)
        self.certs_url = certs_url
        self.timeout_seconds = timeout_seconds
        self._lock = threading.Lock()
        self._certs: dict[str, str] = {}
        self._certs_expire_at = 0.0

    @property
    def issuer(self) -> str:
        return f"{FIREBASE_ISSUER_PREFIX}{self.project_id}"

    def _fetch_certs(self) -> dict[str, str]:
        try:
            response = httpx.get(self.certs_url, timeout=self.timeout_seconds)
        except Exception as exc:
            logger.warning("firebase certificate fetch failed: %s", exc)
            raise Unauthenticated("Unable to verify credential") from exc
        if response.status_code >= 300:
            logger.warning("firebase certificate fetch returned status %s", response.status_code)
            raise Unauthenticated("Unable to verify credential")
        try:
            data = response.json()
        except Exception as exc:
            raise Unauthenticated("Unable to verify credential") from exc
        if not isinstance(data, dict):
            raise Unauthenticated("Unable to verify credential")

        max_age = _max_age_seconds(str(response.headers.get("cache-control", "")))
        self._certs = {str(kid): str(pem) for kid, pem in data.items()}
        self._certs_expire_at = time.time() + max_age
        return self._certs

    def _certificate_for(self, kid: str) -> str:
        with self._lock:
            certs = self._certs
            if not certs or time.time() >= self._certs_expire_at or kid not in certs:
                certs = self._fetch_certs()
        pem = certs.get(kid)
        if not pem:
            raise Unauthenticated()
        return pem

    def verify(self, token: str) -> VerifiedIdentity:
        if not self.project_id:
            raise ConfigurationError("Firebase project id is not configured")
        raw = _clean_text(token)
        if not raw:
            raise Unauthenticated()

        try:
            header = jwt.get_unverified_header(raw)
        except jwt.PyJWTError as exc:
            raise Unauthenticated() from exc
        kid = _clean_text(header.get("kid"))
        if header.get("alg") != "RS256" or not kid:
            raise Unauthenticated()

        pem = self._certificate_for(kid)
        try:
            public_key = x509.load_pem_x509_certificate(pem.encode("utf-8")).public_key()
            claims = jwt.decode(
                raw,
                public_key,
                algorithms=["RS256"],
                audience=self.project_id,
                issuer=self.issuer,
                leeway=TOKEN_LEEWAY_SECONDS,
                options={"require": ["exp", "iat", "sub"]},
            )
        except (jwt.PyJWTError, ValueError) as exc:
            logger.info("rejected identity token: %s", exc.__class__.__name__)
            raise Unauthenticated() from exc

        uid = _clean_text(claims.get("sub"))
        if not uid:
            raise Unauthenticated()
        return VerifiedIdentity(
            uid=uid,
            email=_clean_text(claims.get("email")),
            name=_clean_text(claims.get("name")),
            claims=dict(claims),
        )
