from __future__ import annotations

from functools import lru_cache
import logging

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from calcrm.core.config import settings
from calcrm.core.security.jwks_cache import JwksCache
from calcrm.core.security.jwt_verifier import AuthTokenValidationError, JWTVerifier
from calcrm.db.session import get_db
from calcrm.schemas.request_identity import RequestIdentity
from calcrm.services.identity_service import (
    Principal,
    Unauthenticated,
    attach_internal_user_context,
    resolve_principal,
)

logger = logging.getLogger(__name__)


def _normalized_auth_mode() -> str:
    raw = (settings.AUTH_MODE or "legacy_header").strip().lower()
    if raw in {"legacy_header", "dual", "jwt_only"}:
        return raw
    return "legacy_header"


@lru_cache(maxsize=1)
def _get_verifier() -> JWTVerifier:
    algorithms = [
        token.strip().upper()
        for token in (settings.AUTH_JWT_ALGORITHMS or "HS256").split(",")
        if token.strip()
    ]
    return JWTVerifier(
        secret=settings.AUTH_JWT_SECRET,
        audience=settings.AUTH_JWT_AUDIENCE,
        issuer=settings.AUTH_JWT_ISSUER,
        jwks_uri=settings.AUTH_JWKS_URI,
        algorithms=algorithms or ["HS256"],
        jwks_cache=JwksCache(
            ttl_sec=settings.AUTH_JWKS_CACHE_TTL_SEC,
            timeout_sec=settings.AUTH_JWKS_TIMEOUT_SEC,
        ),
        leeway_sec=settings.AUTH_JWT_CLOCK_SKEW_SEC,
    )


def _unauthenticated(message: str = "Please sign in again.") -> HTTPException:
    return HTTPException(status_code=401, detail=Unauthenticated(message).to_detail())


def _extract_bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization") or ""
    prefix = "Bearer "
    if not header.startswith(prefix):
        return None
    token = header[len(prefix) :].strip()
    return token or None


def _identity_from_legacy_header(request: Request) -> RequestIdentity:
    subject = (request.headers.get("X-User-Id") or "").strip()
    email = (request.headers.get("X-User-Email") or "").strip().lower()
    return RequestIdentity(
        subject=subject or None,
        email=email or None,
        auth_source="legacy_header" if (subject or email) else "anonymous",
        claims={},
    )


def _extract_email_from_claims(claims: dict) -> str | None:
    for key in ("email", "upn", "preferred_username"):
        value = claims.get(key)
        if value is None:
            continue
        text = str(value).strip().lower()
        if text:
            return text
    return None


def _identity_from_token(token: str) -> RequestIdentity:
    try:
        claims = _get_verifier().verify(token)
    except AuthTokenValidationError as exc:
        logger.info("jwt_identity_rejected reason=%s", exc)
        raise _unauthenticated() from exc

    subject = claims.get("sub")
    subject_text = str(subject).strip() if subject is not None else None
    return RequestIdentity(
        subject=subject_text or None,
        email=_extract_email_from_claims(claims),
        auth_source="jwt",
        claims=claims,
    )


def resolve_request_identity(request: Request) -> RequestIdentity:
    token = _extract_bearer_token(request)
    mode = _normalized_auth_mode()
    if mode == "legacy_header":
        return _identity_from_legacy_header(request)

    if mode == "jwt_only":
        if not token:
            raise _unauthenticated()
        return _identity_from_token(token)

    # dual mode: prefer JWT when present, otherwise fallback to legacy header.
    if token:
        return _identity_from_token(token)
    return _identity_from_legacy_header(request)


def get_request_identity(request: Request) -> RequestIdentity:
    return resolve_request_identity(request)


def get_request_identity_with_db(
    request: Request,
    db: Session = Depends(get_db),
) -> RequestIdentity:
    identity = resolve_request_identity(request)
    return attach_internal_user_context(db, identity=identity)


def get_current_principal(
    identity: RequestIdentity = Depends(get_request_identity_with_db),
    db: Session = Depends(get_db),
) -> Principal:
    try:
        return resolve_principal(db, identity)
    except Unauthenticated as exc:
        if identity.auth_source != "anonymous":
            logger.warning(
                "principal_unresolved source=%s subject=%s email=%s",
                identity.auth_source,
                identity.subject or "-",
                identity.email or "-",
            )
        raise HTTPException(status_code=401, detail=exc.to_detail()) from exc
