from __future__ import annotations

import json
from typing import Any

import jwt
import requests

from calcrm.core.security.jwks_cache import JwksCache


class AuthTokenValidationError(Exception):
    pass


class JWTVerifier:
    """
    Verifies bearer access tokens.

    HS* tokens are checked against the shared secret (the auth provider's JWT
    secret); RS*/ES* tokens against the JWKS key named by the token's `kid`.
    """

    def __init__(
        self,
        *,
        secret: str = "",
        audience: str = "",
        issuer: str = "",
        jwks_uri: str = "",
        algorithms: list[str] | None = None,
        jwks_cache: JwksCache | None = None,
        leeway_sec: int = 60,
    ) -> None:
        self.secret = secret
        self.audience = audience
        self.issuer = issuer
        self.jwks_uri = jwks_uri
        self.algorithms = algorithms or ["HS256"]
        self.jwks_cache = jwks_cache or JwksCache(ttl_sec=300, timeout_sec=5)
        self.leeway_sec = leeway_sec

    def _signing_key(self, token: str, algorithm: str) -> Any:
        if algorithm.startswith("HS"):
            if not self.secret:
                raise AuthTokenValidationError("Token signing secret is not configured.")
            return self.secret

        if not self.jwks_uri:
            raise AuthTokenValidationError("JWKS URI is not configured.")
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise AuthTokenValidationError("Malformed token header.") from exc
        kid = str(header.get("kid") or "").strip()
        if not kid:
            raise AuthTokenValidationError("Token is missing key id.")
        try:
            jwk = self.jwks_cache.get_key(self.jwks_uri, kid)
        except requests.RequestException as exc:
            raise AuthTokenValidationError("Signing keys are unavailable.") from exc
        if jwk is None:
            raise AuthTokenValidationError("Signing key not found.")
        return jwt.PyJWK.from_json(json.dumps(jwk), algorithm=algorithm).key

    def verify(self, token: str) -> dict:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.PyJWTError as exc:
            raise AuthTokenValidationError("Malformed token.") from exc
        algorithm = str(header.get("alg") or "").upper()
        if algorithm not in self.algorithms:
            raise AuthTokenValidationError(f"Token algorithm '{algorithm}' is not allowed.")

        key = self._signing_key(token, algorithm)
        options = {
            "require": ["exp", "sub"],
            "verify_aud": bool(self.audience),
            "verify_iss": bool(self.issuer),
        }
        try:
            return jwt.decode(
                token,
                key=key,
                algorithms=[algorithm],
                audience=self.audience or None,
                issuer=self.issuer or None,
                leeway=self.leeway_sec,
                options=options,
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthTokenValidationError("Token has expired.") from exc
        except jwt.PyJWTError as exc:
            raise AuthTokenValidationError(f"Invalid token: {exc}") from exc
