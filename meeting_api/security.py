from __future__ import annotations

from typing import Optional

import httpx
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger
from pydantic import BaseModel

from .config import Settings, settings
from .errors import AuthError

bearer_scheme = HTTPBearer(auto_error=False)


class AuthUser(BaseModel):
    id: str
    email: Optional[str] = None
    name: Optional[str] = None


def _user_from_claims(claims: dict) -> AuthUser:
    metadata = claims.get("user_metadata") or {}
    return AuthUser(
        id=str(claims.get("sub") or claims.get("id")),
        email=claims.get("email"),
        name=metadata.get("full_name") or metadata.get("name"),
    )


class IdentityClient:
    """Verifies bearer tokens issued by the Supabase auth service.

    With a JWT secret configured, tokens are checked locally; otherwise each
    token is looked up through the auth REST API.
    """

    def __init__(
        self,
        base_url: str,
        service_key: str,
        jwt_secret: str = "",
        audience: str = "authenticated",
        timeout: float = 30.0,
        http: Optional[httpx.Client] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.service_key = service_key
        self.jwt_secret = jwt_secret
        self.audience = audience
        self.http = http or httpx.Client(timeout=httpx.Timeout(timeout, connect=10.0))

    @classmethod
    def from_settings(cls, cfg: Settings) -> "IdentityClient":
        return cls(
            cfg.supabase_url,
            cfg.supabase_service_key,
            jwt_secret=cfg.supabase_jwt_secret,
            audience=cfg.supabase_jwt_audience,
            timeout=cfg.http_timeout_sec,
        )

    def verify(self, token: str) -> AuthUser:
        if not token:
            raise AuthError("No authorization token provided")
        if self.jwt_secret:
            return self._verify_jwt(token)
        return self._fetch_user(token)

    def _verify_jwt(self, token: str) -> AuthUser:
        try:
            claims = jwt.decode(token, self.jwt_secret, algorithms=["HS256"], audience=self.audience)
        except jwt.PyJWTError as exc:
            logger.bind(tag="auth").info(f"token rejected: {exc}")
            raise AuthError("Invalid or expired token") from exc
        if not claims.get("sub"):
            raise AuthError("Invalid or expired token")
        return _user_from_claims(claims)

    def _fetch_user(self, token: str) -> AuthUser:
        if not self.base_url:
            logger.bind(tag="auth").error("identity provider is not configured")
            raise AuthError("Invalid or expired token")
        try:
            resp = self.http.get(
                f"{self.base_url}/auth/v1/user",
                headers={"Authorization": f"Bearer {token}", "apikey": self.service_key},
            )
        except httpx.HTTPError as exc:
            logger.bind(tag="auth").error(f"identity provider unreachable: {exc!r}")
            raise AuthError("Authentication failed") from exc
        if resp.status_code != 200:
            raise AuthError("Invalid or expired token")
        data = resp.json()
        if not data.get("id"):
            raise AuthError("Invalid or expired token")
        return _user_from_claims(data)

    def sign_out(self, token: str) -> None:
        if not self.base_url:
            return
        try:
            self.http.post(
                f"{self.base_url}/auth/v1/logout",
                headers={"Authorization": f"Bearer {token}", "apikey": self.service_key},
            )
        except httpx.HTTPError as exc:
            logger.bind(tag="auth").warning(f"logout call failed: {exc!r}")


_identity: Optional[IdentityClient] = None


def get_identity() -> IdentityClient:
    global _identity
    if _identity is None:
        _identity = IdentityClient.from_settings(settings)
    return _identity


def get_bearer_token(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme)) -> str:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthError("No authorization token provided")
    return credentials.credentials


def get_current_user(
    token: str = Depends(get_bearer_token),
    identity: IdentityClient = Depends(get_identity),
) -> AuthUser:
    return identity.verify(token)
