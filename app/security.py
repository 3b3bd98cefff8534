from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from app.errors import ApiError

BEARER_SCHEME = "bearer"
SIGNING_ALGORITHM = "HS256"
REDACTED = "***REDACTED***"

# Header and payload keys whose values never reach the logs. Customer phones
# are personal data, so they are masked alongside credentials.
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "x-api-key",
        "token",
        "access_token",
        "secret",
        "password",
        "phone",
    }
)
SECRET_PREFIXES = ("bearer ", "basic ", "eyj")


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _json_segment(segment: str) -> dict[str, Any]:
    try:
        decoded = json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))
    except (ValueError, TypeError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(decoded, dict):
        raise _unauthorized("invalid token payload")
    return decoded


def _timestamp(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def redact_sensitive(value: object) -> object:
    """Mask credentials and phone numbers in a header/payload structure before logging."""
    if isinstance(value, Mapping):
        return {
            str(key): REDACTED if str(key).lower() in SENSITIVE_KEYS else redact_sensitive(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_sensitive(item) for item in value]
    if isinstance(value, str) and value.strip().lower().startswith(SECRET_PREFIXES):
        return REDACTED
    return value


@dataclass(frozen=True)
class AuthContext:
    """Verified merchant identity. ``tenant_id`` is the raw claim; the tenant
    resolver decides whether it is a usable tenant id."""

    tenant_id: Any
    subject: str
    role: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: tuple[str, ...]
    tenant_claim: str = "tenant_id"
    role_claim: str = "role"
    leeway_seconds: int = 0
    log_redaction_enabled: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> JwtSecurityConfig:
        env = os.environ if environ is None else environ

        def read(name: str, default: str = "") -> str:
            return env.get(name, default).strip()

        issuer, audience, secret = read("JWT_ISSUER"), read("JWT_AUDIENCE"), read("JWT_SHARED_SECRET")
        required = read("JWT_REQUIRED_CLAIMS", "tenant_id,sub,exp")
        leeway = _timestamp(read("JWT_LEEWAY_SECONDS", "0"))
        redaction = read("SECURITY_LOG_REDACTION_ENABLED", "true").lower()
        return cls(
            enabled=bool(issuer or audience or secret),
            issuer=issuer,
            audience=audience,
            shared_secret=secret,
            required_claims=tuple(name.strip() for name in required.split(",") if name.strip()),
            tenant_claim=read("JWT_TENANT_CLAIM") or "tenant_id",
            role_claim=read("JWT_ROLE_CLAIM") or "role",
            leeway_seconds=leeway or 0,
            log_redaction_enabled=redaction in {"1", "true", "yes", "on"},
        )


def _bearer_token(authorization: str | None) -> str:
    scheme, _, credentials = (authorization or "").strip().partition(" ")
    if scheme.lower() != BEARER_SCHEME:
        raise _unauthorized("missing Authorization bearer token")
    token = credentials.strip()
    if not token:
        raise _unauthorized("empty bearer token")
    return token


def _verified_claims(token: str, cfg: JwtSecurityConfig) -> dict[str, Any]:
    segments = token.split(".")
    if len(segments) != 3:
        raise _unauthorized("invalid token format")
    header_raw, payload_raw, signature = segments
    header = _json_segment(header_raw)
    if str(header.get("alg", "")).upper() != SIGNING_ALGORITHM:
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    digest = hmac.new(cfg.shared_secret.encode("utf-8"), f"{header_raw}.{payload_raw}".encode("ascii"), hashlib.sha256)
    if not hmac.compare_digest(_b64url(digest.digest()), signature):
        raise _unauthorized("invalid token signature")
    return _json_segment(payload_raw)


def _check_claims(claims: dict[str, Any], cfg: JwtSecurityConfig) -> None:
    now = int(datetime.now(UTC).timestamp())
    expires = _timestamp(claims.get("exp"))
    if expires is None or expires + cfg.leeway_seconds <= now:
        raise _unauthorized("token expired")
    not_before = _timestamp(claims.get("nbf"))
    if not_before is not None and not_before - cfg.leeway_seconds > now:
        raise _unauthorized("token not yet valid")

    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience:
        audience = claims.get("aud")
        accepted = {str(a) for a in audience} if isinstance(audience, list) else {str(audience or "")}
        if cfg.audience not in accepted:
            raise _unauthorized("jwt audience mismatch")

    missing = [name for name in cfg.required_claims if name not in claims]
    if missing:
        raise _unauthorized(f"missing required claim: {missing[0]}")


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    claims = _verified_claims(_bearer_token(authorization), cfg)
    _check_claims(claims, cfg)
    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise _unauthorized("missing subject claim")
    role = claims.get(cfg.role_claim)
    return AuthContext(
        tenant_id=claims.get(cfg.tenant_claim),
        subject=subject,
        role=None if role is None else str(role),
        claims=claims,
    )


def authenticate_request(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext | None:
    """Identity is optional: public storefront and tracking calls carry none.

    A presented token must still be valid.
    """
    if not cfg.enabled or not authorization:
        return None
    return parse_and_validate_bearer_token(authorization=authorization, cfg=cfg)
