from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from thesis_validator.errors import ApiError, NotFoundError

ROLE_RANKS: dict[str, int] = {"viewer": 1, "editor": 2, "owner": 3}

REDACTED = "***REDACTED***"
_SENSITIVE_KEYS = frozenset({"authorization", "token", "secret", "password", "api_key", "apikey", "access_token"})
_SECRET_MARKERS = ("sk-", "bearer ", "token")


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    return default if not raw else raw in {"1", "true", "yes", "on"}


def _csv(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


def _unauthorized(message: str) -> ApiError:
    return ApiError(
        code="AUTH_UNAUTHORIZED",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=401,
    )


def _forbidden(message: str) -> ApiError:
    return ApiError(
        code="AUTH_FORBIDDEN",
        message=message,
        error_class="security_sensitive",
        retryable=False,
        http_status=403,
    )


def redact_sensitive(value: object) -> object:
    """Mask credential-looking keys and values before they reach a log line."""
    if isinstance(value, dict):
        return {
            str(key): REDACTED if str(key).lower() in _SENSITIVE_KEYS else redact_sensitive(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact_sensitive(item) for item in value]
    if isinstance(value, str) and len(value) >= 24:
        lowered = value.lower()
        if any(marker in lowered for marker in _SECRET_MARKERS):
            return REDACTED
    return value


@dataclass
class AuthContext:
    subject: str
    claims: dict[str, Any]


@dataclass
class JwtSecurityConfig:
    enabled: bool
    issuer: str
    audience: str
    shared_secret: str
    required_claims: list[str] = field(default_factory=lambda: ["sub", "exp"])
    log_redaction_enabled: bool = True
    trace_id_strict_required: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "JwtSecurityConfig":
        env = os.environ if environ is None else environ
        issuer = str(env.get("JWT_ISSUER", "")).strip()
        audience = str(env.get("JWT_AUDIENCE", "")).strip()
        shared_secret = str(env.get("JWT_SHARED_SECRET", "")).strip()
        return cls(
            enabled=any((issuer, audience, shared_secret)),
            issuer=issuer,
            audience=audience,
            shared_secret=shared_secret,
            required_claims=_csv(str(env.get("JWT_REQUIRED_CLAIMS", "sub,exp"))),
            log_redaction_enabled=_flag(env, "SECURITY_LOG_REDACTION_ENABLED", True),
            trace_id_strict_required=_flag(env, "TRACE_ID_STRICT_REQUIRED", False),
        )


# ---------------------------------------------------------------------------
# HS256 compact tokens
# ---------------------------------------------------------------------------


def _segment_bytes(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _segment_json(segment: str) -> dict[str, Any]:
    try:
        decoded = json.loads(_segment_bytes(segment))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise _unauthorized("invalid token payload") from None
    if not isinstance(decoded, dict):
        raise _unauthorized("invalid token payload")
    return decoded


def _hs256_signature(secret: str, signing_input: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), signing_input.encode("ascii"), hashlib.sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


def _numeric_claim(claims: Mapping[str, Any], name: str) -> int | None:
    value = claims.get(name)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _audiences(claims: Mapping[str, Any]) -> set[str]:
    aud = claims.get("aud")
    if isinstance(aud, list):
        return {str(x) for x in aud}
    return {str(aud)} if aud else set()


def _check_registered_claims(claims: Mapping[str, Any], cfg: JwtSecurityConfig) -> None:
    now = int(time.time())
    expires = _numeric_claim(claims, "exp")
    if expires is None or expires <= now:
        raise _unauthorized("token expired")
    not_before = _numeric_claim(claims, "nbf")
    if not_before is not None and not_before > now:
        raise _unauthorized("token not yet valid")
    if cfg.issuer and str(claims.get("iss", "")) != cfg.issuer:
        raise _unauthorized("jwt issuer mismatch")
    if cfg.audience and cfg.audience not in _audiences(claims):
        raise _unauthorized("jwt audience mismatch")


def _check_required(claims: Mapping[str, Any], required: Iterable[str]) -> None:
    missing = next((name for name in required if name not in claims), None)
    if missing is not None:
        raise _unauthorized(f"missing required claim: {missing}")


def validate_token(token: str, *, cfg: JwtSecurityConfig) -> AuthContext:
    if not token:
        raise _unauthorized("empty bearer token")
    segments = token.split(".")
    if len(segments) != 3:
        raise _unauthorized("invalid token format")
    header = _segment_json(segments[0])
    claims = _segment_json(segments[1])
    if str(header.get("alg", "")).upper() != "HS256":
        raise _unauthorized("unsupported jwt algorithm")
    if not cfg.shared_secret:
        raise _unauthorized("jwt shared secret not configured")
    expected = _hs256_signature(cfg.shared_secret, f"{segments[0]}.{segments[1]}")
    if not hmac.compare_digest(expected, segments[2]):
        raise _unauthorized("invalid token signature")

    _check_registered_claims(claims, cfg)
    _check_required(claims, cfg.required_claims)

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise _unauthorized("missing subject claim")
    return AuthContext(subject=subject, claims=claims)


def parse_and_validate_bearer_token(*, authorization: str | None, cfg: JwtSecurityConfig) -> AuthContext:
    if not authorization:
        raise _unauthorized("missing Authorization bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme != "Bearer" or not token:
        raise _unauthorized("invalid Authorization header")
    return validate_token(token.strip(), cfg=cfg)


def require_engagement_role(
    *,
    engagements: Any,
    engagement_id: str,
    subject: str,
    minimum: str,
) -> dict[str, Any]:
    """Resolve the engagement first, then check the caller's role on it."""
    engagement = engagements.get(engagement_id=engagement_id)
    if engagement is None:
        raise NotFoundError(f"engagement not found: {engagement_id}", code="ENGAGEMENT_NOT_FOUND")
    role = engagements.member_role(engagement_id=engagement_id, subject=subject)
    if ROLE_RANKS.get(role or "", 0) < ROLE_RANKS[minimum]:
        raise _forbidden(f"{minimum} role required on engagement {engagement_id}")
    return engagement
