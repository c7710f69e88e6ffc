"""Webhook target URL validation.

Rejects anything that is not an absolute http(s) URL, and, for URLs that
came from user input, hostnames outside the configured allow-list.
Returns the canonical form that callers must use from then on.
"""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from urllib.parse import urlsplit, urlunsplit

_ALLOWED_SCHEMES = ("http", "https")
_DEFAULT_PORTS = {"http": 80, "https": 443}


class ValidationErrorKind(str, Enum):
    INVALID_FORMAT = "invalid_format"
    UNSUPPORTED_PROTOCOL = "unsupported_protocol"
    DOMAIN_NOT_ALLOWED = "domain_not_allowed"


class WebhookURLError(ValueError):
    """Raised when a webhook URL fails validation. Never retried."""

    def __init__(self, kind: ValidationErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


def validate_webhook_url(
    url: str,
    *,
    is_custom: bool = False,
    allowed_domains: Iterable[str] = (),
) -> str:
    """Validate ``url`` and return its canonical string form."""
    raw = (url or "").strip()
    try:
        parts = urlsplit(raw)
        port = parts.port
    except ValueError as exc:
        raise WebhookURLError(
            ValidationErrorKind.INVALID_FORMAT, f"Invalid URL format: {exc}",
        ) from exc

    if not parts.scheme:
        raise WebhookURLError(ValidationErrorKind.INVALID_FORMAT, "Invalid URL format")

    scheme = parts.scheme.lower()
    if scheme not in _ALLOWED_SCHEMES:
        raise WebhookURLError(
            ValidationErrorKind.UNSUPPORTED_PROTOCOL,
            f"Unsupported protocol '{scheme}': only http and https are allowed",
        )

    hostname = parts.hostname
    if not hostname or any(c.isspace() for c in raw):
        raise WebhookURLError(ValidationErrorKind.INVALID_FORMAT, "Invalid URL format")

    domains = {d.strip().lower() for d in allowed_domains if d and d.strip()}
    if is_custom and domains and hostname not in domains:
        raise WebhookURLError(
            ValidationErrorKind.DOMAIN_NOT_ALLOWED,
            f"Domain '{hostname}' is not in the allowed webhook domains",
        )

    return _canonicalize(scheme, parts.username, parts.password, hostname, port,
                         parts.path, parts.query, parts.fragment)


def is_valid_url_format(url: str) -> bool:
    """True when ``url`` is an absolute http(s) URL (no allow-list check)."""
    try:
        validate_webhook_url(url)
    except WebhookURLError:
        return False
    return True


def _canonicalize(
    scheme: str,
    username: str | None,
    password: str | None,
    hostname: str,
    port: int | None,
    path: str,
    query: str,
    fragment: str,
) -> str:
    host = f"[{hostname}]" if ":" in hostname else hostname
    if port is not None and port != _DEFAULT_PORTS[scheme]:
        host = f"{host}:{port}"
    if username:
        creds = username if password is None else f"{username}:{password}"
        host = f"{creds}@{host}"
    return urlunsplit((scheme, host, path or "/", query, fragment))
