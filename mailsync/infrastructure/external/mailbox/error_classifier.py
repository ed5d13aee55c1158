"""Error classifier: maps raw provider failures onto the fixed error taxonomy.

classify_provider_error is pure: it only inspects the exception (status
code, provider error body, Retry-After style headers) and never touches
state. The token lifecycle manager and sync executor act on its result.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timedelta
from typing import Any

import aiosmtplib
import httpx
from aioimaplib.aioimaplib import Abort as ImapAbort
from aioimaplib.aioimaplib import CommandTimeout as ImapCommandTimeout
from googleapiclient.errors import HttpError

from mailsync.domain.entities.classified_error import ClassifiedError
from mailsync.domain.enums import ErrorCategory
from mailsync.domain.exceptions import (
    AuthRevokedException,
    ProviderCredentialError,
    UnsupportedCapabilityException,
)
from mailsync.infrastructure.external.mailbox.oauth_drivers import TokenRefreshError
from mailsync.infrastructure.external.mailbox.providers.imap_errors import ImapCommandError
from mailsync.shared.utils.datetime import parse_http_date, utc_now

# Google API error reasons that mean "slow down" even when sent as 403.
GOOGLE_RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "RATE_LIMIT_EXCEEDED"}
)
# Microsoft Graph error codes used for throttling.
GRAPH_THROTTLE_CODES = frozenset(
    {"TooManyRequests", "ApplicationThrottled", "MailboxConcurrency", "activityLimitReached"}
)
# OAuth error codes after which the stored grant can never work again.
REVOKED_GRANT_ERRORS = frozenset(
    {"invalid_grant", "interaction_required", "unauthorized_client", "consent_required"}
)
# Microsoft AADSTS codes: expired/revoked refresh token, consent withdrawn, user disabled.
REVOKED_AADSTS_CODES = frozenset({50173, 54005, 65001, 70000, 70008, 700082, 50057})


def classify_provider_error(
    error: BaseException, *, now: datetime | None = None
) -> ClassifiedError:
    """Classify any adapter-layer or refresh failure.

    Args:
        error: The raw exception raised by an adapter, client library or driver.
        now: Reference time for HTTP-date Retry-After values (defaults to utc_now()).

    Returns:
        ClassifiedError with category and, when available, retry_after.
    """
    if isinstance(error, ProviderCredentialError):
        return error.classified
    if isinstance(error, AuthRevokedException):
        return ClassifiedError(ErrorCategory.AUTH_REVOKED, error.reason)
    if isinstance(error, TokenRefreshError):
        return _classify_token_refresh(error, now)
    if isinstance(error, HttpError):
        return _classify_google_http_error(error, now)
    if isinstance(error, httpx.HTTPStatusError):
        return _classify_response(
            error.response.status_code,
            error.response.headers,
            _json_or_none(error.response.content),
            now,
        )
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return ClassifiedError(ErrorCategory.TRANSIENT, f"network error: {error!r}")
    if isinstance(error, ImapCommandError):
        return _classify_imap(error)
    if isinstance(error, aiosmtplib.SMTPException):
        return _classify_smtp(error)
    if isinstance(error, (ImapAbort, ImapCommandTimeout, TimeoutError, OSError)):
        return ClassifiedError(ErrorCategory.TRANSIENT, f"connection failure: {error!r}")
    if isinstance(error, UnsupportedCapabilityException):
        return ClassifiedError(
            ErrorCategory.PERMANENT, error.message, provider_code=error.error_code
        )
    return ClassifiedError(
        ErrorCategory.PERMANENT, f"unclassified {type(error).__name__}: {error}"
    )


def parse_retry_after(
    headers: Mapping[str, str] | None, now: datetime | None = None
) -> timedelta | None:
    """Read a retry hint from Retry-After (seconds or HTTP-date) or x-ms-retry-after-ms."""
    if not headers:
        return None
    lowered = {str(k).lower(): v for k, v in headers.items()}
    millis = lowered.get("x-ms-retry-after-ms")
    if millis:
        try:
            return timedelta(milliseconds=max(0, int(millis)))
        except ValueError:
            pass
    value = lowered.get("retry-after")
    if not value:
        return None
    value = str(value).strip()
    if value.isdigit():
        return timedelta(seconds=int(value))
    at = parse_http_date(value)
    if at is None:
        return None
    return max(timedelta(0), at - (now or utc_now()))


def _json_or_none(content: bytes | str | None) -> Any:
    if not content:
        return None
    try:
        return json.loads(content)
    except (ValueError, UnicodeDecodeError):
        return None


def _error_codes(body: Any) -> set[str]:
    """Collect provider error identifiers from Google, Graph and OAuth error bodies."""
    codes: set[str] = set()
    if not isinstance(body, dict):
        return codes
    err = body.get("error")
    if isinstance(err, str):
        codes.add(err)
    elif isinstance(err, dict):
        for key in ("code", "status"):
            if isinstance(err.get(key), str):
                codes.add(err[key])
        for item in err.get("errors") or []:
            if isinstance(item, dict) and item.get("reason"):
                codes.add(str(item["reason"]))
        inner = err.get("innerError") or err.get("innererror")
        if isinstance(inner, dict) and isinstance(inner.get("code"), str):
            codes.add(inner["code"])
    return codes


def _classify_response(
    status: int,
    headers: Mapping[str, str] | None,
    body: Any,
    now: datetime | None,
) -> ClassifiedError:
    codes = _error_codes(body)
    code = sorted(codes)[0] if codes else None
    retry_after = parse_retry_after(headers, now)
    message = f"HTTP {status}"
    if codes & REVOKED_GRANT_ERRORS and status in (400, 401):
        return ClassifiedError(ErrorCategory.AUTH_REVOKED, message, status, "invalid_grant")
    if status == 401:
        return ClassifiedError(ErrorCategory.AUTH_EXPIRED, message, status, code)
    if status == 429 or codes & GRAPH_THROTTLE_CODES:
        return ClassifiedError(ErrorCategory.RATE_LIMITED, message, status, code, retry_after)
    if status == 403 and codes & GOOGLE_RATE_LIMIT_REASONS:
        return ClassifiedError(ErrorCategory.RATE_LIMITED, message, status, code, retry_after)
    if status == 503 and retry_after is not None:
        return ClassifiedError(ErrorCategory.RATE_LIMITED, message, status, code, retry_after)
    if status >= 500 or status == 408:
        return ClassifiedError(ErrorCategory.TRANSIENT, message, status, code, retry_after)
    return ClassifiedError(ErrorCategory.PERMANENT, message, status, code)


def _classify_google_http_error(error: HttpError, now: datetime | None) -> ClassifiedError:
    status = int(getattr(error.resp, "status", 0) or 0)
    headers = {str(k): str(v) for k, v in dict(error.resp or {}).items()}
    return _classify_response(status, headers, _json_or_none(error.content), now)


def _classify_token_refresh(error: TokenRefreshError, now: datetime | None) -> ClassifiedError:
    code = error.error or None
    message = error.description or str(error)
    if (code in REVOKED_GRANT_ERRORS) or (set(error.error_codes) & REVOKED_AADSTS_CODES):
        return ClassifiedError(ErrorCategory.AUTH_REVOKED, message, error.status_code, code)
    if error.status_code == 429:
        retry_after = parse_retry_after(
            {"Retry-After": error.retry_after} if error.retry_after else None, now
        )
        return ClassifiedError(
            ErrorCategory.RATE_LIMITED, message, error.status_code, code, retry_after
        )
    if code == "temporarily_unavailable" or (error.status_code or 0) >= 500:
        return ClassifiedError(ErrorCategory.TRANSIENT, message, error.status_code, code)
    if error.status_code is None and code is None:
        return ClassifiedError(ErrorCategory.TRANSIENT, message)
    return ClassifiedError(ErrorCategory.PERMANENT, message, error.status_code, code)


def _classify_imap(error: ImapCommandError) -> ClassifiedError:
    text = error.text.upper()
    if error.command == "LOGIN" or "AUTHENTICATIONFAILED" in text or "AUTHORIZATIONFAILED" in text:
        if "UNAVAILABLE" in text or "[INUSE]" in text:
            return ClassifiedError(ErrorCategory.TRANSIENT, error.text, provider_code="UNAVAILABLE")
        return ClassifiedError(
            ErrorCategory.AUTH_REVOKED, error.text, provider_code="AUTHENTICATIONFAILED"
        )
    if "[THROTTLED]" in text or "[LIMIT]" in text:
        return ClassifiedError(ErrorCategory.RATE_LIMITED, error.text, provider_code="THROTTLED")
    if "[UNAVAILABLE]" in text or "[INUSE]" in text or error.result == "BYE":
        return ClassifiedError(ErrorCategory.TRANSIENT, error.text, provider_code=error.result)
    return ClassifiedError(ErrorCategory.PERMANENT, error.text, provider_code=error.result)


def _classify_smtp(error: aiosmtplib.SMTPException) -> ClassifiedError:
    if isinstance(error, aiosmtplib.SMTPAuthenticationError):
        return ClassifiedError(
            ErrorCategory.AUTH_REVOKED, error.message, error.code, "SMTP_AUTH"
        )
    if isinstance(
        error,
        (
            aiosmtplib.SMTPConnectError,
            aiosmtplib.SMTPServerDisconnected,
            aiosmtplib.SMTPTimeoutError,
        ),
    ):
        return ClassifiedError(ErrorCategory.TRANSIENT, str(error), provider_code="SMTP_CONNECTION")
    code = getattr(error, "code", None)
    if isinstance(code, int):
        if code == 421 or 450 <= code < 500:
            return ClassifiedError(ErrorCategory.TRANSIENT, str(error), code, "SMTP_TEMPORARY")
        return ClassifiedError(ErrorCategory.PERMANENT, str(error), code, "SMTP_REJECTED")
    return ClassifiedError(ErrorCategory.TRANSIENT, str(error), provider_code="SMTP")
