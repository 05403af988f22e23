"""Shared HTTP helpers for remote API clients.

Translates non-2xx httpx responses into the engine's remote error taxonomy
so the retry executor can classify them without knowing the provider.
"""

import httpx

from secretsync.errors import RemoteRejectedError, RemoteTransientError


def parse_retry_after(headers: httpx.Headers) -> int | None:
    """Return the retry-after header in whole seconds, if present and numeric."""
    raw = headers.get("retry-after")
    if raw is None:
        return None
    try:
        return max(0, int(raw.strip()))
    except ValueError:
        return None


def _error_detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200] or resp.reason_phrase
    if isinstance(body, dict):
        if body.get("message"):
            return str(body["message"])
        errors = body.get("errors")
        if isinstance(errors, list) and errors and isinstance(errors[0], dict):
            return str(errors[0].get("message", resp.reason_phrase))
    return resp.reason_phrase


def raise_for_status(resp: httpx.Response, service: str, action: str) -> None:
    """Raise RemoteTransientError / RemoteRejectedError for a failed response."""
    if resp.is_success:
        return

    status = resp.status_code
    message = f"{service} {action} failed ({status}): {_error_detail(resp)}"
    headers = {k.lower(): v for k, v in resp.headers.items()}

    if status == 429 or status >= 500:
        raise RemoteTransientError(
            message,
            status_code=status,
            retry_after=parse_retry_after(resp.headers) if status == 429 else None,
            headers=headers,
        )
    raise RemoteRejectedError(message, status_code=status, headers=headers)
