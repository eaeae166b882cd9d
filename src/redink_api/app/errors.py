"""Error types and provider error classification.

Beginner terms:
- Configuration error: the provider cannot even be built (missing key/URL).
- Provider call error: the provider was reachable but the call failed.
- Classification: mapping a raw failure to a short explanation + remedy.

Classification prefers structured HTTP status codes. Some SDKs only expose a
free-text message, so substring matching is kept as a last-resort heuristic;
its results are best effort, not a contract.
"""

from __future__ import annotations

from typing import Literal

import httpx

ErrorKind = Literal[
    "auth",
    "permission",
    "not_found",
    "rate_limit",
    "safety",
    "bad_response",
    "stream_timeout",
    "timeout",
    "server",
    "unknown",
]


class ProviderConfigError(ValueError):
    """Provider settings are missing or invalid. Raised at construction time."""


class ProviderCallError(RuntimeError):
    """A single provider call failed."""

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind = "unknown",
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class StreamTimeoutError(ProviderCallError):
    """A streaming response exceeded its chunk budget without a stop marker."""

    def __init__(self, message: str) -> None:
        super().__init__(message, kind="stream_timeout")


_STATUS_KINDS: dict[int, ErrorKind] = {
    401: "auth",
    403: "permission",
    404: "not_found",
    429: "rate_limit",
}

# Ordered; first match wins.
_MESSAGE_HINTS: list[tuple[tuple[str, ...], ErrorKind]] = [
    (("401", "unauthenticated", "unauthorized", "api key", "api_key"), "auth"),
    (("403", "permission_denied", "forbidden"), "permission"),
    (("404", "not_found", "not found"), "not_found"),
    (("429", "resource_exhausted", "quota", "rate limit"), "rate_limit"),
    (("safety", "blocked"), "safety"),
    (("timeout", "timed out"), "timeout"),
]

_EXPLANATIONS: dict[ErrorKind, str] = {
    "auth": (
        "API key authentication failed.\n"
        "Possible causes: the key is invalid, expired, or copied with extra spaces.\n"
        "Fix: re-enter the API key for this provider in the settings page."
    ),
    "permission": (
        "Permission denied.\n"
        "Possible causes: the key has no access to this model or the project quota is restricted.\n"
        "Fix: check the provider console permissions or choose another model."
    ),
    "not_found": (
        "Model or endpoint not found.\n"
        "Possible causes: the model name is misspelled, retired, or the base_url is wrong.\n"
        "Fix: verify the model name and the base_url/endpoint_type settings."
    ),
    "rate_limit": (
        "Rate limit or quota exceeded.\n"
        "Fix: wait 1-2 minutes, check quota usage, or disable high-concurrency mode."
    ),
    "safety": (
        "The request was blocked by the provider's safety filter.\n"
        "Fix: rephrase the prompt with more neutral wording."
    ),
    "timeout": (
        "The provider did not answer in time.\n"
        "Fix: check network connectivity and retry."
    ),
    "stream_timeout": (
        "The streaming response never finished.\n"
        "Fix: retry; if it keeps happening, the endpoint may not support this model."
    ),
    "server": (
        "The provider returned a server error.\n"
        "Fix: the service may be temporarily unavailable; retry later."
    ),
    "bad_response": "The provider returned a response that could not be parsed.",
    "unknown": "The provider call failed.",
}


def status_code_of(exc: BaseException) -> int | None:
    """Extract an HTTP-like status code from known exception shapes."""
    if isinstance(exc, ProviderCallError) and exc.status_code is not None:
        return exc.status_code
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    # google-genai APIError carries `code`; other SDKs use `status_code`.
    for attr in ("status_code", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    return None


def classify_provider_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, ProviderCallError) and exc.kind != "unknown":
        return exc.kind
    if isinstance(exc, httpx.TimeoutException):
        return "timeout"

    status_code = status_code_of(exc)
    if status_code is not None:
        if status_code in _STATUS_KINDS:
            return _STATUS_KINDS[status_code]
        if status_code >= 500:
            return "server"

    # Heuristic fallback for SDK errors that only carry text.
    text = str(exc).lower()
    for needles, kind in _MESSAGE_HINTS:
        if any(needle in text for needle in needles):
            return kind
    return "unknown"


def describe_provider_error(exc: BaseException, *, provider: str = "") -> str:
    """Human-readable explanation with probable cause and remedy."""
    kind = classify_provider_error(exc)
    header = f"[{provider}] " if provider else ""
    explanation = _EXPLANATIONS[kind]
    if kind in ("unknown", "bad_response", "server"):
        return f"{header}{explanation}\nOriginal error: {str(exc)[:500]}"
    return f"{header}{explanation}"
