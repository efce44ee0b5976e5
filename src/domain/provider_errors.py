from __future__ import annotations

from typing import Any, Literal


ProviderErrorCode = Literal[
    "RATE_LIMITED",
    "RETRYABLE",
    "INVALID_CREDENTIAL",
    "TEMPLATE_PARAM_MISMATCH",
    "BAD_REQUEST",
    "UNKNOWN",
]

_TRANSIENT_CODES = {"RATE_LIMITED", "RETRYABLE"}


class ProviderSendError(Exception):
    """Base failure raised by provider send calls."""

    provider = "unknown"

    def __init__(
        self,
        message: str,
        *,
        code: str = "UNKNOWN",
        status_code: int | None = None,
        retry_after_seconds: float | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.status_code = status_code
        self.retry_after_seconds = retry_after_seconds
        self.details = details

    @property
    def category(self) -> str:
        return "transient" if self.code in _TRANSIENT_CODES else "terminal"

    @property
    def retryable(self) -> bool:
        return self.category == "transient"


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def looks_like_template_mismatch(text: str) -> bool:
    lowered = text.lower()
    return "template" in lowered or "parameter" in lowered or "component" in lowered
