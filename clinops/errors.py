"""Exception hierarchy shared by the job pipeline."""

from __future__ import annotations

from typing import Optional


class ClinopsError(Exception):
    """Base class for errors raised by clinops."""


class EHRError(ClinopsError):
    """Raised when a call to the upstream EHR fails."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EHRAuthError(EHRError):
    """Upstream rejected the credentials or token (401/403)."""


class EHRNotFoundError(EHRError):
    """Upstream resource does not exist (404)."""


class EHRTransientError(EHRError):
    """Upstream timed out, reset the connection or answered with a 5xx."""


class AIProviderError(ClinopsError):
    """Raised when the AI provider call itself fails.

    Malformed model output is not an ``AIProviderError``; it is absorbed into
    a degraded check result by :mod:`clinops.analysis`.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        transient: bool = False,
        check_type: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transient = transient
        self.check_type = check_type


class TokenExhaustedError(ClinopsError):
    """Cached token, refresh exchange and full login all failed."""


class RetryExhaustedError(ClinopsError):
    """A transient failure kept recurring past the configured attempt limit."""

    def __init__(self, message: str, *, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class IneligibleItemError(ClinopsError):
    """The work item can never be processed (missing ids, outside window)."""


__all__ = [
    "ClinopsError",
    "EHRError",
    "EHRAuthError",
    "EHRNotFoundError",
    "EHRTransientError",
    "AIProviderError",
    "TokenExhaustedError",
    "RetryExhaustedError",
    "IneligibleItemError",
]
