"""Error taxonomy for the infrastructure flow.

Every error the flow hands back to its host is an :class:`InfraFlowError`
carrying zero or more :class:`ErrorCode` values.  The host classifies an
error as fatal when any of its codes is in :data:`FATAL_CODES`; everything
else is retried after the host's own backoff.

Exit codes (CLI)::

    0  success
    1  retryable failure (transient remote error, step timeout)
    2  configuration failure (fatal, retrying cannot help)
    3  cancelled
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable, List, Optional, Pattern, Tuple

# Exit codes
EXIT_SUCCESS = 0
EXIT_RETRYABLE_FAILURE = 1
EXIT_CONFIGURATION_FAILURE = 2
EXIT_CANCELLED = 3


class ErrorCode(str, Enum):
    """Machine-readable error codes understood by the hosting framework."""

    INFRA_UNAUTHENTICATED = "ERR_INFRA_UNAUTHENTICATED"
    INFRA_UNAUTHORIZED = "ERR_INFRA_UNAUTHORIZED"
    INFRA_QUOTA_EXCEEDED = "ERR_INFRA_QUOTA_EXCEEDED"
    INFRA_DEPENDENCIES = "ERR_INFRA_DEPENDENCIES"
    CONFIGURATION_PROBLEM = "ERR_CONFIGURATION_PROBLEM"
    RETRYABLE_INFRA_DEPENDENCIES = "ERR_RETRYABLE_INFRA_DEPENDENCIES"


#: Codes that make an error non-retryable.
FATAL_CODES = frozenset({
    ErrorCode.INFRA_UNAUTHENTICATED,
    ErrorCode.INFRA_UNAUTHORIZED,
    ErrorCode.INFRA_QUOTA_EXCEEDED,
    ErrorCode.INFRA_DEPENDENCIES,
    ErrorCode.CONFIGURATION_PROBLEM,
})

#: Message patterns mapped to codes for errors that arrive without any.
KNOWN_CODES: List[Tuple[ErrorCode, Pattern[str]]] = [
    (
        ErrorCode.INFRA_UNAUTHENTICATED,
        re.compile(r"(?i)(unauthenticated|AuthFailure|invalid (access )?token|status code 401)"),
    ),
    (
        ErrorCode.INFRA_UNAUTHORIZED,
        re.compile(r"(?i)(forbidden|not authorized|UnauthorizedOperation|status code 403)"),
    ),
    (
        ErrorCode.INFRA_QUOTA_EXCEEDED,
        re.compile(r"(?i)(quota exceeded|LimitExceeded|quota limit)"),
    ),
    (
        ErrorCode.RETRYABLE_INFRA_DEPENDENCIES,
        re.compile(r"(?i)(DependencyViolation|still in use|ResourceInUse)"),
    ),
]


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------


class InfraFlowError(Exception):
    """Base class for all errors raised by the flow."""

    default_codes: Tuple[ErrorCode, ...] = ()

    def __init__(self, message: str, *, codes: Optional[Iterable[ErrorCode]] = None) -> None:
        super().__init__(message)
        self.codes: Tuple[ErrorCode, ...] = (
            tuple(codes) if codes is not None else self.default_codes
        )

    @property
    def retryable(self) -> bool:
        return not any(c in FATAL_CODES for c in determine_error_codes(self))


class ConfigurationError(InfraFlowError):
    """Fatal misconfiguration: missing credentials, invalid desired spec."""

    default_codes = (ErrorCode.CONFIGURATION_PROBLEM,)


class CloudAPIError(InfraFlowError):
    """A remote call failed.

    Attributes:
        status_code: HTTP status (or the equivalent mapped from an SDK error
            code); ``0`` when the request never got a response.
        code: Provider-specific error code, if any.
        operation: Name of the client operation that failed.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int = 0,
        code: str = "",
        operation: str = "",
        codes: Optional[Iterable[ErrorCode]] = None,
    ) -> None:
        if codes is None:
            codes = codes_for_status(status_code)
        super().__init__(message, codes=codes)
        self.status_code = status_code
        self.code = code
        self.operation = operation

    @property
    def not_found(self) -> bool:
        return self.status_code == 404

    @property
    def conflict(self) -> bool:
        return self.status_code == 409


class MultipleMatchesError(InfraFlowError):
    """A name lookup returned more than one resource."""


class StepTimeoutError(InfraFlowError):
    """A step ran past its deadline.  Always retryable."""


class FlowCancelledError(InfraFlowError):
    """The caller cancelled the pass; no step was left half-applied."""


class StepError(InfraFlowError):
    """A single step failed for a resource kind on a backend."""

    def __init__(self, kind: str, backend: str, cause: BaseException) -> None:
        super().__init__(f"{kind} ({backend}): {cause}", codes=determine_error_codes(cause))
        self.kind = kind
        self.backend = backend
        self.cause = cause
        self.__cause__ = cause


# ---------------------------------------------------------------------------
# Classification helpers
# ---------------------------------------------------------------------------


def codes_for_status(status_code: int) -> Tuple[ErrorCode, ...]:
    """Map an HTTP status to error codes."""
    if status_code == 401:
        return (ErrorCode.INFRA_UNAUTHENTICATED,)
    if status_code == 403:
        return (ErrorCode.INFRA_UNAUTHORIZED,)
    return ()


def _chain(exc: Optional[BaseException]) -> List[BaseException]:
    seen: List[BaseException] = []
    while exc is not None and not any(exc is s for s in seen):
        seen.append(exc)
        exc = exc.__cause__
    return seen


def determine_error_codes(exc: Optional[BaseException]) -> List[ErrorCode]:
    """Collect the codes attached anywhere in *exc*'s cause chain."""
    codes: List[ErrorCode] = []
    for err in _chain(exc):
        for code in getattr(err, "codes", ()):
            if code not in codes:
                codes.append(code)
    return codes


def determine_error(exc: Optional[BaseException]) -> Optional[InfraFlowError]:
    """Attach codes derived from :data:`KNOWN_CODES` and return an InfraFlowError.

    Flow errors are returned as the same object with any newly matched codes
    appended; foreign exceptions are wrapped.
    """
    if exc is None:
        return None
    codes = determine_error_codes(exc)
    message = str(exc)
    for code, pattern in KNOWN_CODES:
        if code not in codes and pattern.search(message):
            codes.append(code)
    if isinstance(exc, InfraFlowError):
        exc.codes = tuple(codes)
        return exc
    wrapped = InfraFlowError(message, codes=codes)
    wrapped.__cause__ = exc
    return wrapped


def is_retryable(exc: Optional[BaseException]) -> bool:
    """True unless a fatal code is attached anywhere in the cause chain."""
    return not any(c in FATAL_CODES for c in determine_error_codes(exc))


def exit_code_for(exc: Optional[BaseException]) -> int:
    """Map a pass outcome to a CLI exit code."""
    if exc is None:
        return EXIT_SUCCESS
    if isinstance(exc, FlowCancelledError):
        return EXIT_CANCELLED
    if not is_retryable(exc):
        return EXIT_CONFIGURATION_FAILURE
    return EXIT_RETRYABLE_FAILURE
