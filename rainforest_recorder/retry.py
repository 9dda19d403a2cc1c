# SPDX-License-Identifier: MPL-2.0
"""
Bounded retry for transient network faults.

retry_call() re-runs an operation while a predicate accepts the raised
exception, up to a maximum number of retries, with exponential backoff
between attempts. RetryPolicy binds it to a whitelist of fault kinds.
"""

import errno
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, FrozenSet, Iterator, List, Optional, TypeVar

import requests
import urllib3

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BACKOFF_BASE = 1.0
DEFAULT_BACKOFF_MAX = 30.0

UNREACHABLE_ERRNOS = (errno.EHOSTUNREACH, errno.ENETUNREACH)

# urllib3 errors that surface unwrapped from clients built directly on urllib3
URLLIB3_CONNECTION_ERRORS = (
    urllib3.exceptions.ProtocolError,
    urllib3.exceptions.NewConnectionError,
    urllib3.exceptions.MaxRetryError,
)


class FaultKind(Enum):
    """Network faults that are expected to clear up on their own."""
    HOST_UNREACHABLE = "host-unreachable"
    CONNECTION_RESET = "connection-reset"
    SERVICE_UNAVAILABLE = "service-unavailable"
    REQUEST_TIMEOUT = "request-timeout"
    SOCKET_ERROR = "socket-error"


class TransientNetworkFault(Exception):
    """
    A retryable network failure.

    Attributes:
        kind: Which kind of transient fault occurred
    """

    def __init__(self, kind: FaultKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind

    def __str__(self) -> str:
        return f"{self.kind.value}: {super().__str__()}"


def _exception_chain(error: BaseException) -> Iterator[BaseException]:
    """Yield an exception and everything it was caused by, including urllib3 reasons."""
    seen = set()
    pending: List[BaseException] = [error]
    while pending:
        current = pending.pop(0)
        if id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        for linked in (current.__cause__, current.__context__, getattr(current, 'reason', None)):
            if isinstance(linked, BaseException):
                pending.append(linked)
        for arg in current.args:
            if isinstance(arg, BaseException):
                pending.append(arg)


def classify_fault(error: BaseException) -> Optional[FaultKind]:
    """
    Map a network exception onto a transient fault kind.

    Handles exceptions from requests (gateway client) as well as bare
    urllib3 and socket errors (InfluxDB client).

    Args:
        error: Exception raised by a network call

    Returns:
        The FaultKind, or None if the error is not a known transient fault
    """
    if isinstance(error, TransientNetworkFault):
        return error.kind

    if isinstance(error, requests.exceptions.HTTPError):
        response = error.response
        if response is not None and response.status_code == 503:
            return FaultKind.SERVICE_UNAVAILABLE
        return None

    if isinstance(error, (requests.exceptions.Timeout, TimeoutError)):
        return FaultKind.REQUEST_TIMEOUT
    # NewConnectionError derives from ConnectTimeoutError but is a connect failure
    if (isinstance(error, urllib3.exceptions.TimeoutError)
            and not isinstance(error, urllib3.exceptions.NewConnectionError)):
        return FaultKind.REQUEST_TIMEOUT

    if not isinstance(error, (OSError,) + URLLIB3_CONNECTION_ERRORS):
        return None

    chain = list(_exception_chain(error))
    if any(isinstance(e, ConnectionResetError) for e in chain):
        return FaultKind.CONNECTION_RESET
    # RequestException subclasses OSError; only connection errors are socket-level
    if (isinstance(error, requests.exceptions.RequestException)
            and not isinstance(error, requests.exceptions.ConnectionError)):
        return None
    if any(isinstance(e, OSError) and e.errno in UNREACHABLE_ERRNOS for e in chain):
        return FaultKind.HOST_UNREACHABLE
    if any(isinstance(e, TimeoutError) for e in chain):
        return FaultKind.REQUEST_TIMEOUT
    return FaultKind.SOCKET_ERROR


def backoff_delay(retry: int, base: float, maximum: float) -> float:
    """Delay before the given retry (1-based): base * 2**(retry-1), capped."""
    if base <= 0:
        return 0.0
    return float(min(base * (2 ** (retry - 1)), maximum))


def retry_call(
    operation: Callable[[], T],
    should_retry: Callable[[BaseException], bool],
    max_attempts: int,
    *,
    backoff_base: float = 0.0,
    backoff_max: float = DEFAULT_BACKOFF_MAX,
    sleep: Callable[[float], None] = time.sleep,
    log: Optional[logging.Logger] = None,
) -> T:
    """
    Call an operation, retrying it on accepted exceptions.

    Args:
        operation: Zero-argument callable to run
        should_retry: Returns True for exceptions worth retrying
        max_attempts: Maximum number of retries after the first call
        backoff_base: Seconds to wait before the first retry; doubles on
                      each further retry. 0 disables waiting.
        backoff_max: Upper bound for a single wait
        sleep: Sleep function (injectable for tests)
        log: Logger for retry messages (module logger by default)

    Returns:
        Whatever the operation returns

    Raises:
        The last exception raised by the operation, unchanged, once it is
        not accepted by should_retry or the retries are used up
    """
    log = log or logger
    retries = 0
    while True:
        try:
            return operation()
        except Exception as e:
            if not should_retry(e) or retries >= max_attempts:
                raise
            retries += 1
            delay = backoff_delay(retries, backoff_base, backoff_max)
            log.info(f"Retry {retries}/{max_attempts} after error: {e}"
                     + (f" (waiting {delay:.1f}s)" if delay else ""))
            if delay:
                sleep(delay)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Which transient faults to retry, and how often.

    Attributes:
        fault_kinds: Fault kinds that are retried; anything else propagates at once
        max_attempts: Maximum number of retries after the first call
        backoff_base: Seconds before the first retry, doubled for each further one
        backoff_max: Upper bound for a single wait
    """
    fault_kinds: FrozenSet[FaultKind] = frozenset(FaultKind)
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff_base: float = DEFAULT_BACKOFF_BASE
    backoff_max: float = DEFAULT_BACKOFF_MAX

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError(f"max_attempts must be non-negative, got {self.max_attempts}")
        if self.backoff_base < 0:
            raise ValueError(f"backoff_base must be non-negative, got {self.backoff_base}")

    def should_retry(self, error: BaseException) -> bool:
        return isinstance(error, TransientNetworkFault) and error.kind in self.fault_kinds

    def call(
        self,
        operation: Callable[[], T],
        sleep: Callable[[float], None] = time.sleep,
        log: Optional[logging.Logger] = None,
    ) -> T:
        """Run an operation under this policy."""
        return retry_call(
            operation,
            self.should_retry,
            self.max_attempts,
            backoff_base=self.backoff_base,
            backoff_max=self.backoff_max,
            sleep=sleep,
            log=log,
        )
