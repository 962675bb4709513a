"""
OVERWATCH RESILIENCE MODULE
Shared retry logic, circuit breakers, rate limiting and health tracking

Used by every outbound call in the terminal:
- Market and macro source adapters (CoinGecko, FRED, Alpha Vantage, iShares, ...)
- rippled JSON-RPC queries
- Claude API for the thesis analyst
- Telegram notifications and the x402 facilitator
"""

import time
import logging
import functools
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Dict, Any, Type, Tuple
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================

class ResilienceError(Exception):
    """Base exception for resilience-related errors"""
    pass


class RetryExhaustedError(ResilienceError):
    """All retry attempts have been exhausted"""
    def __init__(self, message: str, last_exception: Optional[Exception] = None):
        super().__init__(message)
        self.last_exception = last_exception


class CircuitOpenError(ResilienceError):
    """Circuit breaker is open, calls are being rejected"""
    def __init__(self, service_name: str, reset_time: Optional[datetime]):
        self.service_name = service_name
        self.reset_time = reset_time
        super().__init__(f"Circuit open for {service_name}, resets at {reset_time}")


class RateLimitError(ResilienceError):
    """Rate limit has been hit"""
    def __init__(self, service_name: str, retry_after: Optional[int] = None):
        self.service_name = service_name
        self.retry_after = retry_after
        msg = f"Rate limit hit for {service_name}"
        if retry_after:
            msg += f", retry after {retry_after}s"
        super().__init__(msg)


# Exceptions that are worth a second attempt
RETRYABLE_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    requests.exceptions.RequestException,
    ConnectionError,
    TimeoutError,
)


# =============================================================================
# CIRCUIT BREAKER
# =============================================================================

class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """
    Per-provider circuit breaker.

    A provider that keeps failing (e.g. CoinGecko returning 429s all morning)
    is short-circuited for reset_timeout seconds so the cycle falls back to
    cached values immediately instead of burning its retry budget.

    CLOSED -> OPEN after failure_threshold consecutive failures
    OPEN -> HALF_OPEN once reset_timeout has elapsed
    HALF_OPEN -> CLOSED on success, back to OPEN on failure
    """
    name: str
    failure_threshold: int = 5
    reset_timeout: int = 300
    half_open_max_calls: int = 1

    state: CircuitState = field(default=CircuitState.CLOSED)
    failure_count: int = field(default=0)
    success_count: int = field(default=0)
    last_failure_time: Optional[datetime] = field(default=None)
    half_open_calls: int = field(default=0)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def can_execute(self) -> bool:
        """Check if a call can be executed"""
        with self._lock:
            if self.state == CircuitState.CLOSED:
                return True

            if self.state == CircuitState.OPEN:
                if self.last_failure_time:
                    elapsed = (_utcnow() - self.last_failure_time).total_seconds()
                    if elapsed >= self.reset_timeout:
                        self.state = CircuitState.HALF_OPEN
                        self.half_open_calls = 0
                        logger.info(f"Circuit {self.name}: OPEN -> HALF_OPEN")
                        return True
                return False

            if self.half_open_calls < self.half_open_max_calls:
                self.half_open_calls += 1
                return True
            return False

    def record_success(self):
        with self._lock:
            if self.state == CircuitState.HALF_OPEN:
                logger.info(f"Circuit {self.name}: HALF_OPEN -> CLOSED (provider recovered)")
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count += 1

    def record_failure(self, exception: Optional[Exception] = None):
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = _utcnow()

            if self.state == CircuitState.HALF_OPEN:
                self.state = CircuitState.OPEN
                logger.warning(f"Circuit {self.name}: HALF_OPEN -> OPEN (probe failed)")
            elif self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold:
                self.state = CircuitState.OPEN
                logger.warning(
                    f"Circuit {self.name}: CLOSED -> OPEN "
                    f"(failures: {self.failure_count}, threshold: {self.failure_threshold})"
                )

    def get_reset_time(self) -> Optional[datetime]:
        """When an open circuit will let a probe through"""
        if self.state == CircuitState.OPEN and self.last_failure_time:
            return self.last_failure_time + timedelta(seconds=self.reset_timeout)
        return None

    def reset(self):
        with self._lock:
            self.state = CircuitState.CLOSED
            self.failure_count = 0
            self.success_count = 0
            self.last_failure_time = None
            self.half_open_calls = 0


_circuit_breakers: Dict[str, CircuitBreaker] = {}
_cb_lock = Lock()


def get_circuit_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Get or create a circuit breaker by name"""
    with _cb_lock:
        if name not in _circuit_breakers:
            _circuit_breakers[name] = CircuitBreaker(name=name, **kwargs)
        return _circuit_breakers[name]


# =============================================================================
# RATE LIMITER
# =============================================================================

@dataclass
class RateLimiter:
    """
    Token bucket rate limiter.

    Allows bursts up to max_tokens, refills at tokens_per_second.
    """
    name: str
    max_tokens: int = 10
    tokens_per_second: float = 1.0

    tokens: Optional[float] = field(default=None)
    last_update: Optional[datetime] = field(default=None)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def __post_init__(self):
        if self.tokens is None:
            self.tokens = float(self.max_tokens)
        if self.last_update is None:
            self.last_update = _utcnow()

    def _refill(self):
        now = _utcnow()
        elapsed = (now - self.last_update).total_seconds()
        self.tokens = min(self.max_tokens, self.tokens + elapsed * self.tokens_per_second)
        self.last_update = now

    def acquire(self, tokens: int = 1, block: bool = True, timeout: float = 30.0) -> bool:
        """
        Take tokens from the bucket.

        Returns True when the tokens were granted, False when the bucket stayed
        empty (non-blocking) or the timeout passed first.
        """
        deadline = _utcnow() + timedelta(seconds=timeout) if block else None

        while True:
            with self._lock:
                self._refill()
                if self.tokens >= tokens:
                    self.tokens -= tokens
                    return True
                if not block:
                    return False
                wait_time = (tokens - self.tokens) / self.tokens_per_second

            now = _utcnow()
            if now >= deadline:
                return False
            remaining = (deadline - now).total_seconds()
            time.sleep(min(wait_time, remaining, 1.0))


_rate_limiters: Dict[str, RateLimiter] = {}
_rl_lock = Lock()


def get_rate_limiter(name: str, **kwargs) -> RateLimiter:
    """Get or create a rate limiter by name"""
    with _rl_lock:
        if name not in _rate_limiters:
            _rate_limiters[name] = RateLimiter(name=name, **kwargs)
        return _rate_limiters[name]


# Free-tier quotas of the providers the terminal talks to
RATE_LIMIT_CONFIGS = {
    "coingecko": {"max_tokens": 10, "tokens_per_second": 0.5},      # ~30/min
    "alphavantage": {"max_tokens": 5, "tokens_per_second": 0.00029},  # 25/day
    "twelvedata": {"max_tokens": 8, "tokens_per_second": 0.13},     # 8/min
    "fred": {"max_tokens": 120, "tokens_per_second": 2.0},          # 120/min
    "cryptopanic": {"max_tokens": 5, "tokens_per_second": 0.08},
    "anthropic_analyst": {"max_tokens": 50, "tokens_per_second": 0.83},
}


# =============================================================================
# HTTP SESSION FACTORY
# =============================================================================

def create_robust_session(
    total_retries: int = 0,
    backoff_factor: float = 0.5,
    status_forcelist: Tuple[int, ...] = (500, 502, 503, 504),
    pool_connections: int = 16,
    pool_maxsize: int = 16,
    timeout: float = 15.0,
) -> requests.Session:
    """
    Create a pooled requests Session with a default timeout.

    Transport-level retries default to zero: retrying is owned by
    resilient_call so a source never gets more than one extra attempt.
    """
    session = requests.Session()

    retry_strategy = Retry(
        total=total_retries,
        backoff_factor=backoff_factor,
        status_forcelist=status_forcelist,
        allowed_methods=["HEAD", "GET", "POST"],
        raise_on_status=False,
    )

    adapter = HTTPAdapter(
        max_retries=retry_strategy,
        pool_connections=pool_connections,
        pool_maxsize=pool_maxsize,
    )

    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"User-Agent": "Mozilla/5.0 (compatible; Overwatch-Terminal/1.0)"})

    session.request = functools.partial(session.request, timeout=timeout)

    return session


_http_session: Optional[requests.Session] = None
_session_lock = Lock()


def get_http_session() -> requests.Session:
    """Get the shared pooled HTTP session"""
    global _http_session
    with _session_lock:
        if _http_session is None:
            _http_session = create_robust_session()
        return _http_session


# =============================================================================
# HEALTH TRACKING
# =============================================================================

@dataclass
class ServiceHealth:
    """Call metrics for one upstream service"""
    name: str
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None
    last_error: Optional[str] = None
    avg_response_time_ms: float = 0.0
    _response_times: list = field(default_factory=list, repr=False)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def record_call(self, success: bool, response_time_ms: float, error: Optional[str] = None):
        with self._lock:
            self.total_calls += 1
            if success:
                self.successful_calls += 1
                self.last_success = _utcnow()
            else:
                self.failed_calls += 1
                self.last_failure = _utcnow()
                self.last_error = error

            self._response_times.append(response_time_ms)
            if len(self._response_times) > 100:
                self._response_times.pop(0)
            self.avg_response_time_ms = sum(self._response_times) / len(self._response_times)

    @property
    def success_rate(self) -> float:
        if self.total_calls == 0:
            return 100.0
        return (self.successful_calls / self.total_calls) * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "total_calls": self.total_calls,
            "successful_calls": self.successful_calls,
            "failed_calls": self.failed_calls,
            "success_rate": round(self.success_rate, 2),
            "avg_response_time_ms": round(self.avg_response_time_ms, 2),
            "last_success": self.last_success.isoformat() if self.last_success else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
            "last_error": self.last_error,
        }


_health_trackers: Dict[str, ServiceHealth] = {}
_health_lock = Lock()


def get_health_tracker(name: str) -> ServiceHealth:
    """Get or create a health tracker by name"""
    with _health_lock:
        if name not in _health_trackers:
            _health_trackers[name] = ServiceHealth(name=name)
        return _health_trackers[name]


def get_all_health_status() -> Dict[str, Dict[str, Any]]:
    with _health_lock:
        return {name: tracker.to_dict() for name, tracker in _health_trackers.items()}


# =============================================================================
# RESILIENT CALL DECORATOR
# =============================================================================

def resilient_call(
    service_name: str,
    max_retries: int = 1,
    base_delay: float = 2.0,
    use_circuit_breaker: bool = True,
    use_rate_limiter: bool = True,
    circuit_failure_threshold: int = 5,
    circuit_reset_timeout: int = 300,
    retry_on: Tuple[Type[Exception], ...] = RETRYABLE_EXCEPTIONS,
):
    """
    Retry, circuit breaker, rate limiting and health tracking in one decorator.

    Defaults give the terminal's source contract: one retry after a fixed
    2 second pause. Only retry_on exceptions are retried; anything else
    (a malformed payload, a bad key) fails the call at once.

    Usage:
        @resilient_call("coingecko")
        def _get_price(self):
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            circuit = None
            if use_circuit_breaker:
                circuit = get_circuit_breaker(
                    service_name,
                    failure_threshold=circuit_failure_threshold,
                    reset_timeout=circuit_reset_timeout,
                )
                if not circuit.can_execute():
                    raise CircuitOpenError(service_name, circuit.get_reset_time())

            if use_rate_limiter and service_name in RATE_LIMIT_CONFIGS:
                limiter = get_rate_limiter(service_name, **RATE_LIMIT_CONFIGS[service_name])
                if not limiter.acquire(block=True, timeout=30.0):
                    raise RateLimitError(service_name)

            tracker = get_health_tracker(service_name)
            last_exception = None

            for attempt in range(max_retries + 1):
                start_time = time.time()
                try:
                    result = func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    response_time = (time.time() - start_time) * 1000
                    tracker.record_call(False, response_time, error=str(e)[:200])

                    if attempt == max_retries:
                        break

                    logger.warning(
                        f"[{service_name}] Attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                        f"Retrying in {base_delay:.1f}s..."
                    )
                    time.sleep(base_delay)
                except Exception as e:
                    response_time = (time.time() - start_time) * 1000
                    tracker.record_call(False, response_time, error=str(e)[:200])
                    if circuit:
                        circuit.record_failure(e)
                    raise
                else:
                    response_time = (time.time() - start_time) * 1000
                    tracker.record_call(True, response_time)
                    if circuit:
                        circuit.record_success()
                    return result

            if circuit:
                circuit.record_failure(last_exception)

            raise RetryExhaustedError(
                f"[{service_name}] All {max_retries + 1} attempts failed: {last_exception}",
                last_exception=last_exception,
            )

        return wrapper
    return decorator


# =============================================================================
# INITIALIZATION AND STATUS
# =============================================================================

def reset_all():
    """Reset circuit breakers, rate limiters and health trackers (for testing)"""
    with _cb_lock:
        for cb in _circuit_breakers.values():
            cb.reset()

    with _rl_lock:
        _rate_limiters.clear()

    with _health_lock:
        _health_trackers.clear()

    logger.debug("All resilience state reset")


def get_system_status() -> Dict[str, Any]:
    """Snapshot of every circuit, limiter and tracker"""
    status = {
        "timestamp": _utcnow().isoformat(),
        "circuit_breakers": {},
        "rate_limiters": {},
        "health": get_all_health_status(),
    }

    with _cb_lock:
        for name, cb in _circuit_breakers.items():
            reset_time = cb.get_reset_time()
            status["circuit_breakers"][name] = {
                "state": cb.state.value,
                "failure_count": cb.failure_count,
                "reset_time": reset_time.isoformat() if reset_time else None,
            }

    with _rl_lock:
        for name, rl in _rate_limiters.items():
            status["rate_limiters"][name] = {
                "tokens_available": round(rl.tokens, 2),
                "max_tokens": rl.max_tokens,
            }

    return status
