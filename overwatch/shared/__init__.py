"""
Overwatch Shared Utilities

This package contains shared infrastructure:
- Circuit breakers for failing upstreams
- Rate limiters for API quotas
- Retry with a fixed backoff delay
- Health tracking for all services
- HTTP session management with connection pooling
- Schema / range validation and JSON sanitizing
"""

from .resilience import (
    # Exceptions
    ResilienceError,
    RetryExhaustedError,
    CircuitOpenError,
    RateLimitError,

    # Circuit Breaker
    CircuitBreaker,
    CircuitState,
    get_circuit_breaker,

    # Rate Limiter
    RateLimiter,
    get_rate_limiter,
    RATE_LIMIT_CONFIGS,

    # Decorators
    resilient_call,

    # HTTP Session
    create_robust_session,
    get_http_session,

    # Health Tracking
    ServiceHealth,
    get_health_tracker,
    get_all_health_status,

    # Utilities
    reset_all,
    get_system_status,
)

from .validation import (
    # Result types
    ValidationSeverity,
    ValidationIssue,
    ValidationResult,

    # Validators
    RangeValidator,
    SchemaValidator,

    # Schemas
    RANGE_CONSTRAINTS,
    COINGECKO_PRICE_SCHEMA,
    FEAR_GREED_SCHEMA,
    ETF_FLOW_DAY_SCHEMA,
    LEDGER_SCHEMA,
    OPINION_SCHEMA,
    STRESS_ASSESSMENT_SCHEMA,

    # Helpers
    sanitize_for_json,
)

__version__ = "1.0.0"

__all__ = [
    # Exceptions
    "ResilienceError",
    "RetryExhaustedError",
    "CircuitOpenError",
    "RateLimitError",

    # Circuit Breaker
    "CircuitBreaker",
    "CircuitState",
    "get_circuit_breaker",

    # Rate Limiter
    "RateLimiter",
    "get_rate_limiter",
    "RATE_LIMIT_CONFIGS",

    # Decorators
    "resilient_call",

    # HTTP Session
    "create_robust_session",
    "get_http_session",

    # Health Tracking
    "ServiceHealth",
    "get_health_tracker",
    "get_all_health_status",

    # Utilities
    "reset_all",
    "get_system_status",

    # Validation
    "ValidationSeverity",
    "ValidationIssue",
    "ValidationResult",
    "RangeValidator",
    "SchemaValidator",
    "RANGE_CONSTRAINTS",
    "COINGECKO_PRICE_SCHEMA",
    "FEAR_GREED_SCHEMA",
    "ETF_FLOW_DAY_SCHEMA",
    "LEDGER_SCHEMA",
    "OPINION_SCHEMA",
    "STRESS_ASSESSMENT_SCHEMA",
    "sanitize_for_json",
]
