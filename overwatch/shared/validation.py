"""
OVERWATCH DATA VALIDATION MODULE
Schema checking, range validation and JSON sanitizing

This module provides validation for:
- Upstream response shapes (CoinGecko, FRED, xrp-insights, rippled)
- Value range constraints (Fear & Greed 0-100, stress score 1-100, ...)
- The analyst's opinion document before it is persisted
- NaN / Infinity scrubbing before anything is written to the state file
"""

import math
import logging
from datetime import datetime
from typing import Dict, Any, Optional, List, Tuple
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


# =============================================================================
# VALIDATION RESULT TYPES
# =============================================================================

class ValidationSeverity(Enum):
    """Severity levels for validation issues"""
    INFO = "info"           # Informational, data is valid
    WARNING = "warning"     # Data is usable but flagged
    ERROR = "error"         # Data is invalid, should not be used
    CRITICAL = "critical"   # Data indicates system failure


@dataclass
class ValidationIssue:
    """Represents a single validation issue"""
    field: str
    message: str
    severity: ValidationSeverity
    actual_value: Any = None
    expected: str = ""


@dataclass
class ValidationResult:
    """Result of a validation operation"""
    valid: bool
    issues: List[ValidationIssue] = field(default_factory=list)
    data: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def add_issue(
        self,
        field: str,
        message: str,
        severity: ValidationSeverity,
        actual_value: Any = None,
        expected: str = ""
    ):
        self.issues.append(ValidationIssue(
            field=field,
            message=message,
            severity=severity,
            actual_value=actual_value,
            expected=expected,
        ))
        if severity in (ValidationSeverity.ERROR, ValidationSeverity.CRITICAL):
            self.valid = False

    @property
    def has_errors(self) -> bool:
        return any(i.severity in (ValidationSeverity.ERROR, ValidationSeverity.CRITICAL)
                   for i in self.issues)

    @property
    def warning_count(self) -> int:
        return sum(1 for i in self.issues if i.severity == ValidationSeverity.WARNING)

    def first_error(self) -> Optional[str]:
        """Message of the first ERROR/CRITICAL issue, handy for exception text"""
        for issue in self.issues:
            if issue.severity in (ValidationSeverity.ERROR, ValidationSeverity.CRITICAL):
                return f"{issue.field}: {issue.message}"
        return None

    def log_issues(self, prefix: str = ""):
        """Log all issues at appropriate levels"""
        for issue in self.issues:
            msg = f"{prefix}[{issue.field}] {issue.message}"
            if issue.severity == ValidationSeverity.INFO:
                logger.info(msg)
            elif issue.severity == ValidationSeverity.WARNING:
                logger.warning(msg)
            elif issue.severity == ValidationSeverity.ERROR:
                logger.error(msg)
            else:
                logger.critical(msg)


# =============================================================================
# VALUE RANGE DEFINITIONS
# =============================================================================

# Format: (min, max, allow_null, description)
RANGE_CONSTRAINTS = {
    "xrp_price": (0.0, 10000.0, True, "XRP spot price (USD)"),
    "fear_greed": (0.0, 100.0, True, "Crypto Fear & Greed index"),
    "usd_jpy": (50.0, 400.0, True, "USD/JPY rate"),
    "yield_pct": (-5.0, 30.0, True, "Government bond yield (%)"),
    "brent_crude": (0.0, 500.0, True, "Brent crude (USD/bbl)"),
    "stress_score": (0.0, 100.0, True, "Analyst stress score"),
    "probability_pct": (0.0, 100.0, False, "Scenario probability (%)"),
}


# =============================================================================
# RANGE VALIDATORS
# =============================================================================

class RangeValidator:
    """Validates numeric values against defined ranges"""

    @staticmethod
    def validate_range(
        value: Any,
        field_name: str,
        custom_range: Optional[Tuple[float, float]] = None,
        allow_null: bool = False,
    ) -> ValidationResult:
        """
        Validate a value against its defined or custom range.

        Args:
            value: The value to validate
            field_name: Name of the field (for lookup in RANGE_CONSTRAINTS)
            custom_range: Optional (min, max) override
            allow_null: Whether None is acceptable when no constraint is defined
        """
        result = ValidationResult(valid=True)
        constraint = RANGE_CONSTRAINTS.get(field_name)

        if value is None:
            null_allowed = constraint[2] if constraint else allow_null
            if not null_allowed:
                result.add_issue(
                    field_name, "Value is null but null not allowed",
                    ValidationSeverity.ERROR,
                    expected="non-null value"
                )
            result.data = None
            return result

        if isinstance(value, bool):
            result.add_issue(
                field_name, "Boolean is not a numeric value",
                ValidationSeverity.ERROR,
                actual_value=value,
                expected="numeric value"
            )
            return result

        try:
            num_value = float(value)
        except (ValueError, TypeError) as e:
            result.add_issue(
                field_name, f"Cannot convert to number: {e}",
                ValidationSeverity.ERROR,
                actual_value=value,
                expected="numeric value"
            )
            return result

        if math.isnan(num_value) or math.isinf(num_value):
            result.add_issue(
                field_name, "Value is NaN or infinite",
                ValidationSeverity.ERROR,
                actual_value=value
            )
            return result

        if custom_range:
            min_val, max_val = custom_range
        elif constraint:
            min_val, max_val = constraint[0], constraint[1]
        else:
            result.data = num_value
            return result

        if num_value < min_val or num_value > max_val:
            result.add_issue(
                field_name, f"Value {num_value} outside {min_val} to {max_val}",
                ValidationSeverity.WARNING,
                actual_value=num_value,
                expected=f"{min_val} to {max_val}"
            )

        result.data = num_value
        return result


# =============================================================================
# SCHEMA DEFINITIONS
# =============================================================================

# CoinGecko /simple/price entry for one coin id
COINGECKO_PRICE_SCHEMA = {
    "required": [],
    "optional": ["usd", "usd_24h_change", "usd_24h_vol", "usd_market_cap"],
    "types": {
        "usd": (int, float),
        "usd_24h_change": (int, float),
        "usd_24h_vol": (int, float),
        "usd_market_cap": (int, float),
    }
}

# alternative.me Fear & Greed entry
FEAR_GREED_SCHEMA = {
    "required": ["value", "value_classification"],
    "types": {
        "value": (str, int, float),
        "value_classification": str,
    }
}

# xrp-insights /api/flows daily row
ETF_FLOW_DAY_SCHEMA = {
    "required": ["date"],
    "optional": ["netFlow", "inflow", "outflow", "totalAUM", "totalXRP", "etfFlows", "isWeekend"],
    "types": {
        "date": str,
        "netFlow": (int, float),
        "inflow": (int, float),
        "outflow": (int, float),
        "etfFlows": list,
    }
}

# rippled ledger header
LEDGER_SCHEMA = {
    "required": ["total_coins"],
    "optional": ["transactions", "ledger_index"],
    "types": {
        "total_coins": (str, int),
        "transactions": list,
    }
}

# Opinion document returned by the thesis analyst
OPINION_SCHEMA = {
    "required": [],
    "optional": [
        "timestamp", "run_type", "market_summary", "thesis_pulse", "stress_assessment",
        "kill_switch_updates", "scorecard_updates", "alerts", "etf_analysis",
        "macro_analysis", "recommended_probability_adjustment", "events_draft",
        "geopolitical_watchlist", "energy_interpretation", "thesis_pulse_assessment",
        "stress_interpretation",
    ],
    "types": {
        "timestamp": str,
        "run_type": str,
        "stress_assessment": dict,
        "kill_switch_updates": list,
        "scorecard_updates": list,
        "alerts": list,
        "recommended_probability_adjustment": (dict, type(None)),
        "events_draft": list,
        "geopolitical_watchlist": list,
    },
    "enum_values": {
        "run_type": ["morning", "evening"],
    }
}

STRESS_ASSESSMENT_SCHEMA = {
    "required": ["level"],
    "optional": ["score", "interpretation"],
    "types": {
        "level": str,
        "score": (int, float),
        "interpretation": str,
    },
    "enum_values": {
        "level": ["LOW", "MODERATE", "ELEVATED", "HIGH", "CRITICAL"],
    }
}


# =============================================================================
# SCHEMA VALIDATORS
# =============================================================================

class SchemaValidator:
    """Validates data structures against defined schemas"""

    @staticmethod
    def validate_schema(
        data: Dict[str, Any],
        schema: Dict[str, Any],
        schema_name: str = "data",
        strict_types: bool = False,
    ) -> ValidationResult:
        """
        Validate a dictionary against a schema definition.

        Args:
            data: The data to validate
            schema: Schema definition with "required", "optional", "types", "enum_values"
            schema_name: Name for logging purposes
            strict_types: Report type mismatches as errors instead of warnings
        """
        result = ValidationResult(valid=True, data=data)

        if data is None:
            result.add_issue(schema_name, "Data is None", ValidationSeverity.ERROR)
            return result

        if not isinstance(data, dict):
            result.add_issue(
                schema_name, f"Expected dict, got {type(data).__name__}",
                ValidationSeverity.ERROR,
                actual_value=type(data).__name__,
                expected="dict"
            )
            return result

        for key in schema.get("required", []):
            if key not in data or data[key] is None:
                result.add_issue(
                    f"{schema_name}.{key}",
                    f"Required field '{key}' is missing or null",
                    ValidationSeverity.ERROR
                )

        mismatch_severity = ValidationSeverity.ERROR if strict_types else ValidationSeverity.WARNING
        for key, expected_types in schema.get("types", {}).items():
            if key in data and data[key] is not None:
                if not isinstance(expected_types, tuple):
                    expected_types = (expected_types,)
                if not isinstance(data[key], expected_types):
                    result.add_issue(
                        f"{schema_name}.{key}",
                        f"Type mismatch: expected {expected_types}, got {type(data[key]).__name__}",
                        mismatch_severity,
                        actual_value=type(data[key]).__name__,
                        expected=str(expected_types)
                    )

        for key, valid_values in schema.get("enum_values", {}).items():
            value = data.get(key)
            if value is None:
                continue
            if isinstance(value, str):
                ok = value.lower() in [v.lower() for v in valid_values]
            else:
                ok = value in valid_values
            if not ok:
                result.add_issue(
                    f"{schema_name}.{key}",
                    f"Invalid enum value: '{value}'",
                    ValidationSeverity.WARNING,
                    actual_value=value,
                    expected=str(valid_values)
                )

        return result

    @staticmethod
    def validate_fred_response(response: Dict[str, Any]) -> ValidationResult:
        """Keep only usable FRED observations ('.' marks a missing value)"""
        result = ValidationResult(valid=True)

        if not isinstance(response, dict):
            result.add_issue("response", "FRED response is not an object", ValidationSeverity.ERROR)
            return result

        if "error_code" in response:
            result.add_issue(
                "response", f"FRED error: {response.get('error_message')}",
                ValidationSeverity.ERROR,
                actual_value=response.get("error_code")
            )
            return result

        observations = response.get("observations")
        if not isinstance(observations, list):
            result.add_issue("observations", "Observations field is not a list", ValidationSeverity.ERROR)
            return result

        valid_obs = [
            obs for obs in observations
            if isinstance(obs, dict) and obs.get("value") not in (".", "", None)
        ]
        if not valid_obs:
            result.add_issue("observations", "No valid observation in response", ValidationSeverity.ERROR)

        result.data = {"observations": valid_obs}
        result.metadata["total_observations"] = len(observations)
        result.metadata["valid_observations"] = len(valid_obs)
        return result

    @staticmethod
    def validate_opinion(opinion: Any) -> ValidationResult:
        """Check an analyst opinion document before it is persisted"""
        result = SchemaValidator.validate_schema(opinion, OPINION_SCHEMA, "opinion")
        if not result.valid:
            return result

        stress = opinion.get("stress_assessment")
        if isinstance(stress, dict):
            nested = SchemaValidator.validate_schema(stress, STRESS_ASSESSMENT_SCHEMA, "opinion.stress_assessment")
            for issue in nested.issues:
                # A sloppy stress block is flagged, not fatal
                result.add_issue(issue.field, issue.message, ValidationSeverity.WARNING, issue.actual_value, issue.expected)
            score_check = RangeValidator.validate_range(stress.get("score"), "stress_score")
            for issue in score_check.issues:
                result.add_issue("opinion.stress_assessment.score", issue.message, ValidationSeverity.WARNING, issue.actual_value)

        prob = opinion.get("recommended_probability_adjustment")
        if isinstance(prob, dict) and prob.get("reasoning"):
            for scenario in ("bear", "base", "mid", "bull"):
                check = RangeValidator.validate_range(prob.get(scenario), "probability_pct")
                for issue in check.issues:
                    result.add_issue(f"opinion.probability.{scenario}", issue.message, ValidationSeverity.WARNING, issue.actual_value)

        return result


# =============================================================================
# JSON SANITIZING
# =============================================================================

def sanitize_for_json(value: Any) -> Any:
    """
    Recursively replace NaN/Infinity with None and datetimes with ISO strings
    so the state file stays strict JSON.
    """
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            return None
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: sanitize_for_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_for_json(v) for v in value]
    return value
