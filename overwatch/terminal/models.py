"""
OVERWATCH TERMINAL DATA MODELS
Fetch results, health ledger entries and state-path helpers
"""

import copy
from datetime import datetime, timezone
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Any, Optional, List


def utc_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix"""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


class FetchStatus(Enum):
    """Outcome of one adapter fetch"""
    OK = "ok"
    FAIL = "fail"
    SKIP = "skip"      # Credential not configured


@dataclass
class HealthEntry:
    """One slot in the health ledger"""
    status: FetchStatus
    ts: str
    error: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        entry = {"status": self.status.value, "ts": self.ts}
        if self.error:
            entry["error"] = self.error
        if self.source:
            entry["source"] = self.source
        return entry


@dataclass
class FetchResult:
    """
    Result of a Source Adapter fetch.

    `value` always holds a usable record: fresh data when status is OK,
    otherwise the previous record (or the adapter's all-null default).
    """
    source_id: str
    slot: str
    value: Any
    status: FetchStatus
    error: Optional[str] = None
    source: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK

    @property
    def failed(self) -> bool:
        return self.status == FetchStatus.FAIL

    def health(self) -> HealthEntry:
        return HealthEntry(
            status=self.status,
            ts=self.timestamp,
            error=self.error,
            source=self.source,
        )


# =============================================================================
# DOTTED-PATH HELPERS
# =============================================================================

def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Read `a.b.c` from nested dicts; anything missing gives `default`"""
    node = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    """Write `a.b.c` into nested dicts, replacing non-dict intermediates"""
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


def failed_sources(results: List[FetchResult]) -> List[str]:
    """Source ids whose fetch failed this cycle, in result order"""
    return [r.source_id for r in results if r.failed]


def copy_record(record: Any) -> Any:
    """Detached copy so fallbacks never alias the previous state"""
    return copy.deepcopy(record)
