"""
Pytest Configuration and Fixtures

Provides shared fixtures and configuration for all tests.
"""

import json
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture(autouse=True)
def reset_resilience_state():
    """Reset all resilience state before each test"""
    from overwatch.shared.resilience import reset_all
    reset_all()
    yield
    reset_all()


@pytest.fixture
def no_sleep(monkeypatch):
    """Retry delays and provider pauses return immediately"""
    sleeps = []
    monkeypatch.setattr("time.sleep", lambda seconds: sleeps.append(seconds))
    return sleeps


@pytest.fixture
def fixed_now():
    return datetime(2026, 2, 20, 14, 30, 0, tzinfo=timezone.utc)


@pytest.fixture
def paths(tmp_path):
    """OverwatchPaths rooted in a temp directory with scripts/ present"""
    from overwatch.config import OverwatchPaths

    (tmp_path / "scripts").mkdir()
    return OverwatchPaths(tmp_path)


@pytest.fixture
def sample_state():
    """Previous state with live, manual and editorial fields"""
    return {
        "updated": "2026-02-19T10:00:00.000Z",
        "xrp": {"price": 2.41, "change_24h": -1.2, "volume_24h": 3_100_000_000, "market_cap": 140_000_000_000},
        "rlusd": {"market_cap": 800_000_000, "source": "coingecko"},
        "macro": {
            "usd_jpy": 151.2,
            "jpn_10y": 1.45,
            "us_10y_yield": 4.31,
            "brent_crude": 74.8,
            "fear_greed": {"value": 44, "label": "Fear"},
        },
        "etf": {"total_aum": 1_200_000_000, "total_xrp_locked": 410_000_000, "daily_net_flow": 12_500_000},
        "supply": {"circulating": 59_000_000_000, "total": 99_980_000_000},
        "manual": {
            "odl_volume_annualized": None,
            "permissioned_dex_institutions": 2,
            "clarity_act_status": "Passed House, pending Senate",
        },
        "thesis_scores": {
            "regulatory": {"status": "PROGRESSING", "confidence": "medium"},
            "etf_adoption": {"status": "ON TRACK", "confidence": "high"},
        },
        "kill_switches": {
            "odl_volume": {"target": 5_000_000_000, "current": None, "status": "NEEDS_DATA"},
            "rlusd_circulation": {"target": 5_000_000_000, "current": 800_000_000, "status": "TRACKING"},
            "clarity_act": {"target": "passed_or_advanced", "current": "Passed House", "status": "PENDING"},
        },
        "probability": {"bear": 20, "base": 45, "mid": 25, "bull": 10},
        "bear_case": {"counter_thesis_score": 38, "macro_headwinds": ["JGB yields rising"]},
        "custom_note": "kept across cycles",
    }


@pytest.fixture
def sample_opinion():
    """Opinion document as produced by the analyst"""
    return {
        "timestamp": "2026-02-20T13:00:00.000Z",
        "run_type": "morning",
        "market_summary": "XRP steady while yen weakens.",
        "thesis_pulse": "Institutional rails continue to build.",
        "stress_assessment": {"level": "MODERATE", "score": 42, "interpretation": "Yen carry pressure."},
        "kill_switch_updates": [
            {"name": "RLUSD Circulation", "previous_status": "TRACKING",
             "recommended_status": "WARNING", "reasoning": "Growth stalled"},
            {"name": "ODL Volume", "previous_status": "NEEDS_DATA",
             "recommended_status": "NEEDS_DATA", "reasoning": "No data"},
        ],
        "scorecard_updates": [
            {"category": "Regulatory Clarity", "previous_status": "PROGRESSING",
             "recommended_status": "STRONG", "reasoning": "Senate markup"},
            {"category": "Unknown Category", "previous_status": "A", "recommended_status": "B"},
        ],
        "alerts": [{"severity": "ELEVATED", "message": "JGB 10Y above 1.5%"}],
        "recommended_probability_adjustment": {
            "bear": 18, "base": 47, "mid": 25, "bull": 10, "reasoning": "Clarity progress",
        },
        "events_draft": [
            {"date": "Feb 20", "title": "Senate Banking advances market structure bill",
             "category": "REGULATORY", "severity": "CRITICAL", "expanded": "Committee vote 14-9."},
        ],
        "geopolitical_watchlist": [
            {"region": "Japan", "status_text": "BoJ hike odds rising"},
        ],
        "energy_interpretation": "Brent range-bound near $75.",
        "thesis_pulse_assessment": "Thesis intact; regulatory path clearing.",
        "stress_interpretation": "Moderate stress from yen weakness.",
    }


@pytest.fixture
def sample_html():
    """Minimal dashboard page with every patchable region"""
    return (
        "<html><body>\n"
        '<p class="pulse" id="thesisPulseText">Old pulse text.</p>\n'
        '<p class="stress" id="stressInterpretText">Old stress text.</p>\n'
        '<p class="energy" id="energyInterpretText">Old energy text.</p>\n'
        '      <div id="geoWatchlist">\n'
        '        <div class="data-row"><span class="data-label">China</span>'
        '<span class="signal amber">Export curbs</span></div>\n'
        "      </div>\n"
        "<script>\n"
        "const EVENTS_DATA = [\n"
        "  {\n"
        "    date: '2026-01-10',\n"
        "    dateLabel: 'JAN 10',\n"
        "    title: 'Existing Event Already Here',\n"
        "    category: 'INSTITUTIONAL',\n"
        "    catClass: 'inst',\n"
        "    threat: 'MONITORING',\n"
        "    threatEmoji: '🟢',\n"
        "    desc: 'Old.'\n"
        "  },\n"
        "];\n"
        "</script>\n"
        "</body></html>\n"
    )


def json_response(payload, status_code=200):
    """Mock requests.Response carrying a JSON body"""
    response = Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.json.return_value = payload
    response.text = json.dumps(payload)
    response.content = response.text.encode("utf-8")
    response.headers = {}
    if status_code >= 400:
        import requests
        response.raise_for_status.side_effect = requests.HTTPError(f"HTTP {status_code}")
    else:
        response.raise_for_status.return_value = None
    return response


@pytest.fixture
def make_response():
    return json_response


# =============================================================================
# MARKERS
# =============================================================================

def pytest_configure(config):
    """Configure custom markers"""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


# =============================================================================
# HOOKS
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """Automatically add markers based on test location"""
    for item in items:
        if "integration" in item.nodeid:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
