"""
OVERWATCH PATCH ENGINE
Applies an approved opinion document to the state blob and the static page

Pure logic: takes (opinion, state, html, event history) and returns the new
state, new html, a change count and changelog lines. No file I/O here; see
overwatch.analyst.apply_analysis for backup / write / restore.

Idempotence: an update whose recommended value already matches the
current value is skipped, so re-applying the same opinion yields
change_count == 0.
"""

import re
import copy
import html as html_lib
import logging
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Iterable, Tuple

from overwatch.terminal.models import utc_timestamp

logger = logging.getLogger(__name__)


# =============================================================================
# LOOKUP TABLES
# =============================================================================

# Opinion scorecard label -> thesis_scores key
SCORE_KEY_MAP = {
    "Regulatory Clarity": "regulatory",
    "Regulatory": "regulatory",
    "Institutional Custody": "institutional_custody",
    "ETF Adoption": "etf_adoption",
    "XRPL Infrastructure": "xrpl_infrastructure",
    "Stablecoin (RLUSD)": "stablecoin_adoption",
    "Stablecoin Adoption": "stablecoin_adoption",
    "RLUSD": "stablecoin_adoption",
    "ODL Volume": "odl_volume",
    "Japan Adoption": "japan_adoption",
    "Macro Environment": "macro_environment",
    "Macro": "macro_environment",
}

# Opinion kill switch name -> kill_switches key
KILL_SWITCH_KEY_MAP = {
    "ODL Volume": "odl_volume",
    "RLUSD Circulation": "rlusd_circulation",
    "Permissioned DEX": "permissioned_dex_adoption",
    "XRP ETF AUM": "xrp_etf_aum",
    "Japan Adoption": "japan_adoption",
    "Clarity Act": "clarity_act",
    "Announcement-to-Deployment": "announcement_to_deployment",
    "Token Velocity": "token_velocity",
    "Competitive Displacement": "competitive_displacement",
    "ODL Transparency": "odl_transparency",
}

SEVERITY_MAP = {
    "CRITICAL": ("CRITICAL", "🔴"),
    "ELEVATED": ("ELEVATED", "🟡"),
}
DEFAULT_SEVERITY = ("MONITORING", "🟢")

CATEGORY_CLASS = {
    "INSTITUTIONAL": "inst",
    "REGULATORY": "reg",
    "GEOPOLITICAL": "geo",
    "FINANCIAL": "fin",
}

# Narrative opinion field -> <p id> in index.html
NARRATIVE_REGIONS = [
    ("thesis_pulse_assessment", "thesisPulseText"),
    ("stress_interpretation", "stressInterpretText"),
    ("energy_interpretation", "energyInterpretText"),
]

EVENTS_MARKER = "const EVENTS_DATA = ["
GEO_WATCHLIST_TAG = '<div id="geoWatchlist">'
NEAR_DUPLICATE_PREFIX = 60
TITLE_KEY_LENGTH = 40

PROBABILITY_FIELDS = ("bear", "base", "mid", "bull")


@dataclass
class PatchResult:
    """Everything one application produced"""
    state: Dict[str, Any]
    html: Optional[str]
    change_count: int = 0
    changelog: List[str] = field(default_factory=list)
    history: List[str] = field(default_factory=list)
    events_inserted: int = 0
    html_changes: int = 0
    scorecard_changes: int = 0
    kill_switch_changes: int = 0
    probability_changed: bool = False

    @property
    def html_changed(self) -> bool:
        return self.events_inserted > 0 or self.html_changes > 0


# =============================================================================
# TIMELINE EVENTS
# =============================================================================

def title_key(title: Any) -> str:
    """Lowercase, non-alphanumeric runs to one space, trimmed, first 40 chars"""
    return re.sub(r"[^a-z0-9]+", " ", str(title).lower()).strip()[:TITLE_KEY_LENGTH]


def _js_string(value: Any) -> str:
    return (
        str(value)
        .replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\r", "")
        .replace("\n", "\\n")
    )


def _js_unescape(value: str) -> str:
    return re.sub(r"\\(.)", lambda m: "\n" if m.group(1) == "n" else m.group(1), value)


TITLE_IN_HTML = re.compile(r"title:\s*'((?:[^'\\]|\\.)*)'")


def existing_title_keys(page: str) -> set:
    return {title_key(_js_unescape(m.group(1))) for m in TITLE_IN_HTML.finditer(page)}


def parse_date_label(label: Any, now: datetime) -> Dict[str, str]:
    """'Feb 20' -> {'date': 'YYYY-02-20', 'dateLabel': 'FEB 20'}; today if unparseable"""
    text = str(label or "").strip()
    for fmt in ("%b %d %Y", "%B %d %Y"):
        try:
            parsed = datetime.strptime(f"{text} {now.year}", fmt)
        except ValueError:
            continue
        return {"date": parsed.strftime("%Y-%m-%d"), "dateLabel": text.upper()}
    return {"date": now.strftime("%Y-%m-%d"), "dateLabel": f"{now:%b} {now.day}".upper()}


def build_event_entry(event: Dict[str, Any], now: datetime) -> str:
    """JS object literal for one EVENTS_DATA entry"""
    dates = parse_date_label(event.get("date"), now)
    category = str(event.get("category") or "INSTITUTIONAL").upper()
    threat, emoji = SEVERITY_MAP.get(str(event.get("severity") or "").upper(), DEFAULT_SEVERITY)
    return (
        "  {\n"
        f"    date: '{dates['date']}',\n"
        f"    dateLabel: '{_js_string(dates['dateLabel'])}',\n"
        f"    title: '{_js_string(event.get('title'))}',\n"
        f"    category: '{_js_string(category)}',\n"
        f"    catClass: '{CATEGORY_CLASS.get(category, 'inst')}',\n"
        f"    threat: '{threat}',\n"
        f"    threatEmoji: '{emoji}',\n"
        f"    desc: '{_js_string(event.get('expanded') or '')}'\n"
        "  }"
    )


def insert_events(
    page: str,
    events: Iterable[Dict[str, Any]],
    history: List[str],
    now: datetime,
) -> Tuple[str, List[str], List[str]]:
    """
    Insert new events at the head of EVENTS_DATA.

    Returns (page, inserted_titles, history). A title whose key is already
    in the history or already on the page is skipped.
    """
    marker = page.find(EVENTS_MARKER)
    if marker == -1:
        logger.error("Could not find EVENTS_DATA array in index.html")
        return page, [], history

    seen = existing_title_keys(page) | set(history)
    history = list(history)
    fresh = []
    for event in events:
        if not isinstance(event, dict) or not event.get("title"):
            continue
        key = title_key(event["title"])
        if key in seen:
            logger.info(f"Skipping duplicate event: \"{str(event['title'])[:50]}\"")
            continue
        seen.add(key)
        history.append(key)
        fresh.append(event)

    if not fresh:
        return page, [], history

    position = marker + len(EVENTS_MARKER)
    block = "\n" + ",\n".join(build_event_entry(e, now) for e in fresh) + ","
    return page[:position] + block + page[position:], [e["title"] for e in fresh], history


# =============================================================================
# NARRATIVE REGIONS
# =============================================================================

def replace_para_by_id(page: str, element_id: str, new_text: Any) -> Tuple[str, bool]:
    """Replace the text of <p id=element_id>; skip near-duplicates"""
    if not new_text or not isinstance(new_text, str):
        return page, False
    pattern = re.compile(
        r'(<p\s[^>]*id="' + re.escape(element_id) + r'"[^>]*>)([^<]*)(</p>)',
        re.DOTALL,
    )
    match = pattern.search(page)
    if not match:
        logger.warning(f'Element id="{element_id}" not found in index.html')
        return page, False

    existing = html_lib.unescape(match.group(2)).strip()
    incoming = new_text.strip()
    if existing == incoming or existing[:NEAR_DUPLICATE_PREFIX] == incoming[:NEAR_DUPLICATE_PREFIX]:
        return page, False

    replacement = match.group(1) + html_lib.escape(incoming, quote=False) + match.group(3)
    return page[:match.start()] + replacement + page[match.end():], True


def replace_geo_watchlist(page: str, rows: Any) -> Tuple[str, bool]:
    """Rebuild the inner HTML of <div id="geoWatchlist"> from {region, status_text} rows"""
    if not isinstance(rows, list) or not rows:
        return page, False
    start = page.find(GEO_WATCHLIST_TAG)
    if start == -1:
        logger.warning('Element id="geoWatchlist" not found in index.html')
        return page, False

    content_start = start + len(GEO_WATCHLIST_TAG)
    depth = 1
    i = content_start
    while i < len(page):
        if page.startswith("<div", i):
            depth += 1
        elif page.startswith("</div>", i):
            depth -= 1
            if depth == 0:
                break
        i += 1
    if depth != 0:
        logger.warning('Element id="geoWatchlist" has no closing </div>, skipping')
        return page, False

    esc = lambda s: html_lib.escape(str(s if s is not None else ""), quote=False)
    new_content = "\n" + "\n".join(
        f'        <div class="data-row"><span class="data-label">{esc(r.get("region"))}</span>'
        f'<span class="signal amber">{esc(r.get("status_text"))}</span></div>'
        for r in rows if isinstance(r, dict)
    ) + "\n      "

    if page[content_start:i].strip() == new_content.strip():
        return page, False
    return page[:content_start] + new_content + page[i:], True


# =============================================================================
# APPLY
# =============================================================================

def _updates(opinion: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    return [u for u in opinion.get(key) or [] if isinstance(u, dict)]


def apply_opinion(
    opinion: Dict[str, Any],
    state: Dict[str, Any],
    page: Optional[str],
    history: Optional[List[str]] = None,
    now: Optional[datetime] = None,
) -> PatchResult:
    """Apply an approved opinion; inputs are not mutated"""
    now = now or datetime.now(timezone.utc)
    new_state = copy.deepcopy(state) if isinstance(state, dict) else {}
    result = PatchResult(state=new_state, html=page, history=list(history or []))

    # Scorecard
    for update in _updates(opinion, "scorecard_updates"):
        recommended = update.get("recommended_status")
        if recommended == update.get("previous_status"):
            continue
        key = SCORE_KEY_MAP.get(update.get("category"))
        if not key:
            logger.warning(f"Unknown scorecard category \"{update.get('category')}\", skipping")
            continue
        scores = new_state.setdefault("thesis_scores", {})
        current = scores.get(key) if isinstance(scores.get(key), dict) else {}
        if current.get("status") == recommended:
            continue
        previous = current.get("status") or "?"
        scores[key] = {**current, "status": recommended}
        logger.info(f"Scorecard {update.get('category')}: {previous} → {recommended}")
        result.changelog.append(f"SCORECARD {update.get('category')}: {previous} → {recommended}")
        result.scorecard_changes += 1

    # Kill switches
    for update in _updates(opinion, "kill_switch_updates"):
        recommended = update.get("recommended_status")
        if recommended == update.get("previous_status"):
            continue
        key = KILL_SWITCH_KEY_MAP.get(update.get("name"))
        if not key:
            logger.warning(f"Unknown kill switch \"{update.get('name')}\", skipping")
            continue
        switches = new_state.setdefault("kill_switches", {})
        entry = switches.get(key)
        if not isinstance(entry, dict):
            logger.warning(f"kill_switches.{key} not found in state, skipping")
            continue
        if entry.get("status") == recommended:
            continue
        entry["status"] = recommended
        if update.get("reasoning"):
            entry["_analysis_note"] = update["reasoning"]
        logger.info(f"Kill switch {update.get('name')}: {update.get('previous_status')} → {recommended}")
        result.changelog.append(
            f"KILL_SWITCH {update.get('name')}: {update.get('previous_status')} → {recommended}"
        )
        result.kill_switch_changes += 1

    # Probability
    prob = opinion.get("recommended_probability_adjustment")
    if isinstance(prob, dict) and prob.get("reasoning"):
        current = new_state.get("probability") if isinstance(new_state.get("probability"), dict) else {}
        quad = tuple(prob.get(f) for f in PROBABILITY_FIELDS)
        if quad != tuple(current.get(f) for f in PROBABILITY_FIELDS):
            new_state["probability"] = {
                **dict(zip(PROBABILITY_FIELDS, quad)),
                "last_updated": opinion.get("timestamp"),
                "last_reasoning": prob["reasoning"],
            }
            line = "PROBABILITY: Bear {}% | Base {}% | Mid {}% | Bull {}%".format(*quad)
            logger.info(line)
            result.changelog.append(line)
            result.probability_changed = True

    result.change_count = (
        result.scorecard_changes + result.kill_switch_changes + int(result.probability_changed)
    )

    stress = opinion.get("stress_assessment") if isinstance(opinion.get("stress_assessment"), dict) else {}
    new_state["last_analysis"] = {
        "timestamp": opinion.get("timestamp"),
        "run_type": opinion.get("run_type"),
        "stress_level": stress.get("level"),
        "stress_score": stress.get("score"),
        "applied_at": utc_timestamp(now),
        "changes_applied": result.change_count,
    }

    if page is None:
        logger.warning("No index.html, skipping timeline and narrative updates")
        return result

    # Timeline events
    events = opinion.get("events_draft") or []
    if events:
        page, inserted, result.history = insert_events(page, events, result.history, now)
        result.events_inserted = len(inserted)
        if inserted:
            result.changelog.append(f"EVENTS: {len(inserted)} new event(s) inserted into timeline")

    # Narrative regions
    for opinion_field, element_id in NARRATIVE_REGIONS:
        page, changed = replace_para_by_id(page, element_id, opinion.get(opinion_field))
        if changed:
            result.changelog.append(f"HTML: {opinion_field} updated")
            result.html_changes += 1

    page, changed = replace_geo_watchlist(page, opinion.get("geopolitical_watchlist"))
    if changed:
        result.changelog.append("HTML: geopolitical_watchlist updated")
        result.html_changes += 1

    result.html = page
    result.change_count += result.events_inserted + result.html_changes
    return result
