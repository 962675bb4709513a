"""
OVERWATCH THESIS ANALYST
Claude reads the state blob plus the thesis framework and drafts an opinion

Flow:
1. Preconditions: state file, scripts/thesis-context.md, ANTHROPIC_API_KEY
   (any missing -> best-effort notification, exit 1)
2. One Claude call (one retry after 5s)
3. Strip code fences, parse, schema-check
   (unparseable -> raw text saved to the debug file, notification, exit 1)
4. Write analysis-output.json and send the summary for human review

Nothing is applied here: the opinion waits for approval, then
overwatch.analyst.apply_analysis patches state and page.

Usage:
    python -m overwatch.analyst.thesis_analyst
"""

import os
import re
import json
import html
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

from overwatch.config import OverwatchPaths
from overwatch.notifier import TelegramNotifier
from overwatch.shared.resilience import (
    resilient_call,
    RateLimitError,
    ResilienceError,
)
from overwatch.shared.validation import SchemaValidator
from overwatch.terminal.models import utc_timestamp
from overwatch.terminal.state_store import StateStore, atomic_write_text, write_json

logger = logging.getLogger(__name__)

MODEL = "claude-sonnet-4-20250514"
MAX_TOKENS = 4000

# Fixed offset; the morning/evening split does not follow daylight saving
CHICAGO_OFFSET = timezone(timedelta(hours=-6))


class OpinionParseError(ValueError):
    """Model output is not a JSON object; carries the raw text"""

    def __init__(self, message: str, raw: str):
        self.raw = raw
        super().__init__(message)


# =============================================================================
# PROMPTS
# =============================================================================

SYSTEM_PROMPT = """You are the Overwatch Terminal autonomous analyst. You assess live market data against an XRP institutional adoption thesis framework.

You receive:
1. The current dashboard data (prices, macro indicators, ETF flows, XRPL metrics)
2. The thesis framework (kill switches, probability model, institutional evidence)
3. Recent news headlines

Respond with one JSON object with these fields:

{
  "timestamp": "ISO timestamp",
  "run_type": "morning" or "evening",
  "market_summary": "2-3 sentences on current market conditions",
  "thesis_pulse": "3-5 sentences on the thesis, naming what changed and citing numbers",
  "stress_assessment": {
    "level": "LOW" | "MODERATE" | "ELEVATED" | "HIGH" | "CRITICAL",
    "score": 1-100,
    "interpretation": "2-3 sentences on the stress environment"
  },
  "kill_switch_updates": [
    {"name": "kill switch name", "previous_status": "...", "recommended_status": "...", "reasoning": "..."}
  ],
  "scorecard_updates": [
    {"category": "category name", "previous_status": "...", "recommended_status": "...", "reasoning": "..."}
  ],
  "alerts": [
    {"severity": "INFO" | "WARNING" | "CRITICAL", "message": "what happened or what to watch"}
  ],
  "etf_analysis": "1-2 sentences on ETF flow trends",
  "macro_analysis": "1-2 sentences on yen, yields, oil, tariffs",
  "recommended_probability_adjustment": {
    "bear": 8, "base": 55, "mid": 25, "bull": 12,
    "reasoning": "only when recommending a change"
  },
  "events_draft": [
    {"date": "Feb 20", "category": "INSTITUTIONAL", "severity": "ELEVATED", "title": "Concise title", "expanded": "1-2 sentences of thesis relevance"}
  ],
  "geopolitical_watchlist": [
    {"region": "Japan / BOJ", "status_text": "one sentence with the key signal"}
  ],
  "energy_interpretation": "2-3 sentences on energy markets and the Japan stress loop",
  "thesis_pulse_assessment": "3-4 sentences for the dashboard assessment box",
  "stress_interpretation": "2-3 sentences for the dashboard stress card, citing thresholds"
}

Rules:
- Be precise and data-driven. Cite specific numbers.
- Do not default to bullish. Flag deterioration as readily as improvement.
- If a kill switch should trip, say so plainly.
- If data is missing or stale, say so; never fill gaps with assumptions.
- events_draft only carries headlines that materially affect the framework.
- Terminal voice for the dashboard fields: terse, specific, signal-focused.
- Output ONLY valid JSON. No markdown, no text outside the JSON."""


def run_type_for(now: Optional[datetime] = None) -> str:
    """'morning' before noon Chicago time (fixed UTC-6), else 'evening'"""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return "morning" if now.astimezone(CHICAGO_OFFSET).hour < 12 else "evening"


def build_user_prompt(state: Dict[str, Any], thesis_context: str, now: datetime, run_type: str) -> str:
    headlines = (state.get("news") or {}).get("headlines") or []
    return f"""## CURRENT DASHBOARD DATA
{json.dumps(state, indent=2, ensure_ascii=False)}

## THESIS FRAMEWORK
{thesis_context}

## RECENT NEWS HEADLINES
{json.dumps(headlines, indent=2, ensure_ascii=False)}

## ANALYSIS INSTRUCTIONS
- Current time: {utc_timestamp(now)}
- Run type: {run_type}
- Compare current data against kill switch thresholds
- Assess stress indicators (USD/JPY, JGB yield, oil, Fear & Greed)
- Evaluate ETF flow trends
- Check whether any scorecard item needs a status change
- For each thesis-relevant headline draft an events_draft entry: date ("Mon DD"),
  category (INSTITUTIONAL | REGULATORY | GEOPOLITICAL | FINANCIAL),
  severity (MONITORING | ELEVATED | CRITICAL), title, expanded
- Flag any headline that suggests a kill switch status change

Respond with the JSON analysis object only."""


# =============================================================================
# PARSING
# =============================================================================

FENCE_OPEN = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
FENCE_CLOSE = re.compile(r"\s*```\s*$")


def strip_code_fences(text: str) -> str:
    return FENCE_CLOSE.sub("", FENCE_OPEN.sub("", text)).strip()


def parse_opinion(raw: str, run_type: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Parse and schema-check model output; OpinionParseError if unusable"""
    cleaned = strip_code_fences(raw or "")
    try:
        opinion = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise OpinionParseError(f"JSON parse failed: {e}", raw)

    check = SchemaValidator.validate_opinion(opinion)
    check.log_issues(prefix="[opinion] ")
    if not check.valid:
        raise OpinionParseError(f"Opinion failed schema check: {check.first_error()}", raw)

    opinion.setdefault("timestamp", utc_timestamp(now))
    opinion.setdefault("run_type", run_type)
    return opinion


# =============================================================================
# SUMMARY MESSAGE
# =============================================================================

def _esc(value: Any) -> str:
    return html.escape(str(value), quote=False) if value is not None else ""


def _changed(updates: Any) -> List[Dict[str, Any]]:
    return [
        u for u in (updates or [])
        if isinstance(u, dict) and u.get("recommended_status") != u.get("previous_status")
    ]


def format_summary_message(opinion: Dict[str, Any], state: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """HTML summary of an opinion for operator review"""
    now = now or datetime.now(timezone.utc)
    run_label = "Morning" if opinion.get("run_type") == "morning" else "Evening"
    date_str = now.strftime("%b %d, %Y").replace(" 0", " ")

    xrp = state.get("xrp") or {}
    macro = state.get("macro") or {}
    etf = state.get("etf") or {}

    price = f"${xrp['price']:.4f}" if isinstance(xrp.get("price"), (int, float)) else "--"
    change = xrp.get("change_24h")
    chg = f"{change:+.2f}%" if isinstance(change, (int, float)) else "--"
    fgi = (macro.get("fear_greed") or {}).get("value", "--")
    usd_jpy = f"¥{macro['usd_jpy']:.2f}" if isinstance(macro.get("usd_jpy"), (int, float)) else "--"

    etf_line = "--"
    if isinstance(etf.get("daily_net_flow"), (int, float)):
        etf_line = f"{etf['daily_net_flow'] / 1e6:+.2f}M daily"
    elif isinstance(etf.get("weekly_net_flow"), (int, float)):
        etf_line = f"{etf['weekly_net_flow'] / 1e6:+.2f}M/wk"

    icons = {"CRITICAL": "🚨", "WARNING": "⚠️"}
    alerts = "\n".join(
        f"{icons.get(a.get('severity'), 'ℹ️')} {_esc(a.get('message'))}"
        for a in opinion.get("alerts") or [] if isinstance(a, dict)
    ) or "None"

    ks_changes = _changed(opinion.get("kill_switch_updates"))
    sc_changes = _changed(opinion.get("scorecard_updates"))
    ks_lines = "\n".join(
        f"• {_esc(k.get('name'))}: {_esc(k.get('previous_status'))} → {_esc(k.get('recommended_status'))}"
        for k in ks_changes
    ) or "None"
    sc_lines = "\n".join(
        f"• {_esc(s.get('category'))}: {_esc(s.get('previous_status'))} → {_esc(s.get('recommended_status'))}"
        for s in sc_changes
    ) or "None"

    prob = opinion.get("recommended_probability_adjustment")
    prob_line = (
        f"Bear {prob.get('bear')}% | Base {prob.get('base')}% | Mid {prob.get('mid')}% | Bull {prob.get('bull')}%"
        if isinstance(prob, dict) else "(no change recommended)"
    )

    stress = opinion.get("stress_assessment") or {}
    events = [e for e in opinion.get("events_draft") or [] if isinstance(e, dict)]
    if events:
        events_section = (
            f"\n📰 <b>THESIS-RELEVANT NEWS: {len(events)}</b>\n"
            + "\n".join(f"• [{_esc(e.get('category'))}] [{_esc(e.get('severity'))}] {_esc(e.get('title'))}" for e in events)
            + "\n\n📋 <b>EVENTS DRAFT:</b>\n"
            + "\n\n".join(
                f"<b>{_esc(e.get('date'))} · {_esc(e.get('category'))} · {_esc(e.get('severity'))}</b>\n"
                f"{_esc(e.get('title'))}\n<i>{_esc(e.get('expanded'))}</i>"
                for e in events
            )
        )
    else:
        events_section = "\n📰 <b>THESIS-RELEVANT NEWS:</b> None flagged"

    return f"""🔭 <b>OVERWATCH ANALYSIS: {run_label} {date_str}</b>

📊 <b>MARKET:</b> XRP {price} ({chg}) | F&amp;G: {_esc(fgi)} | USD/JPY: {usd_jpy}
📈 <b>ETF FLOW:</b> {etf_line}

📝 <b>THESIS PULSE:</b>
{_esc(opinion.get('thesis_pulse') or '(not available)')}

⚡ <b>STRESS:</b> {_esc(stress.get('level', '--'))} ({_esc(stress.get('score', '--'))}/100)
{_esc(stress.get('interpretation'))}

📈 <b>ETF:</b> {_esc(opinion.get('etf_analysis') or '--')}

🌍 <b>MACRO:</b> {_esc(opinion.get('macro_analysis') or '--')}

⚠️ <b>ALERTS:</b>
{alerts}

🎯 <b>KILL SWITCH CHANGES:</b> {len(ks_changes)}
{ks_lines}

📊 <b>SCORECARD CHANGES:</b> {len(sc_changes)}
{sc_lines}

🎲 <b>PROBABILITY:</b>
{prob_line}
{events_section}

<i>To apply: run the approval step (python -m overwatch.analyst.apply_analysis).</i>"""


# =============================================================================
# CLAUDE CLIENT
# =============================================================================

class ThesisAnalyst:
    """Produces opinion documents from the state blob with Claude"""

    def __init__(self, api_key: Optional[str] = None, client: Any = None, model: str = MODEL):
        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        self.model = model
        self.client = client
        if self.client is None and self.api_key:
            try:
                import anthropic
                self.client = anthropic.Anthropic(api_key=self.api_key)
            except ImportError:
                logger.error("anthropic package not installed")
                self.client = None

    def is_available(self) -> bool:
        return self.client is not None

    @resilient_call(
        service_name="anthropic_analyst",
        max_retries=1,
        base_delay=5.0,
        retry_on=(Exception,),
    )
    def _call_claude(self, prompt: str) -> str:
        """One messages.create call; returns the text of the first block"""
        import anthropic

        logger.info(f"Calling {self.model}...")
        try:
            response = self.client.messages.create(
                model=self.model,
                max_tokens=MAX_TOKENS,
                system=SYSTEM_PROMPT,
                messages=[{"role": "user", "content": prompt}],
            )
        except anthropic.RateLimitError:
            raise RateLimitError("anthropic_analyst", retry_after=60)
        return response.content[0].text

    def analyze(
        self,
        state: Dict[str, Any],
        thesis_context: str,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Return a parsed opinion document; raises OpinionParseError or ResilienceError"""
        now = now or datetime.now(timezone.utc)
        run_type = run_type_for(now)
        logger.info(f"Run type: {run_type}")

        raw = self._call_claude(build_user_prompt(state, thesis_context, now, run_type))
        logger.info(f"Response received ({len(raw)} chars)")
        return parse_opinion(raw, run_type, now)


# =============================================================================
# RUNNER
# =============================================================================

def run_analysis(
    paths: OverwatchPaths,
    analyst: Optional[ThesisAnalyst] = None,
    notifier: Optional[TelegramNotifier] = None,
    now: Optional[datetime] = None,
) -> int:
    """Full analysis pass; returns the process exit code"""
    notifier = notifier or TelegramNotifier()
    now = now or datetime.now(timezone.utc)

    store = StateStore(paths.state)
    if not store.exists():
        logger.error("dashboard-data.json not found, run the fetch cycle first")
        return 1
    state = store.load()

    if not paths.thesis_context.exists():
        logger.error(f"{paths.thesis_context} not found")
        notifier.send("⚠️ OVERWATCH: Analysis failed, thesis-context.md missing")
        return 1
    thesis_context = paths.thesis_context.read_text(encoding="utf-8")

    analyst = analyst or ThesisAnalyst()
    if not analyst.is_available():
        logger.error("ANTHROPIC_API_KEY not set")
        notifier.send("⚠️ OVERWATCH: Analysis failed, ANTHROPIC_API_KEY not set")
        return 1

    try:
        opinion = analyst.analyze(state, thesis_context, now)
    except OpinionParseError as e:
        logger.error(str(e))
        try:
            atomic_write_text(paths.debug_response, e.raw or "")
            logger.warning(f"Raw response saved to {paths.debug_response}")
        except OSError as write_error:
            logger.warning(f"Could not write debug file: {write_error}")
        notifier.send(
            "⚠️ <b>OVERWATCH: JSON parse failed</b>\n\n"
            "Debug saved to scripts/debug-claude-response.txt\n\n"
            f"Raw output preview:\n<pre>{_esc((e.raw or '')[:2000])}</pre>"
        )
        return 1
    except ResilienceError as e:
        logger.error(f"Claude API call failed after retry: {e}")
        notifier.send(f"🚨 <b>OVERWATCH: Analysis failed, Claude API unreachable</b>\n\nError: {_esc(e)}")
        return 1

    write_json(paths.analysis, opinion)
    logger.info(f"Wrote {paths.analysis}")
    notifier.send(format_summary_message(opinion, state, now))

    stress = opinion.get("stress_assessment") or {}
    print(f"\n{'-'*60}")
    print(f"Stress level:    {stress.get('level', 'N/A')} ({stress.get('score', 'N/A')}/100)")
    print(f"Kill sw changes: {len(_changed(opinion.get('kill_switch_updates')))}")
    print(f"Score changes:   {len(_changed(opinion.get('scorecard_updates')))}")
    print(f"Alerts:          {len(opinion.get('alerts') or [])}")
    print(f"Events drafted:  {len(opinion.get('events_draft') or [])}")
    print(f"{'-'*60}")
    return 0


def main():
    import argparse
    from dotenv import load_dotenv

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    load_dotenv()

    parser = argparse.ArgumentParser(description="Draft a thesis analysis for approval")
    parser.add_argument("--root", help="Repository root (default: OVERWATCH_ROOT or cwd)")
    args = parser.parse_args()

    exit(run_analysis(OverwatchPaths.from_env(args.root)))


if __name__ == "__main__":
    main()
