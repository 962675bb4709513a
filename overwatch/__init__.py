"""
Overwatch Terminal
Live market / macro data pipeline behind the XRP thesis dashboard

Modules:
- terminal: source adapters, reconciliation, state store, fetch cycle
- analyst: drafted thesis analysis (Claude) and the approval patch engine
- x402: XRPL micropayment agent and paywalled merchant
- notifier: Telegram operator notifications
- scheduler: APScheduler runner for the fetch / analysis jobs

Quick Start:
    python -m overwatch.terminal.fetch_cycle        # fetch + reconcile + push
    python -m overwatch.analyst.thesis_analyst      # draft analysis-output.json
    python -m overwatch.analyst.apply_analysis      # apply after review

Environment Variables:
    OVERWATCH_ROOT        - Directory holding dashboard-data.json / index.html
    ANTHROPIC_API_KEY     - Claude API key (analysis)
    TELEGRAM_BOT_TOKEN    - Telegram bot token (notifications)
    TELEGRAM_CHAT_ID      - Telegram chat id (notifications)
    FRED_API_KEY          - FRED yields / Brent (optional)
    ALPHA_VANTAGE_KEY     - USD/JPY primary (optional)
    TWELVE_DATA_KEY       - JGB 10Y primary (optional)
    CRYPTOPANIC_API_KEY   - News primary (optional)
    NEWSDATA_API_KEY      - News fallback (optional)
    X402_MAINNET_SEED     - Payment agent wallet seed
    XRPL_MERCHANT_ADDRESS - Merchant receiving address
"""

__version__ = "1.0.0"
__author__ = "Overwatch"
