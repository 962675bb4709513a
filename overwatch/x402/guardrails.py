"""
Pre-submission spending limits for the payment agent

check() runs before anything is signed; a non-None reason means the
payment must not reach the network.
"""

import logging
from typing import Optional, Tuple

from overwatch import config
from overwatch.x402.codec import DROPS_PER_XRP

logger = logging.getLogger(__name__)


class SpendingGuardrails:
    """Balance floor, per-transaction cap, session cap, transaction-type whitelist"""

    def __init__(
        self,
        balance_floor_xrp: Optional[float] = None,
        per_tx_cap_drops: Optional[int] = None,
        session_cap_drops: Optional[int] = None,
        allowed_tx_types: Tuple[str, ...] = ("Payment",),
    ):
        self.balance_floor_xrp = (
            config.GUARDRAIL_BALANCE_FLOOR_XRP if balance_floor_xrp is None else balance_floor_xrp
        )
        self.per_tx_cap_drops = (
            config.GUARDRAIL_PER_TX_CAP_DROPS if per_tx_cap_drops is None else per_tx_cap_drops
        )
        self.session_cap_drops = (
            config.GUARDRAIL_SESSION_CAP_DROPS if session_cap_drops is None else session_cap_drops
        )
        self.allowed_tx_types = allowed_tx_types
        self.session_spent_drops = 0

    def check(self, amount_drops: int, balance_xrp: Optional[float], tx_type: str = "Payment") -> Optional[str]:
        """Reason the payment is refused, or None when it may proceed"""
        if tx_type not in self.allowed_tx_types:
            return "transaction type not allowed"
        if amount_drops <= 0:
            return "invalid amount"
        if amount_drops > self.per_tx_cap_drops:
            return "cap exceeded"
        if self.session_spent_drops + amount_drops > self.session_cap_drops:
            return "session cap exceeded"
        if balance_xrp is not None and balance_xrp - amount_drops / DROPS_PER_XRP < self.balance_floor_xrp:
            return "balance floor"
        return None

    def record_spend(self, amount_drops: int) -> None:
        self.session_spent_drops += amount_drops
        logger.info(f"Session spend: {self.session_spent_drops}/{self.session_cap_drops} drops")
