"""Plan Registry - server-maintained allow-list of PRO price IDs.

This is the AUTHORITATIVE source for:
- Which Stripe price IDs grant PRO
- Plan aliases accepted from clients and configuration (pro_monthly, pro_yearly)

NON-NEGOTIABLE RULES:
1. Plan is derived from subscription line item price_id ONLY
2. An unrecognized price never grants PRO (fail closed)
3. The allow-list comes from server configuration, never from a payload
4. Aliases name configured prices; a subscription must carry the real price ID
"""
import os
import logging
from typing import Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)


# ============================================================================
# PRICE ALIASES - alias -> environment variable holding the Stripe price ID
# ============================================================================
PRICE_ALIAS_ENV = {
    "pro_monthly": "STRIPE_PRICE_PRO_MONTHLY",
    "pro_yearly": "STRIPE_PRICE_PRO_YEARLY",
}


def load_price_aliases_from_env() -> Dict[str, str]:
    """Read configured PRO prices. Missing variables are skipped, not defaulted."""
    aliases = {}
    for alias, env_name in PRICE_ALIAS_ENV.items():
        price_id = (os.getenv(env_name) or "").strip()
        if price_id:
            aliases[alias] = price_id
    return aliases


class PlanRegistry:
    """Allow-list lookups. Instances are immutable after construction."""

    def __init__(self, aliases: Optional[Dict[str, str]] = None):
        self._aliases = dict(aliases) if aliases is not None else load_price_aliases_from_env()
        self._allowed = frozenset(self._aliases.values())

    def allowed_price_ids(self) -> frozenset:
        return self._allowed

    def aliases(self) -> Dict[str, str]:
        return dict(self._aliases)

    def is_allowed(self, price_id: Optional[str]) -> bool:
        return bool(price_id) and price_id in self._allowed

    def alias_for(self, price_id: Optional[str]) -> Optional[str]:
        """Human-readable alias of an allow-listed price (pro_monthly / pro_yearly)."""
        for alias, configured in self._aliases.items():
            if configured == price_id:
                return alias
        return None

    def select_plan_id(self, price_ids: Iterable[str]) -> Optional[str]:
        """Pick the first allow-listed price of a subscription, else the first one seen.

        The fallback keeps the unrecognized price visible on the snapshot so the
        calculator can refuse it explicitly.
        """
        price_ids: List[str] = [p for p in price_ids if p]
        for price_id in price_ids:
            if self.is_allowed(price_id):
                return price_id
        return price_ids[0] if price_ids else None


# Singleton instance
plan_registry = PlanRegistry()

if not plan_registry.allowed_price_ids():
    logger.warning("No PRO price configured (STRIPE_PRICE_PRO_MONTHLY / STRIPE_PRICE_PRO_YEARLY). No subscription will grant PRO.")
