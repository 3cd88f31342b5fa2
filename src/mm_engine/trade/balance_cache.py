"""Short-TTL balance cache keyed by (account, asset)."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from mm_engine.models.market import MarketBalances

if TYPE_CHECKING:
    from mm_engine.gateway import BalanceSource, Clock
    from mm_engine.models.market import AssetBalance, Market

logger = structlog.get_logger()


class BalanceCache:
    """Serves balances younger than ``ttl_seconds`` without hitting the source.

    No locking: entries are idempotent reads with bounded staleness. A failed
    fetch falls back to the stale entry when one exists.
    """

    def __init__(self, source: BalanceSource, clock: Clock, ttl_seconds: float = 2.0) -> None:
        self.source = source
        self.clock = clock
        self.ttl_ms = int(ttl_seconds * 1000)
        self._entries: dict[tuple[str, str], tuple[int, AssetBalance]] = {}

    async def get_balance(self, asset_id: str, account_id: str) -> AssetBalance:
        key = (account_id, asset_id)
        now = self.clock.now_ms()
        cached = self._entries.get(key)
        if cached is not None and now - cached[0] < self.ttl_ms:
            return cached[1]

        try:
            balance = await self.source.get_balance(asset_id, account_id)
        except Exception:
            if cached is None:
                raise
            logger.warning(
                "balance_fetch_failed_serving_stale",
                asset_id=asset_id,
                account_id=account_id,
                age_ms=now - cached[0],
            )
            return cached[1]

        self._entries[key] = (now, balance)
        return balance

    async def get_market_balances(self, market: Market, account_id: str) -> MarketBalances:
        base = await self.get_balance(market.base.asset_id, account_id)
        quote = await self.get_balance(market.quote.asset_id, account_id)
        return MarketBalances(base=base, quote=quote)

    def clear(self) -> None:
        self._entries.clear()
