"""
Mining Ops — Ledger Gateway
HTTP client for the EVE ESI endpoints the core reads: a pilot's cumulative
mining ledger, best buy prices at the trade hub, and resource type names.

Every transport or HTTP failure surfaces as TransientDependencyError so
callers can degrade per user instead of aborting a batch.
"""

import logging
from collections import defaultdict
from typing import Optional, Dict, List, Any

import httpx

import config
from errors import TransientDependencyError

logger = logging.getLogger(__name__)


class LedgerGateway:
    """Thin, synchronous ESI client. Pass ``client`` to inject a transport in tests."""

    def __init__(self, base_url: str = config.ESI_BASE_URL,
                 region_id: int = config.ESI_MARKET_REGION_ID,
                 location_id: int = config.ESI_MARKET_LOCATION_ID,
                 timeout: float = config.ESI_TIMEOUT_SECONDS,
                 client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.region_id = region_id
        self.location_id = location_id
        self.client = client or httpx.Client(timeout=timeout)

    def close(self):
        self.client.close()

    def _get(self, path: str, params: Optional[dict] = None,
             access_token: Optional[str] = None) -> Any:
        headers = {"Accept": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        url = f"{self.base_url}{path}"
        try:
            response = self.client.get(url, params=params, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(f"ESI request {path} failed: {e}")
            raise TransientDependencyError(f"Ledger source unreachable: {e}") from e

        if response.status_code >= 400:
            logger.warning(f"ESI request {path} returned {response.status_code}")
            raise TransientDependencyError(f"Ledger source returned HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError as e:
            raise TransientDependencyError(f"Ledger source sent invalid JSON for {path}") from e

    def get_mining_ledger(self, character_id: int, access_token: str) -> List[Dict[str, int]]:
        """
        Cumulative mined quantities for a character, summed per resource type.

        The ESI ledger returns one row per (date, solar system, type); the sum is
        the absolute reading that snapshots store.
        """
        rows = self._get(f"/characters/{character_id}/mining/", access_token=access_token)
        totals: Dict[int, int] = defaultdict(int)
        for row in rows or []:
            totals[int(row["type_id"])] += int(row.get("quantity", 0))
        return [{"type_id": t, "quantity": q} for t, q in sorted(totals.items())]

    def get_best_buy_price(self, type_id: int) -> float:
        """Highest buy order at the configured station, 0 when there are none."""
        orders = self._get(
            f"/markets/{self.region_id}/orders/",
            params={"type_id": type_id, "order_type": "buy"},
        )
        prices = [float(o["price"]) for o in orders or [] if o.get("location_id") == self.location_id]
        return max(prices) if prices else 0.0

    def get_adjusted_prices(self) -> Dict[int, float]:
        """Region-independent adjusted prices, used as the sell reference."""
        rows = self._get("/markets/prices/")
        return {int(r["type_id"]): float(r.get("adjusted_price", 0) or 0) for r in rows or []}

    def get_type_name(self, type_id: int) -> str:
        data = self._get(f"/universe/types/{type_id}/")
        return data.get("name") or f"Type #{type_id}"
