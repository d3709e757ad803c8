"""Tests for the ESI ledger gateway using httpx's mock transport."""

import httpx
import pytest

from errors import TransientDependencyError
from gateway import LedgerGateway


def _make_gateway(handler) -> LedgerGateway:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return LedgerGateway(base_url="https://esi.test/latest", region_id=10000002,
                         location_id=60003760, client=client)


class TestMiningLedger:
    def test_rows_are_summed_per_type(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            return httpx.Response(200, json=[
                {"date": "2026-05-01", "solar_system_id": 1, "type_id": 1230, "quantity": 100},
                {"date": "2026-05-01", "solar_system_id": 2, "type_id": 1230, "quantity": 50},
                {"date": "2026-04-30", "solar_system_id": 1, "type_id": 1228, "quantity": 7},
            ])

        ledger = _make_gateway(handler).get_mining_ledger(95000001, "tok")
        assert ledger == [{"type_id": 1228, "quantity": 7}, {"type_id": 1230, "quantity": 150}]
        assert seen["path"] == "/latest/characters/95000001/mining/"
        assert seen["auth"] == "Bearer tok"

    def test_http_error_is_transient(self) -> None:
        gateway = _make_gateway(lambda request: httpx.Response(502, json={"error": "bad gateway"}))
        with pytest.raises(TransientDependencyError):
            gateway.get_mining_ledger(1, "tok")

    def test_connection_error_is_transient(self) -> None:
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(TransientDependencyError):
            _make_gateway(handler).get_mining_ledger(1, "tok")


class TestPrices:
    def test_best_buy_at_configured_station(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["order_type"] == "buy"
            return httpx.Response(200, json=[
                {"location_id": 60003760, "price": 12.0},
                {"location_id": 60003760, "price": 14.5},
                {"location_id": 60008494, "price": 99.0},
            ])

        assert _make_gateway(handler).get_best_buy_price(1230) == 14.5

    def test_no_orders_means_zero(self) -> None:
        assert _make_gateway(lambda request: httpx.Response(200, json=[])).get_best_buy_price(1230) == 0.0

    def test_type_name(self) -> None:
        gateway = _make_gateway(lambda request: httpx.Response(200, json={"name": "Veldspar"}))
        assert gateway.get_type_name(1230) == "Veldspar"
