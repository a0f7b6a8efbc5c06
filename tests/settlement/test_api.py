"""
Tests for the Settlement HTTP API.

============================================================
PURPOSE
============================================================
Endpoint behavior through an in-process aiohttp test server.

TEST CATEGORIES:
1. Trade submission and rejection status codes
2. Admin override and order cancellation
3. Query endpoints
4. Outcome mode administration
5. Serialization

============================================================
"""

import json
import pytest
from decimal import Decimal

from aiohttp import test_utils

from settlement_engine.api import SettlementEncoder, create_app
from settlement_engine.clock import MockClock
from settlement_engine.config import SettlementEngineConfig
from settlement_engine.engine import SettlementEngine
from settlement_engine.ledger import InMemoryBalanceLedger
from settlement_engine.outcome import FixedProbabilityModel
from settlement_engine.price_source import StaticPriceSource
from settlement_engine.types import OutcomeMode, PositionStatus


# ============================================================
# FIXTURES
# ============================================================

@pytest.fixture
def clock():
    return MockClock()


@pytest.fixture
def prices():
    return StaticPriceSource({"BTC": Decimal("45000")})


@pytest.fixture
def engine(prices, clock):
    """Engine with 10000 USDT."""
    return SettlementEngine(
        InMemoryBalanceLedger({"USDT": Decimal("10000")}),
        prices,
        config=SettlementEngineConfig.for_testing(),
        clock=clock,
        probability_model=FixedProbabilityModel(),
    )


def client_for(engine):
    return test_utils.TestClient(test_utils.TestServer(create_app(engine)))


SPOT_BUY = {
    "instrument_type": "spot",
    "action": "buy",
    "symbol": "BTC",
    "amount": "100",
    "duration_seconds": 300,
}

LIMIT_ORDER = {
    "instrument_type": "futures",
    "action": "buy",
    "symbol": "BTC",
    "amount": "1",
    "price": "44000",
    "leverage": "10",
    "trigger_type": "limit",
}


# ============================================================
# SUBMISSION TESTS
# ============================================================

class TestSubmitEndpoint:
    """Tests for POST /api/trades."""

    @pytest.mark.asyncio
    async def test_accepted(self, engine):
        """Test an accepted trade returns 201 with string money values."""
        async with client_for(engine) as client:
            response = await client.post("/api/trades", json=SPOT_BUY)
            body = await response.json()

        assert response.status == 201
        assert body["status"] == "ok"
        assert body["data"]["status"] == "OPEN"
        assert body["data"]["reserved_funds"] == "100"
        assert body["data"]["profit_percentage"] == "7.5"

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, engine):
        """Test an unaffordable trade returns 402."""
        async with client_for(engine) as client:
            response = await client.post("/api/trades", json=dict(SPOT_BUY, amount="20000"))
            body = await response.json()

        assert response.status == 402
        assert body["code"] == "VAL_INSUFFICIENT_BALANCE"
        assert body["retryable"] is False
        assert engine.available_balance() == Decimal("10000")

    @pytest.mark.asyncio
    async def test_validation_error(self, engine):
        """Test an invalid trade returns 400."""
        async with client_for(engine) as client:
            response = await client.post("/api/trades", json=dict(SPOT_BUY, action="stake"))
            body = await response.json()

        assert response.status == 400
        assert body["code"] == "VAL_UNSUPPORTED_ACTION"

    @pytest.mark.asyncio
    async def test_price_unavailable(self, engine):
        """Test an unpriced symbol returns 503."""
        async with client_for(engine) as client:
            response = await client.post("/api/trades", json=dict(SPOT_BUY, symbol="DOGE"))

        assert response.status == 503

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [
        '{"instrument_type": "spot", "action": "buy", "symbol": "BTC", "amount": NaN}',
        '{"instrument_type": "spot", "action": "buy", "symbol": "BTC", "amount": "sNaN"}',
        '{"instrument_type": "spot", "action": "buy", "symbol": "BTC", "amount": "100",'
        ' "duration_seconds": Infinity}',
    ])
    async def test_non_finite_numbers(self, engine, body):
        """Test NaN and infinite numbers return 400."""
        async with client_for(engine) as client:
            response = await client.post(
                "/api/trades", data=body, headers={"Content-Type": "application/json"}
            )
            payload = await response.json()

        assert response.status == 400
        assert payload["code"] == "VAL_INVALID_FIELD"
        assert engine.available_balance() == Decimal("10000")

    @pytest.mark.asyncio
    async def test_non_json_body(self, engine):
        """Test a non-JSON body returns 400."""
        async with client_for(engine) as client:
            response = await client.post("/api/trades", data="not json")
            body = await response.json()

        assert response.status == 400
        assert body["code"] == "VAL_INVALID_REQUEST"


# ============================================================
# ADMIN ACTION TESTS
# ============================================================

class TestAdminEndpoints:
    """Tests for override and cancel endpoints."""

    @pytest.mark.asyncio
    async def test_override(self, engine):
        """Test override settles the position and a second one conflicts."""
        async with client_for(engine) as client:
            created = await (await client.post("/api/trades", json=SPOT_BUY)).json()
            position_id = created["data"]["id"]

            response = await client.post(
                f"/api/positions/{position_id}/override", json={"outcome": "win"}
            )
            body = await response.json()
            again = await client.post(
                f"/api/positions/{position_id}/override", json={"outcome": "win"}
            )

        assert response.status == 200
        assert body["data"]["status"] == "ADMIN_OVERRIDDEN"
        assert body["data"]["payout"] == "107.500"
        assert again.status == 409

    @pytest.mark.asyncio
    async def test_override_unknown(self, engine):
        """Test override of an unknown id returns 404."""
        async with client_for(engine) as client:
            response = await client.post("/api/positions/POS_NOPE/override", json={"outcome": "lose"})

        assert response.status == 404

    @pytest.mark.asyncio
    async def test_override_requires_outcome(self, engine):
        """Test a missing outcome returns 400."""
        async with client_for(engine) as client:
            created = await (await client.post("/api/trades", json=SPOT_BUY)).json()
            response = await client.post(
                f"/api/positions/{created['data']['id']}/override", json={}
            )

        assert response.status == 400

    @pytest.mark.asyncio
    async def test_cancel_order(self, engine):
        """Test cancelling a pending order, then cancelling it again."""
        async with client_for(engine) as client:
            created = await (await client.post("/api/trades", json=LIMIT_ORDER)).json()
            order_id = created["data"]["id"]

            response = await client.delete(f"/api/orders/{order_id}")
            body = await response.json()
            again = await client.delete(f"/api/orders/{order_id}")

        assert response.status == 200
        assert body["data"]["status"] == "CANCELLED"
        assert again.status == 409

    @pytest.mark.asyncio
    async def test_cancel_open_position(self, engine):
        """Test cancelling an OPEN position is refused."""
        async with client_for(engine) as client:
            created = await (await client.post("/api/trades", json=SPOT_BUY)).json()
            response = await client.delete(f"/api/orders/{created['data']['id']}")

        assert response.status == 400


# ============================================================
# QUERY TESTS
# ============================================================

class TestQueryEndpoints:
    """Tests for read-only endpoints."""

    @pytest.mark.asyncio
    async def test_open_positions(self, engine, clock):
        """Test open positions carry the time remaining."""
        async with client_for(engine) as client:
            await client.post("/api/trades", json=SPOT_BUY)
            await client.post("/api/trades", json=LIMIT_ORDER)
            clock.advance(100)

            open_only = await (await client.get("/api/positions/open")).json()
            with_pending = await (
                await client.get("/api/positions/open", params={"include_pending": "true"})
            ).json()

        assert len(open_only["data"]) == 1
        assert open_only["data"][0]["time_remaining"] == 200.0
        assert len(with_pending["data"]) == 2

    @pytest.mark.asyncio
    async def test_history_and_statistics(self, engine, prices, clock):
        """Test settled positions show up in history and statistics."""
        async with client_for(engine) as client:
            await client.post("/api/trades", json=SPOT_BUY)
            prices.set_price("BTC", Decimal("46000"))
            clock.advance(300)
            await engine.tick()

            history = await (
                await client.get("/api/positions/history", params={"status": "won"})
            ).json()
            stats = await (await client.get("/api/statistics")).json()
            lost = await (
                await client.get("/api/positions/history", params={"status": "lost"})
            ).json()

        assert [p["status"] for p in history["data"]] == [PositionStatus.WON.value]
        assert lost["data"] == []
        assert stats["data"]["wins"] == 1
        assert stats["data"]["net_profit"] == "7.500"
        assert stats["balance"] == "10007.500"

    @pytest.mark.asyncio
    async def test_bad_filters(self, engine):
        """Test invalid filters and limits return 400."""
        async with client_for(engine) as client:
            bad_type = await client.get("/api/positions/history", params={"instrument_type": "forex"})
            bad_limit = await client.get("/api/notifications", params={"limit": "-1"})
            bad_stats = await client.get("/api/statistics", params={"instrument_type": "forex"})

        assert bad_type.status == 400
        assert bad_limit.status == 400
        assert bad_stats.status == 400

    @pytest.mark.asyncio
    async def test_notifications_and_activities(self, engine):
        """Test notification and activity feeds."""
        async with client_for(engine) as client:
            await client.post("/api/trades", json=SPOT_BUY)
            await client.post("/api/trades", json=dict(SPOT_BUY, amount="20000"))

            notifications = await (
                await client.get("/api/notifications", params={"limit": "1"})
            ).json()
            activities = await (await client.get("/api/activities")).json()

        assert len(notifications["data"]) == 1
        assert notifications["data"][0]["kind"] == "insufficient_balance"
        assert [a["status"] for a in activities["data"]] == ["error", "pending"]

    @pytest.mark.asyncio
    async def test_health(self, engine):
        """Test the health endpoint reports engine stats."""
        async with client_for(engine) as client:
            body = await (await client.get("/api/health")).json()

        assert body["status"] == "ok"
        assert body["running"] is False
        assert body["stats"]["submitted"] == 0


# ============================================================
# OUTCOME MODE TESTS
# ============================================================

class TestOutcomeModeEndpoints:
    """Tests for GET/PUT /api/outcome-mode."""

    @pytest.mark.asyncio
    async def test_set_and_get(self, engine):
        """Test the mode round trips through the API."""
        async with client_for(engine) as client:
            response = await client.put(
                "/api/outcome-mode", json={"mode": "force_loss", "scope": "new_trades"}
            )
            current = await (await client.get("/api/outcome-mode")).json()

        assert response.status == 200
        assert current["data"]["mode"] == "force_loss"
        assert current["data"]["scope"] == "new_trades"
        assert engine.get_outcome_mode().mode == OutcomeMode.FORCE_LOSS

    @pytest.mark.asyncio
    async def test_invalid_mode(self, engine):
        """Test an unknown mode returns 400."""
        async with client_for(engine) as client:
            response = await client.put("/api/outcome-mode", json={"mode": "always_win"})

        assert response.status == 400


# ============================================================
# SERIALIZATION TESTS
# ============================================================

class TestSettlementEncoder:
    """Tests for SettlementEncoder."""

    def test_decimal_as_string(self):
        """Test Decimal values keep their exact digits."""
        text = json.dumps({"amount": Decimal("0.10000001")}, cls=SettlementEncoder)
        assert json.loads(text) == {"amount": "0.10000001"}

    def test_enum_and_dataclass(self):
        """Test enums and to_dict objects are encoded."""
        data = json.loads(json.dumps(
            {"mode": OutcomeMode.FORCE_WIN, "status": PositionStatus.OPEN},
            cls=SettlementEncoder,
        ))
        assert data == {"mode": "force_win", "status": "OPEN"}
