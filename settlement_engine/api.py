"""
Settlement Engine - HTTP API.

============================================================
PURPOSE
============================================================
HTTP surface over the SettlementEngine.

ENDPOINTS:
    POST   /api/trades                       submit a trade
    POST   /api/positions/{id}/override      admin override
    DELETE /api/orders/{id}                  cancel a pending order
    GET    /api/positions/open
    GET    /api/positions/history
    GET    /api/statistics
    GET    /api/notifications
    GET    /api/activities
    GET    /api/outcome-mode
    PUT    /api/outcome-mode                 admin outcome mode
    GET    /api/health

Money values are serialized as strings to keep them exact.

============================================================
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from aiohttp import web

from .engine import SettlementEngine
from .errors import ErrorCategory, get_error_info
from .types import (
    HistoryFilter,
    InstrumentType,
    InvalidRequest,
    Outcome,
    OutcomeMode,
    OutcomeModeScope,
    PositionAlreadyTerminal,
    PositionNotFound,
    PositionStatus,
    SettlementEngineError,
)


logger = logging.getLogger(__name__)


ENGINE_KEY = web.AppKey("settlement_engine", SettlementEngine)

ERROR_STATUS = {
    "VAL_INSUFFICIENT_BALANCE": 402,
    "POS_NOT_FOUND": 404,
    "POS_ALREADY_TERMINAL": 409,
    "PRC_UNAVAILABLE": 503,
}


# ============================================================
# JSON ENCODER
# ============================================================

class SettlementEncoder(json.JSONEncoder):
    """JSON encoder for settlement data."""

    def default(self, obj):
        if isinstance(obj, datetime):
            return obj.isoformat()
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        if hasattr(obj, "to_dict"):
            return obj.to_dict()
        return super().default(obj)


def json_response(data: Any, status: int = 200) -> web.Response:
    """Create JSON response."""
    return web.Response(
        text=json.dumps(data, cls=SettlementEncoder, indent=2),
        status=status,
        content_type="application/json",
    )


def error_response(error: SettlementEngineError, status: Optional[int] = None) -> web.Response:
    info = get_error_info(error.code)
    if status is None:
        status = ERROR_STATUS.get(error.code, 400 if info.category == ErrorCategory.VALIDATION else 500)
    return json_response({
        "status": "error",
        "error": str(error),
        "code": error.code,
        "retryable": info.is_retryable,
    }, status=status)


def _parse_enum(enum_cls, value: Optional[str], name: str):
    if value is None or value == "":
        return None
    try:
        text = str(value)
        return enum_cls(text.upper() if enum_cls is PositionStatus else text.lower())
    except ValueError:
        raise InvalidRequest(f"Unsupported {name}: {value}", code="VAL_INVALID_FIELD") from None


def _parse_limit(request: web.Request, default: Optional[int] = None) -> Optional[int]:
    value = request.query.get("limit")
    if value is None:
        return default
    try:
        limit = int(value)
    except ValueError:
        raise InvalidRequest("limit must be an integer", code="VAL_INVALID_FIELD") from None
    if limit <= 0:
        raise InvalidRequest("limit must be positive", code="VAL_INVALID_FIELD")
    return limit


async def _json_body(request: web.Request) -> dict:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise InvalidRequest("Request body must be JSON", code="VAL_INVALID_REQUEST") from None
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object", code="VAL_INVALID_REQUEST")
    return body


# ============================================================
# API HANDLERS
# ============================================================

class SettlementAPI:
    """HTTP handlers bound to one engine."""

    def __init__(self, engine: SettlementEngine):
        self._engine = engine

    # --------------------------------------------------------
    # TRADING ENDPOINTS
    # --------------------------------------------------------

    async def submit_trade(self, request: web.Request) -> web.Response:
        """
        POST /api/trades

        Body: TradeRequest fields. 201 with the position, or an
        error with the rejection reason and code.
        """
        try:
            body = await _json_body(request)
        except InvalidRequest as e:
            return error_response(e)

        result = await self._engine.submit(body)
        if result.accepted:
            return json_response({"status": "ok", "data": result.position}, status=201)

        info = get_error_info(result.error_code)
        status = ERROR_STATUS.get(result.error_code, 400)
        return json_response({
            "status": "rejected",
            "error": result.reason,
            "code": result.error_code,
            "retryable": info.is_retryable,
        }, status=status)

    async def override_position(self, request: web.Request) -> web.Response:
        """
        POST /api/positions/{position_id}/override

        Body: {"outcome": "win" | "lose"}
        """
        position_id = request.match_info["position_id"]
        try:
            body = await _json_body(request)
            outcome = _parse_enum(Outcome, body.get("outcome"), "outcome")
            if outcome is None:
                raise InvalidRequest("outcome is required", code="VAL_MISSING_FIELD")
            position = await self._engine.override(position_id, outcome)
        except PositionNotFound as e:
            return error_response(e, 404)
        except PositionAlreadyTerminal as e:
            return error_response(e, 409)
        except SettlementEngineError as e:
            return error_response(e)

        return json_response({"status": "ok", "data": position})

    async def cancel_order(self, request: web.Request) -> web.Response:
        """DELETE /api/orders/{position_id}"""
        position_id = request.match_info["position_id"]
        try:
            position = await self._engine.cancel_pending_order(position_id)
        except SettlementEngineError as e:
            return error_response(e)

        return json_response({"status": "ok", "data": position})

    # --------------------------------------------------------
    # QUERY ENDPOINTS
    # --------------------------------------------------------

    async def get_open_positions(self, request: web.Request) -> web.Response:
        """
        GET /api/positions/open

        Query params:
        - include_pending: also list untriggered orders
        """
        include_pending = request.query.get("include_pending", "false").lower() == "true"
        positions = self._engine.list_open(include_pending=include_pending)
        now = self._engine.now()

        data = []
        for position in positions:
            item = position.to_dict()
            item["time_remaining"] = position.time_remaining(now)
            data.append(item)

        return json_response({"status": "ok", "data": data})

    async def get_history(self, request: web.Request) -> web.Response:
        """
        GET /api/positions/history

        Query params: instrument_type, status, symbol, limit
        """
        try:
            history_filter = HistoryFilter(
                instrument_type=_parse_enum(
                    InstrumentType, request.query.get("instrument_type"), "instrument_type"
                ),
                status=_parse_enum(PositionStatus, request.query.get("status"), "status"),
                symbol=request.query.get("symbol") or None,
                limit=_parse_limit(request, default=100),
            )
        except SettlementEngineError as e:
            return error_response(e)

        return json_response({"status": "ok", "data": self._engine.list_history(history_filter)})

    async def get_statistics(self, request: web.Request) -> web.Response:
        """GET /api/statistics?instrument_type=..."""
        try:
            instrument_type = _parse_enum(
                InstrumentType, request.query.get("instrument_type"), "instrument_type"
            )
        except SettlementEngineError as e:
            return error_response(e)

        stats = self._engine.get_statistics(instrument_type)
        return json_response({
            "status": "ok",
            "data": stats,
            "balance": self._engine.available_balance(),
        })

    async def get_notifications(self, request: web.Request) -> web.Response:
        """GET /api/notifications?limit=..."""
        try:
            limit = _parse_limit(request)
        except SettlementEngineError as e:
            return error_response(e)
        return json_response({"status": "ok", "data": self._engine.get_notifications(limit)})

    async def get_activities(self, request: web.Request) -> web.Response:
        """GET /api/activities?limit=..."""
        try:
            limit = _parse_limit(request)
        except SettlementEngineError as e:
            return error_response(e)
        return json_response({"status": "ok", "data": self._engine.get_activities(limit=limit)})

    # --------------------------------------------------------
    # ADMIN ENDPOINTS
    # --------------------------------------------------------

    async def get_outcome_mode(self, request: web.Request) -> web.Response:
        """GET /api/outcome-mode"""
        return json_response({"status": "ok", "data": self._engine.get_outcome_mode()})

    async def set_outcome_mode(self, request: web.Request) -> web.Response:
        """
        PUT /api/outcome-mode

        Body: {"mode": "default" | "force_win" | "force_loss",
               "scope": "all_trades" | "new_trades"}
        """
        try:
            body = await _json_body(request)
            mode = _parse_enum(OutcomeMode, body.get("mode"), "mode")
            if mode is None:
                raise InvalidRequest("mode is required", code="VAL_MISSING_FIELD")
            scope = _parse_enum(OutcomeModeScope, body.get("scope"), "scope") or OutcomeModeScope.ALL_TRADES
        except SettlementEngineError as e:
            return error_response(e)

        setting = self._engine.set_outcome_mode(mode, scope)
        return json_response({"status": "ok", "data": setting})

    # --------------------------------------------------------
    # HEALTH CHECK
    # --------------------------------------------------------

    async def health(self, request: web.Request) -> web.Response:
        """GET /api/health"""
        return json_response({
            "status": "ok",
            "timestamp": self._engine.now().isoformat(),
            "service": "settlement_engine",
            "running": self._engine.is_running,
            "stats": self._engine.get_stats(),
        })


# ============================================================
# APPLICATION FACTORY
# ============================================================

def create_app(engine: SettlementEngine, prefix: str = "/api") -> web.Application:
    """
    Create the HTTP application.

    The engine's lifecycle stays with the caller.
    """
    api = SettlementAPI(engine)

    app = web.Application()
    app[ENGINE_KEY] = engine

    app.router.add_post(f"{prefix}/trades", api.submit_trade)
    app.router.add_post(f"{prefix}/positions/{{position_id}}/override", api.override_position)
    app.router.add_delete(f"{prefix}/orders/{{position_id}}", api.cancel_order)
    app.router.add_get(f"{prefix}/positions/open", api.get_open_positions)
    app.router.add_get(f"{prefix}/positions/history", api.get_history)
    app.router.add_get(f"{prefix}/statistics", api.get_statistics)
    app.router.add_get(f"{prefix}/notifications", api.get_notifications)
    app.router.add_get(f"{prefix}/activities", api.get_activities)
    app.router.add_get(f"{prefix}/outcome-mode", api.get_outcome_mode)
    app.router.add_put(f"{prefix}/outcome-mode", api.set_outcome_mode)
    app.router.add_get(f"{prefix}/health", api.health)

    return app
