from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, Optional, Type, TypeVar

from fastapi import FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from pydantic import ValidationError as BodyValidationError
from pydantic.alias_generators import to_camel

from cryptodash.api.schemas import (
    AddAssetBody,
    CreateStrategyBody,
    ExecutionBody,
    SimulateBody,
    TradeBody,
    UpdateTradeBody,
)
from cryptodash.api.service import ServiceContainer
from cryptodash.utils.exceptions import DashboardError, NotFoundError, ValidationError
from cryptodash.utils.logger import bind_request_context, get_logger

logger = get_logger(__name__)

ACCOUNT_HEADER = "X-Account-Id"

PUBLIC_PATHS = {"/api/health"}

Body = TypeVar("Body", bound=BaseModel)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    container = ServiceContainer._instance
    if container is not None:
        await container.close()


app = FastAPI(title="Crypto Dashboard", version="1.0", lifespan=lifespan)


def get_services() -> ServiceContainer:
    return ServiceContainer.get_instance()


def get_account_id(request: Request) -> str:
    return request.headers.get(ACCOUNT_HEADER, "").strip()


def camelize(value: Any) -> Any:
    """snake_case keys to camelCase, recursively. Coin symbols used as keys stay as they are."""
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            key = to_camel(k) if isinstance(k, str) else k
            if k == "rows_by_coin":
                out[key] = {coin: camelize(rows) for coin, rows in v.items()}
            else:
                out[key] = camelize(v)
        return out
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value


async def parse_body(request: Request, model: Type[Body]) -> Body:
    try:
        raw = await request.json()
    except ValueError as e:
        raise ValidationError("Request body must be valid JSON") from e
    try:
        return model.model_validate(raw)
    except BodyValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"Invalid request body: {problems}") from e


@app.middleware("http")
async def account_middleware(request: Request, call_next):
    path = request.url.path
    if path.startswith("/api/") and path not in PUBLIC_PATHS:
        account_id = get_account_id(request)
        if not account_id:
            return JSONResponse({"error": "Unauthorized"}, status_code=401)
        bind_request_context(account_id=account_id, path=path, method=request.method)
    return await call_next(request)


@app.exception_handler(DashboardError)
async def dashboard_error_handler(request: Request, exc: DashboardError) -> JSONResponse:
    status = exc.status_code or 500
    if status >= 500:
        logger.error("request_failed", path=request.url.path, error=str(exc))
    return JSONResponse({"error": exc.message}, status_code=status)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'request'}: {err['msg']}" for err in exc.errors()
    )
    return JSONResponse({"error": f"Invalid request: {problems}"}, status_code=400)


@app.get("/api/health")
async def health() -> dict[str, Any]:
    return {"status": "ok"}


# ─── Exit strategies ─────────────────────────────────────────────

@app.get("/api/exit-strategies")
async def list_exit_strategies(request: Request) -> dict[str, Any]:
    summaries = await get_services().exit_strategies.list_summaries(get_account_id(request))
    return {"data": camelize([s.to_dict() for s in summaries])}


@app.post("/api/exit-strategies", status_code=201)
async def create_exit_strategies(request: Request) -> dict[str, Any]:
    body = await parse_body(request, CreateStrategyBody)
    summaries = await get_services().exit_strategies.create_strategies(
        get_account_id(request),
        all_coins=body.all_coins,
        coin_symbols=body.coin_symbols,
        sell_percent=body.sell_percent,
        gain_percent=body.gain_percent,
        strategy_type=body.strategy_type,
    )
    return {"data": camelize([s.to_dict() for s in summaries])}


@app.post("/api/exit-strategies/simulate")
async def simulate_exit_strategy(request: Request) -> dict[str, Any]:
    body = await parse_body(request, SimulateBody)
    results = await get_services().exit_strategies.simulate_for_account(
        get_account_id(request),
        all_coins=body.all_coins,
        coin_symbols=body.coin_symbols,
        sell_percent=body.sell_percent,
        gain_percent=body.gain_percent,
        max_steps=body.max_steps,
    )
    return {"data": {"results": camelize([r.to_dict() for r in results])}}


@app.get("/api/exit-strategies/{strategy_id}")
async def exit_strategy_details(request: Request, strategy_id: str,
                                max_steps: Optional[int] = Query(None, alias="maxSteps")) -> dict[str, Any]:
    details = await get_services().exit_strategies.get_details(
        get_account_id(request), strategy_id, max_steps
    )
    return {"data": camelize(details.to_dict())}


@app.delete("/api/exit-strategies/{strategy_id}", status_code=204)
async def delete_exit_strategy(request: Request, strategy_id: str) -> Response:
    await get_services().exit_strategies.delete_strategy(get_account_id(request), strategy_id)
    return Response(status_code=204)


@app.post("/api/exit-strategies/{strategy_id}/executions", status_code=201)
async def record_exit_execution(request: Request, strategy_id: str) -> dict[str, Any]:
    body = await parse_body(request, ExecutionBody)
    details = await get_services().exit_strategies.record_execution(
        get_account_id(request),
        strategy_id,
        coin_symbol=body.coin_symbol,
        step_gain_percent=body.step_gain_percent,
        target_price_usd=body.target_price_usd,
        executed_price_usd=body.executed_price_usd,
        quantity_sold=body.quantity_sold,
    )
    return {"data": camelize(details.to_dict())}


# ─── Portfolio ───────────────────────────────────────────────────

@app.get("/api/portfolio/holdings")
async def portfolio_holdings(request: Request) -> dict[str, Any]:
    positions = await get_services().holdings.get_all_positions(get_account_id(request))
    return {"data": camelize([p.to_dict() for p in positions])}


@app.get("/api/portfolio/transactions")
async def portfolio_transactions(request: Request, limit: int = 250) -> dict[str, Any]:
    events = await get_services().portfolio.list_transactions(get_account_id(request), limit)
    return {"data": camelize([e.to_dict() for e in events])}


@app.post("/api/portfolio/transactions", status_code=201)
async def add_portfolio_transaction(request: Request) -> dict[str, Any]:
    body = await parse_body(request, TradeBody)
    trade_id = await get_services().portfolio.record_trade(
        get_account_id(request), body.symbol, body.side, body.qty, body.price_usd,
        fee_usd=body.fee_usd, executed_at=body.executed_at, note=body.note,
    )
    return {"id": trade_id}


@app.post("/api/portfolio/add-asset", status_code=201)
async def add_portfolio_asset(request: Request) -> dict[str, Any]:
    body = await parse_body(request, AddAssetBody)
    trade_id = await get_services().portfolio.add_asset(
        get_account_id(request), body.symbol, body.qty, body.price_usd,
        fee_usd=body.fee_usd, executed_at=body.executed_at,
    )
    return {"id": trade_id}


@app.put("/api/portfolio/transactions/{trade_id}")
async def update_portfolio_transaction(request: Request, trade_id: str) -> dict[str, Any]:
    body = await parse_body(request, UpdateTradeBody)
    await get_services().portfolio.update_trade(
        get_account_id(request), trade_id, body.side, body.qty, body.price_usd,
        fee_usd=body.fee_usd, executed_at=body.executed_at,
    )
    return {"ok": True}


@app.delete("/api/portfolio/transactions/{trade_id}")
async def delete_portfolio_transaction(request: Request, trade_id: str) -> dict[str, Any]:
    await get_services().portfolio.delete_trade(get_account_id(request), trade_id)
    return {"ok": True}


@app.get("/api/portfolio/{symbol}")
async def portfolio_asset(request: Request, symbol: str) -> dict[str, Any]:
    services = get_services()
    account_id = get_account_id(request)

    position = await services.holdings.get_position(account_id, symbol)
    fallback = position.avg_entry_price_usd if position else 0.0
    quote = await services.prices.resolve_current_price(account_id, symbol, fallback)

    performance = await services.holdings.get_asset_performance(account_id, symbol, quote.price)
    if performance is None:
        raise NotFoundError("No transactions for this asset")

    data = performance.to_dict()
    data["current_price_source"] = quote.source.value
    data["current_price_is_estimated"] = quote.is_estimated
    return {"data": camelize(data)}
