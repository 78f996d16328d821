"""JSON API endpoints: quotes, exchanges, transfers, card transactions and admin config."""

from __future__ import annotations

from dataclasses import asdict, is_dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from policy_engine.cards.models import CardAuthorization, CardProgram, decision_to_dict
from policy_engine.exchange.processor import ExchangeRequest
from policy_engine.facade import CardTransactionRequest, PolicyFacade, TransferRequest
from policy_engine.models import (
    ExchangePermission,
    ExchangeRate,
    FeeConfig,
    LimitTier,
    TransferLimit,
    UserType,
)

log = structlog.get_logger(__name__)

router = APIRouter()


def _jsonable(obj: Any) -> Any:
    """Recursively convert Decimal, Enum and datetime values for JSON serialization."""
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: _jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_jsonable(item) for item in obj]
    return obj


def _record(obj: Any) -> dict:
    if isinstance(obj, CardAuthorization):
        data = {
            field: getattr(obj, field)
            for field in obj.__dataclass_fields__
            if field != "decision"
        }
        data["decision"] = decision_to_dict(obj.decision)
        data["approved"] = obj.approved
        return _jsonable(data)
    if isinstance(obj, ExchangeRate):
        return _jsonable({**asdict(obj), "effective_rate": obj.effective_rate})
    if is_dataclass(obj):
        return _jsonable(asdict(obj))
    return _jsonable(obj)


def _facade(request: Request) -> PolicyFacade:
    return request.app.state.facade


# Request bodies


class ExchangeBody(BaseModel):
    reference: str = Field(min_length=1)
    account_id: str
    user_type: UserType
    from_currency: str
    to_currency: str
    amount: Decimal


class TransferBody(BaseModel):
    reference: str = Field(min_length=1)
    source_account_id: str
    destination_account_id: str
    user_type: LimitTier
    currency: str
    amount: Decimal
    transaction_type: str = "transfer"


class CardAuthorizeBody(BaseModel):
    reference: str = Field(min_length=1)
    card_id: str
    account_id: str
    program_id: str
    kyc_level: int = 1
    user_type: UserType
    currency: str
    amount: Decimal
    use_bnpl: bool = False


class RateBody(BaseModel):
    from_currency: str
    to_currency: str
    rate: Decimal
    margin_percentage: Decimal = Decimal("0")


class PermissionBody(BaseModel):
    user_type: UserType
    can_exchange: bool = False
    daily_limit: Decimal | None = None
    monthly_limit: Decimal | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    fee_percentage: Decimal = Decimal("0")


class FeeConfigBody(BaseModel):
    transaction_type: str
    currency: str
    percentage: Decimal = Decimal("0")
    minimum_fee: Decimal = Decimal("0")
    maximum_fee: Decimal | None = None
    flat_fee: Decimal = Decimal("0")
    is_active: bool = True


class TransferLimitBody(BaseModel):
    user_type: LimitTier
    currency: str
    daily_limit: Decimal
    monthly_limit: Decimal
    per_transaction_limit: Decimal
    min_amount: Decimal = Decimal("0")
    is_active: bool = True


class CardProgramBody(BaseModel):
    """Admin console's flag record for a card program."""

    id: str
    name: str
    daily_limit: Decimal
    monthly_limit: Decimal
    transaction_fee_percentage: Decimal = Decimal("0")
    transaction_fee_fixed: Decimal = Decimal("0")
    required_kyc_level: int = 1
    no_transaction_fees: bool = False
    allow_negative_balance: bool = False
    overdraft_limit: Decimal = Decimal("0")
    allow_buy_now_pay_later: bool = False
    bnpl_max_amount: Decimal = Decimal("0")
    bnpl_interest_rate: Decimal = Decimal("0")
    high_transaction_limit: bool = False
    high_daily_limit: Decimal | None = None
    high_monthly_limit: Decimal | None = None
    cashback_enabled: bool = False
    cashback_percentage: Decimal = Decimal("0")
    is_active: bool = True


# Quotes


@router.get("/status")
async def get_status(request: Request) -> JSONResponse:
    """Engine health and the configuration version currently in force."""
    facade = _facade(request)
    return JSONResponse(content={"status": "ok", "config_version": await facade.config.version()})


@router.get("/quote/exchange")
async def quote_exchange(
    request: Request,
    from_currency: str,
    to_currency: str,
    amount: Decimal,
    user_type: UserType | None = None,
) -> JSONResponse:
    quote = await _facade(request).quote_exchange(from_currency, to_currency, amount, user_type)
    return JSONResponse(content=_record({**asdict(quote), "total_debit": quote.total_debit}))


@router.get("/quote/fee")
async def quote_fee(
    request: Request, amount: Decimal, currency: str, transaction_type: str = "transfer"
) -> JSONResponse:
    fee = await _facade(request).quote_fee(amount, currency, transaction_type)
    return JSONResponse(content=_record(fee))


@router.get("/exchange/eligibility")
async def exchange_eligibility(
    request: Request,
    account_id: str,
    user_type: UserType,
    from_currency: str,
    amount: Decimal | None = None,
) -> JSONResponse:
    eligibility = await _facade(request).check_exchange_eligibility(
        account_id, user_type, from_currency, amount
    )
    return JSONResponse(content=_record(eligibility))


# Execution


@router.post("/exchanges")
async def execute_exchange(request: Request, body: ExchangeBody) -> JSONResponse:
    transaction = await _facade(request).execute_exchange(ExchangeRequest(**body.model_dump()))
    return JSONResponse(content=_record(transaction))


@router.get("/exchanges")
async def list_exchanges(
    request: Request,
    account_id: str | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
) -> JSONResponse:
    result = await _facade(request).list_exchanges(account_id=account_id, page=page, limit=limit)
    return JSONResponse(content={
        "items": [_record(item) for item in result.items],
        "total": result.total,
        "page": result.page,
        "limit": result.limit,
        "total_pages": result.total_pages,
    })


@router.post("/transfers")
async def execute_transfer(request: Request, body: TransferBody) -> JSONResponse:
    record = await _facade(request).execute_transfer(TransferRequest(**body.model_dump()))
    return JSONResponse(content=_record(record))


@router.post("/cards/authorize")
async def authorize_card(request: Request, body: CardAuthorizeBody) -> JSONResponse:
    facade = _facade(request)
    card = await facade.issue_card(
        body.card_id, body.account_id, body.program_id, kyc_level=body.kyc_level
    )
    authorization = await facade.authorize_card_transaction(
        CardTransactionRequest(
            reference=body.reference,
            card=card,
            user_type=body.user_type,
            currency=body.currency,
            amount=body.amount,
            use_bnpl=body.use_bnpl,
        )
    )
    return JSONResponse(content=_record(authorization))


@router.post("/cards/{reference}/settle")
async def settle_card(request: Request, reference: str) -> JSONResponse:
    authorization = await _facade(request).settle_card_transaction(reference)
    return JSONResponse(content=_record(authorization))


# Admin configuration


@router.get("/rates")
async def list_rates(request: Request) -> JSONResponse:
    rates = await _facade(request).rates.list_rates()
    return JSONResponse(content=[_record(rate) for rate in rates])


@router.put("/rates")
async def set_rate(request: Request, body: RateBody) -> JSONResponse:
    rate = await _facade(request).rates.set(
        body.from_currency, body.to_currency, body.rate, body.margin_percentage
    )
    log.info("rate_set_via_api", pair=str(rate.pair))
    return JSONResponse(content=_record(rate))


@router.post("/rates/{from_currency}/{to_currency}/deactivate")
async def deactivate_rate(request: Request, from_currency: str, to_currency: str) -> JSONResponse:
    rate = await _facade(request).rates.deactivate(from_currency, to_currency)
    return JSONResponse(content=_record(rate))


@router.put("/permissions")
async def save_permission(request: Request, body: PermissionBody) -> JSONResponse:
    permission = ExchangePermission(**body.model_dump())
    await _facade(request).config.save_permission(permission)
    log.info("permission_saved_via_api", user_type=permission.user_type.value)
    return JSONResponse(content=_record(permission))


@router.put("/fee-configs")
async def save_fee_config(request: Request, body: FeeConfigBody) -> JSONResponse:
    config = FeeConfig(**body.model_dump())
    await _facade(request).config.save_fee_config(config)
    log.info(
        "fee_config_saved_via_api",
        transaction_type=config.transaction_type,
        currency=config.currency,
    )
    return JSONResponse(content=_record(config))


@router.put("/transfer-limits")
async def save_transfer_limit(request: Request, body: TransferLimitBody) -> JSONResponse:
    limit = TransferLimit(**body.model_dump())
    await _facade(request).config.save_transfer_limit(limit)
    log.info(
        "transfer_limit_saved_via_api",
        user_type=limit.user_type.value,
        currency=limit.currency,
    )
    return JSONResponse(content=_record(limit))


@router.put("/card-programs")
async def save_card_program(request: Request, body: CardProgramBody) -> JSONResponse:
    program = CardProgram.from_flags(**body.model_dump())
    await _facade(request).save_card_program(program)
    return JSONResponse(content=_jsonable(program.to_flags()))
