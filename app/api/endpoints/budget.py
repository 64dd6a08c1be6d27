# app/api/endpoints/budget.py
from fastapi import APIRouter, Depends, HTTPException, Path, Request, status
import logging

from app.core.config import settings
from app.api.models.budget import (
    BudgetCheckRequest,
    BudgetCheckResponse,
    BudgetDeleteResponse,
    BudgetListResponse,
    BudgetResponse,
    BudgetSetRequest,
)
from app.api.models.service import WALLET_PATTERN
from app.x402.budget import get_budget_manager

logger = logging.getLogger(__name__)


def verify_api_key(request: Request) -> None:
    """Require settings.API_KEY in the API key header when one is configured."""
    if not settings.API_KEY:
        return
    if request.headers.get(settings.API_KEY_NAME) != settings.API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing API key")


router = APIRouter(dependencies=[Depends(verify_api_key)])


@router.post("/budget", response_model=BudgetResponse, summary="Set Agent Budget")
async def set_budget(body: BudgetSetRequest) -> BudgetResponse:
    """
    Sets or updates the spending cap of an agent wallet.

    Spend already recorded in the current period is kept.
    """
    manager = get_budget_manager()
    try:
        manager.set_budget(body.wallet, body.max_budget_usdc, body.period)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return BudgetResponse(message="Budget set successfully", budget=manager.get_budget(body.wallet))


@router.get("/budget/{wallet}", response_model=BudgetResponse, summary="Get Agent Budget")
async def get_budget(wallet: str = Path(..., pattern=WALLET_PATTERN, description="Agent wallet address (0x...).")) -> BudgetResponse:
    budget = get_budget_manager().get_budget(wallet)
    if budget is None:
        return BudgetResponse(message="No budget set for this wallet", budget=None)
    return BudgetResponse(budget=budget)


@router.delete("/budget/{wallet}", response_model=BudgetDeleteResponse, summary="Remove Agent Budget")
async def delete_budget(wallet: str = Path(..., pattern=WALLET_PATTERN, description="Agent wallet address (0x...).")) -> BudgetDeleteResponse:
    removed = get_budget_manager().remove_budget(wallet)
    if removed:
        logger.info(f"Budget removed for {wallet[:10]}...")
    return BudgetDeleteResponse(
        message="Budget removed" if removed else "No budget found for this wallet",
        removed=removed,
    )


@router.get("/budgets", response_model=BudgetListResponse, summary="List Agent Budgets")
async def list_budgets() -> BudgetListResponse:
    budgets = get_budget_manager().list_budgets()
    return BudgetListResponse(count=len(budgets), budgets=budgets)


@router.post("/budget/check", response_model=BudgetCheckResponse, summary="Check Agent Budget")
async def check_budget(body: BudgetCheckRequest) -> BudgetCheckResponse:
    """
    Pre-flight check: can this wallet afford a call of amount_usdc?
    """
    allowed, reason, budget = get_budget_manager().check_budget(body.wallet, body.amount_usdc)
    return BudgetCheckResponse(allowed=allowed, reason=reason, budget=budget)
