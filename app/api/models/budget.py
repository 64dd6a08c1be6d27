# app/api/models/budget.py
from pydantic import BaseModel, Field
from typing import Optional, List, Literal

from app.api.models.service import WALLET_PATTERN


class BudgetStatus(BaseModel):
    wallet: str
    max_budget_usdc: float
    spent_usdc: float
    remaining_usdc: float
    used_percent: float
    period: str
    period_start: float


class BudgetSetRequest(BaseModel):
    """Request model for setting a spending cap on an agent wallet."""
    wallet: str = Field(..., pattern=WALLET_PATTERN)
    max_budget_usdc: float = Field(..., gt=0, description="Cap in USDC for one period.")
    period: Literal["daily", "weekly", "monthly"] = "daily"


class BudgetResponse(BaseModel):
    message: Optional[str] = None
    budget: Optional[BudgetStatus] = None


class BudgetListResponse(BaseModel):
    count: int
    budgets: List[BudgetStatus]


class BudgetCheckRequest(BaseModel):
    wallet: str = Field(..., pattern=WALLET_PATTERN)
    amount_usdc: float = Field(..., ge=0)


class BudgetCheckResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    budget: Optional[BudgetStatus] = None


class BudgetDeleteResponse(BaseModel):
    message: str
    removed: bool
