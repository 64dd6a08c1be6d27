# app/x402/budget.py
"""
Budget Guardian: per-wallet spending caps for autonomous agents.

An agent (or its operator) registers a cap for its wallet. Requests that
carry an X-Agent-Wallet header are checked against the cap before a
challenge is issued, and admitted payments are recorded against it.

Budgets are kept in memory and reset when their period elapses.
Thread-safe for concurrent access.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

PERIOD_SECONDS = {
    "daily": 86400,
    "weekly": 604800,
    "monthly": 2592000,
}
ALERT_THRESHOLDS = (90, 75, 50)


@dataclass
class Budget:
    """Spending cap and usage for one wallet within the current period."""
    max_usdc: float
    period: str = "daily"
    spent_usdc: float = 0.0
    period_start: float = field(default_factory=time.time)
    alerts_sent: Dict[int, bool] = field(
        default_factory=lambda: {threshold: False for threshold in ALERT_THRESHOLDS}
    )

    @property
    def remaining_usdc(self) -> float:
        return max(0.0, self.max_usdc - self.spent_usdc)

    @property
    def used_percent(self) -> float:
        if self.max_usdc <= 0:
            return 0.0
        return (self.spent_usdc / self.max_usdc) * 100

    def to_dict(self, wallet: str) -> Dict[str, Any]:
        return {
            "wallet": wallet,
            "max_budget_usdc": self.max_usdc,
            "spent_usdc": round(self.spent_usdc, 6),
            "remaining_usdc": round(self.remaining_usdc, 6),
            "used_percent": round(self.used_percent, 2),
            "period": self.period,
            "period_start": self.period_start,
        }


class BudgetManager:
    """In-memory budget registry keyed by lowercased wallet address."""

    def __init__(self):
        self._budgets: Dict[str, Budget] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _normalize(wallet: str) -> str:
        return wallet.strip().lower()

    def _reset_if_expired(self, wallet: str, budget: Budget, now: float) -> None:
        if now - budget.period_start > PERIOD_SECONDS.get(budget.period, PERIOD_SECONDS["daily"]):
            budget.spent_usdc = 0.0
            budget.period_start = now
            budget.alerts_sent = {threshold: False for threshold in ALERT_THRESHOLDS}
            logger.info(f"Budget period reset for {wallet[:10]}...")

    def set_budget(self, wallet: str, max_usdc: float, period: str = "daily") -> Budget:
        """
        Set or update the cap for a wallet, keeping the spend of the current period.

        Raises:
            ValueError: If the amount is not positive or the period is unknown
        """
        if max_usdc <= 0:
            raise ValueError("max_usdc must be positive")
        if period not in PERIOD_SECONDS:
            raise ValueError(f"Invalid period. Accepted: {', '.join(PERIOD_SECONDS)}")

        key = self._normalize(wallet)
        with self._lock:
            existing = self._budgets.get(key)
            if existing is None:
                budget = Budget(max_usdc=max_usdc, period=period)
            else:
                existing.max_usdc = max_usdc
                existing.period = period
                budget = existing
            self._budgets[key] = budget

        logger.info(f"Set budget for {key[:10]}...: ${max_usdc} USDC/{period}")
        return budget

    def get_budget(self, wallet: str) -> Optional[Dict[str, Any]]:
        key = self._normalize(wallet)
        with self._lock:
            budget = self._budgets.get(key)
            if budget is None:
                return None
            self._reset_if_expired(key, budget, time.time())
            return budget.to_dict(key)

    def remove_budget(self, wallet: str) -> bool:
        with self._lock:
            return self._budgets.pop(self._normalize(wallet), None) is not None

    def list_budgets(self) -> List[Dict[str, Any]]:
        now = time.time()
        with self._lock:
            result = []
            for key, budget in self._budgets.items():
                self._reset_if_expired(key, budget, now)
                result.append(budget.to_dict(key))
            return result

    def check_budget(self, wallet: str, amount_usdc: float) -> Tuple[bool, Optional[str], Optional[Dict[str, Any]]]:
        """
        Check whether a wallet can spend amount_usdc.

        Returns:
            Tuple of (allowed, reason, budget):
            - (True, None, None) - no budget set for this wallet
            - (True, None, budget) - within budget
            - (False, reason, budget) - the spend would exceed the cap
        """
        key = self._normalize(wallet)
        with self._lock:
            budget = self._budgets.get(key)
            if budget is None:
                return (True, None, None)
            self._reset_if_expired(key, budget, time.time())
            snapshot = budget.to_dict(key)

            if budget.spent_usdc + amount_usdc > budget.max_usdc:
                reason = (
                    f"Budget exceeded: ${budget.spent_usdc:.4f} spent of ${budget.max_usdc:.2f} limit. "
                    f"Remaining: ${budget.remaining_usdc:.4f}"
                )
                logger.warning(
                    f"Budget blocked {key[:10]}...: tried ${amount_usdc} "
                    f"but only ${budget.remaining_usdc:.4f} remaining"
                )
                return (False, reason, snapshot)

            return (True, None, snapshot)

    def record_spending(self, wallet: str, amount_usdc: float) -> Optional[Dict[str, Any]]:
        """
        Record an admitted payment against a wallet's budget.

        Returns:
            Dict with alerts (newly crossed thresholds), used_percent and
            remaining_usdc, or None if the wallet has no budget
        """
        key = self._normalize(wallet)
        with self._lock:
            budget = self._budgets.get(key)
            if budget is None:
                return None
            self._reset_if_expired(key, budget, time.time())
            budget.spent_usdc += amount_usdc

            pct = budget.used_percent
            alerts = []
            for threshold in ALERT_THRESHOLDS:
                if pct >= threshold and not budget.alerts_sent[threshold]:
                    budget.alerts_sent[threshold] = True
                    alerts.append(threshold)
                    break

            if alerts:
                logger.warning(f"Budget alert: {key[:10]}... at {pct:.1f}% of budget")

            return {
                "alerts": alerts,
                "used_percent": pct,
                "remaining_usdc": budget.remaining_usdc,
            }

    def reset_all(self) -> None:
        with self._lock:
            self._budgets.clear()


def get_budget_headers(spending: Dict[str, Any]) -> Dict[str, str]:
    """
    Generate budget headers for an admitted response.

    Args:
        spending: Result of BudgetManager.record_spending

    Returns:
        Dict of HTTP headers to add to the response
    """
    headers = {
        "X-Budget-Remaining": f"{spending['remaining_usdc']:.4f}",
        "X-Budget-Used-Percent": f"{spending['used_percent']:.1f}",
    }
    if spending.get("alerts"):
        headers["X-Budget-Alert"] = f"{spending['alerts'][0]}% of budget used"
    return headers


# Global budget manager instance
_budget_manager: Optional[BudgetManager] = None
_budget_manager_lock = threading.Lock()


def get_budget_manager() -> BudgetManager:
    """
    Get the global budget manager instance.

    Returns:
        The singleton BudgetManager instance
    """
    global _budget_manager

    if _budget_manager is None:
        with _budget_manager_lock:
            if _budget_manager is None:
                _budget_manager = BudgetManager()

    return _budget_manager


def reset_budget_manager() -> None:
    """Reset the global budget manager (useful for testing)."""
    global _budget_manager
    with _budget_manager_lock:
        if _budget_manager is not None:
            _budget_manager.reset_all()
        _budget_manager = None
