from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from ..ledger_client import LedgerRpcError, PlanInfo
from .resolver import DueSubscription
from .state import FailureKind


@dataclass(frozen=True)
class CheckResult:
    """Outcome of a precheck or simulation. ``kind is None`` means the charge looks safe."""

    kind: Optional[FailureKind] = None
    reason: Optional[str] = None
    price: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.kind is None


OK = CheckResult()


class PlanCache:
    """Plan lookups memoized for the duration of one cycle."""

    def __init__(self, ledger):
        self.ledger = ledger
        self._plans: Dict[int, PlanInfo] = {}

    def get(self, plan_id: int) -> PlanInfo:
        plan = self._plans.get(plan_id)
        if plan is None:
            plan = self.ledger.get_plan(plan_id)
            self._plans[plan_id] = plan
        return plan


def run_prechecks(ledger, due: DueSubscription, plans: PlanCache) -> CheckResult:
    """Plan active, then allowance >= price, then balance >= price. First failure wins."""
    info = due.info
    try:
        plan = plans.get(info.plan_id)
    except LedgerRpcError as e:
        return CheckResult(FailureKind.RPC_ERROR, str(e))

    if not plan.active:
        return CheckResult(FailureKind.PLAN_INACTIVE, f"plan {info.plan_id} inactive", price=plan.price)

    try:
        allowance = ledger.allowance(plan.token, info.subscriber)
    except LedgerRpcError as e:
        return CheckResult(FailureKind.RPC_ERROR, str(e), price=plan.price)
    if allowance < plan.price:
        return CheckResult(
            FailureKind.INSUFFICIENT_ALLOWANCE,
            f"allowance {allowance} < price {plan.price}",
            price=plan.price,
        )

    try:
        balance = ledger.balance_of(plan.token, info.subscriber)
    except LedgerRpcError as e:
        return CheckResult(FailureKind.RPC_ERROR, str(e), price=plan.price)
    if balance < plan.price:
        return CheckResult(
            FailureKind.INSUFFICIENT_BALANCE,
            f"balance {balance} < price {plan.price}",
            price=plan.price,
        )

    return CheckResult(price=plan.price)
