from __future__ import annotations

from ..ledger_client import CollectReverted, LedgerRpcError
from .prechecks import OK, CheckResult
from .state import FailureKind


def simulate_collect(ledger, subscription_id: int, logger) -> CheckResult:
    """Dry-execute collect() via eth_call to catch races the prechecks could not see."""
    try:
        merchant_amount, collector_fee = ledger.simulate_collect(subscription_id)
    except CollectReverted as e:
        return CheckResult(FailureKind.SIMULATION_REVERT, e.reason)
    except LedgerRpcError as e:
        return CheckResult(FailureKind.RPC_ERROR, str(e))
    logger.debug(
        "Simulation ok subscription_id=%s merchant_amount=%s collector_fee=%s",
        subscription_id,
        merchant_amount,
        collector_fee,
    )
    return OK
