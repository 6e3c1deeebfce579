from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from ..ledger_client import LedgerRpcError, SubscriptionInfo


@dataclass(frozen=True)
class DueSubscription:
    subscription_id: int
    info: SubscriptionInfo


@dataclass
class Resolution:
    checked: int = 0
    due: List[DueSubscription] = field(default_factory=list)
    not_active: List[int] = field(default_factory=list)
    errors: Dict[int, str] = field(default_factory=dict)


def _resolve_one(ledger, subscription_id: int) -> Tuple[int, Optional[SubscriptionInfo], bool, Optional[str]]:
    try:
        if not ledger.is_due(subscription_id):
            return subscription_id, None, False, None
        info = ledger.get_subscription(subscription_id)
    except LedgerRpcError as e:
        return subscription_id, None, False, str(e)
    return subscription_id, info, True, None


def resolve_due_set(ledger, subscription_ids: Iterable[int], max_concurrency: int, logger) -> Resolution:
    """Read due status for each id. One failed read never aborts the pass."""
    ids = sorted(set(subscription_ids))
    result = Resolution(checked=len(ids))
    if not ids:
        return result

    workers = max(1, min(max_concurrency, len(ids)))
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="resolve") as pool:
        outcomes = list(pool.map(lambda sid: _resolve_one(ledger, sid), ids))

    for subscription_id, info, due, error in outcomes:
        if error is not None:
            logger.warning("Due check failed subscription_id=%s error=%s", subscription_id, error)
            result.errors[subscription_id] = error
            continue
        if not due or info is None:
            continue
        if not info.active:
            logger.info(
                "Subscription no longer active; skipping subscription_id=%s status=%s",
                subscription_id,
                info.status,
            )
            result.not_active.append(subscription_id)
            continue
        result.due.append(DueSubscription(subscription_id=subscription_id, info=info))

    logger.info(
        "Resolved due set checked=%s due=%s not_active=%s errors=%s",
        result.checked,
        len(result.due),
        len(result.not_active),
        len(result.errors),
    )
    return result
