from __future__ import annotations

import time
from typing import Callable, List

from ..ledger_client import LedgerRpcError, SubscribedEvent
from .state import KeeperState, KnownSubscription


MIN_CHUNK_SIZE = 10
FETCH_ATTEMPTS = 3
FETCH_INITIAL_DELAY_SECONDS = 0.2


def fetch_logs_with_retries(
    ledger,
    from_block: int,
    to_block: int,
    logger,
    sleep: Callable[[float], None] = time.sleep,
) -> List[SubscribedEvent]:
    delay = FETCH_INITIAL_DELAY_SECONDS
    for attempt in range(1, FETCH_ATTEMPTS + 1):
        try:
            return ledger.subscribed_events(from_block, to_block)
        except LedgerRpcError as e:
            if attempt == FETCH_ATTEMPTS:
                raise
            logger.warning(
                "getLogs failed attempt=%s from=%s to=%s sleep_ms=%s error=%s",
                attempt,
                from_block,
                to_block,
                int(delay * 1000),
                e,
            )
            sleep(delay)
            delay *= 2
    raise LedgerRpcError(f"getLogs failed for range [{from_block}, {to_block}]")


def scan_new_subscriptions(
    ledger,
    state: KeeperState,
    start_block: int,
    confirmations: int,
    chunk_size: int,
    logger,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Extend the known-subscription set from Subscribed logs.

    Ranges are scanned in chunks; the cursor moves past a chunk only after its
    subscriptions are in ``state.subscriptions``. A chunk that keeps failing is retried
    with a smaller range, never skipped. Returns the number of newly discovered ids.
    """
    latest = ledger.block_number()
    target = latest - max(0, confirmations)
    cursor = max(state.last_scanned_block + 1, start_block)

    if cursor > target:
        logger.debug("No new blocks to scan from=%s target=%s confirmations=%s", cursor, target, confirmations)
        return 0

    configured_chunk = max(1, chunk_size)
    chunk = configured_chunk
    discovered = 0
    logger.info(
        "Scanning Subscribed logs from=%s to=%s confirmations=%s chunk=%s",
        cursor,
        target,
        confirmations,
        chunk,
    )

    while cursor <= target:
        end = min(cursor + chunk - 1, target)
        try:
            events = fetch_logs_with_retries(ledger, cursor, end, logger, sleep=sleep)
        except LedgerRpcError:
            if chunk <= MIN_CHUNK_SIZE:
                raise
            chunk = max(MIN_CHUNK_SIZE, chunk // 2)
            logger.warning(
                "Log fetch failed; reducing chunk size from=%s to=%s chunk=%s", cursor, end, chunk
            )
            continue

        for event in events:
            if event.subscription_id in state.subscriptions:
                continue
            state.subscriptions[event.subscription_id] = KnownSubscription(
                id=event.subscription_id,
                plan_id=event.plan_id,
                subscriber=event.subscriber,
                discovered_at_block=event.block_number,
            )
            discovered += 1
            logger.info(
                "Discovered subscription_id=%s plan_id=%s subscriber=%s block=%s",
                event.subscription_id,
                event.plan_id,
                event.subscriber,
                event.block_number,
            )

        state.last_scanned_block = max(state.last_scanned_block, end)
        cursor = end + 1
        chunk = configured_chunk

    logger.info(
        "Scan complete discovered=%s last_scanned_block=%s total_known=%s",
        discovered,
        state.last_scanned_block,
        len(state.subscriptions),
    )
    return discovered
