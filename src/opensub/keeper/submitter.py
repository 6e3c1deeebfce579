from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from ..ledger_client import BroadcastRejected, CollectReverted, LedgerError, LedgerRpcError, TxReceipt
from .backoff import BackoffPolicy, next_failure_record, record_failure
from .state import FailureKind, InFlightEntry, KeeperState, RetryRecord, now_unix


SUCCEEDED = "succeeded"
REVERTED = "reverted"
PENDING = "pending"
REJECTED = "rejected"
NOT_SENT = "not_sent"


@dataclass
class SubmitResult:
    subscription_id: int
    outcome: str
    tx_hash: Optional[str] = None
    reason: Optional[str] = None

    @property
    def broadcast(self) -> bool:
        return self.outcome in {SUCCEEDED, REVERTED, PENDING}


@dataclass
class ReconcileOutcome:
    succeeded: List[int] = field(default_factory=list)
    reverted: List[int] = field(default_factory=list)
    dropped: List[int] = field(default_factory=list)
    kept: List[int] = field(default_factory=list)

    @property
    def finalized(self) -> List[int]:
        return self.succeeded + self.reverted


def receipt_is_final(receipt: TxReceipt, current_block: int, confirmations: int) -> bool:
    return current_block - receipt.block_number + 1 >= max(1, confirmations)


def _prior_record(entry: InFlightEntry) -> Optional[RetryRecord]:
    if entry.prior_failure_kind is None or entry.prior_attempt_count <= 0:
        return None
    return RetryRecord(
        subscription_id=entry.subscription_id,
        failure_kind=entry.prior_failure_kind,
        attempt_count=entry.prior_attempt_count,
        last_failure_at=0,
        next_retry_at=0,
    )


def apply_receipt(
    state: KeeperState,
    policy: BackoffPolicy,
    entry: InFlightEntry,
    receipt: TxReceipt,
    now: int,
) -> Optional[RetryRecord]:
    """Resolve an in-flight entry from its final receipt. Returns the new retry record on revert."""
    state.in_flight.pop(entry.subscription_id, None)
    if receipt.succeeded:
        state.retries.pop(entry.subscription_id, None)
        return None
    record = next_failure_record(
        _prior_record(entry),
        policy,
        entry.subscription_id,
        FailureKind.MINED_REVERT,
        f"tx {entry.tx_hash} mined but reverted",
        now,
    )
    state.retries[entry.subscription_id] = record
    return record


def reconcile_in_flight(
    ledger,
    state: KeeperState,
    policy: BackoffPolicy,
    ttl_seconds: int,
    confirmations: int,
    now: int,
    logger,
    apply: bool = True,
) -> ReconcileOutcome:
    """Resolve in-flight entries left by earlier cycles or an earlier process.

    Final receipts apply success/revert. Entries older than ``ttl_seconds`` with no
    observed receipt are dropped so the subscription becomes eligible again. With
    ``apply=False`` the outcome is computed and logged but ``state`` is untouched.
    """
    outcome = ReconcileOutcome()
    if not state.in_flight:
        return outcome

    try:
        current_block: Optional[int] = ledger.block_number()
    except LedgerRpcError as e:
        logger.warning("Reconcile could not read block number; receipts treated as unconfirmed error=%s", e)
        current_block = None

    for subscription_id, entry in sorted(state.in_flight.items()):
        age = now - entry.submitted_at
        receipt: Optional[TxReceipt] = None
        if entry.tx_hash:
            try:
                receipt = ledger.get_receipt(entry.tx_hash)
            except LedgerRpcError as e:
                logger.warning(
                    "Receipt lookup failed subscription_id=%s tx=%s error=%s", subscription_id, entry.tx_hash, e
                )

        if receipt is not None:
            if current_block is not None and receipt_is_final(receipt, current_block, confirmations):
                if receipt.succeeded:
                    outcome.succeeded.append(subscription_id)
                    logger.info(
                        "In-flight collect succeeded subscription_id=%s tx=%s block=%s",
                        subscription_id,
                        entry.tx_hash,
                        receipt.block_number,
                    )
                else:
                    outcome.reverted.append(subscription_id)
                    logger.warning(
                        "In-flight collect mined but reverted; backing off subscription_id=%s tx=%s block=%s",
                        subscription_id,
                        entry.tx_hash,
                        receipt.block_number,
                    )
                if apply:
                    apply_receipt(state, policy, entry, receipt, now)
                continue
            # Mined but not deep enough yet. It exists, so the TTL does not apply.
            outcome.kept.append(subscription_id)
            continue

        if not entry.tx_hash or (ttl_seconds > 0 and age > ttl_seconds):
            outcome.dropped.append(subscription_id)
            logger.warning(
                "In-flight tx expired; dropping subscription_id=%s tx=%s age_s=%s ttl_s=%s",
                subscription_id,
                entry.tx_hash or "<missing>",
                age,
                ttl_seconds,
            )
            if apply:
                state.in_flight.pop(subscription_id, None)
            continue

        outcome.kept.append(subscription_id)

    if outcome.finalized or outcome.dropped:
        logger.info(
            "Reconciled in-flight succeeded=%s reverted=%s dropped=%s kept=%s",
            len(outcome.succeeded),
            len(outcome.reverted),
            len(outcome.dropped),
            len(outcome.kept),
        )
    return outcome


class TxSubmitter:
    """Sends collect() transactions and tracks them as in-flight.

    The in-flight entry is written and checkpointed to disk before the signed
    transaction is broadcast, so a crash at any point afterwards cannot lead to a
    second submission for the same subscription.
    """

    def __init__(
        self,
        ledger,
        state: KeeperState,
        policy: BackoffPolicy,
        checkpoint: Callable[[], None],
        logger,
        tx_timeout_seconds: float,
        confirmations: int,
        receipt_poll_seconds: float = 2.0,
        wait: Optional[Callable[[float], bool]] = None,
        clock: Callable[[], int] = now_unix,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.state = state
        self.policy = policy
        self.checkpoint = checkpoint
        self.logger = logger
        self.tx_timeout_seconds = tx_timeout_seconds
        self.confirmations = confirmations
        self.receipt_poll_seconds = receipt_poll_seconds
        self.wait = wait or _sleep_wait
        self.clock = clock
        self.monotonic = monotonic

    def _fail(self, subscription_id: int, kind: FailureKind, reason: str, previous: Optional[RetryRecord]) -> None:
        record = next_failure_record(previous, self.policy, subscription_id, kind, reason, self.clock())
        self.state.retries[subscription_id] = record
        self.logger.warning(
            "Collect failed; backing off subscription_id=%s kind=%s attempt=%s next_retry_at=%s reason=%s",
            subscription_id,
            kind.value,
            record.attempt_count,
            record.next_retry_at,
            reason,
        )

    def submit(self, subscription_id: int) -> SubmitResult:
        if subscription_id in self.state.in_flight:
            raise RuntimeError(f"subscription {subscription_id} already has an in-flight collect")

        try:
            prepared = self.ledger.prepare_collect(subscription_id)
        except CollectReverted as e:
            record_failure(self.state, self.policy, subscription_id, FailureKind.SIMULATION_REVERT, e.reason, self.clock())
            self.logger.warning(
                "Gas estimation reverted; backing off subscription_id=%s reason=%s", subscription_id, e.reason
            )
            return SubmitResult(subscription_id, NOT_SENT, reason=e.reason)
        except LedgerRpcError as e:
            record_failure(self.state, self.policy, subscription_id, FailureKind.RPC_ERROR, str(e), self.clock())
            self.logger.warning("Collect build failed; backing off subscription_id=%s error=%s", subscription_id, e)
            return SubmitResult(subscription_id, NOT_SENT, reason=str(e))
        except LedgerError as e:
            record_failure(self.state, self.policy, subscription_id, FailureKind.SEND_ERROR, str(e), self.clock())
            self.logger.error("Collect signing failed subscription_id=%s error=%s", subscription_id, e)
            return SubmitResult(subscription_id, NOT_SENT, reason=str(e))

        previous = self.state.retries.pop(subscription_id, None)
        entry = InFlightEntry(
            subscription_id=subscription_id,
            tx_hash=prepared.tx_hash,
            submitted_at=self.clock(),
            prior_failure_kind=previous.failure_kind if previous else None,
            prior_attempt_count=previous.attempt_count if previous else 0,
        )
        self.state.in_flight[subscription_id] = entry
        self.checkpoint()

        try:
            self.ledger.broadcast(prepared)
        except BroadcastRejected as e:
            self.state.in_flight.pop(subscription_id, None)
            self._fail(subscription_id, FailureKind.SEND_ERROR, str(e), previous)
            self.checkpoint()
            return SubmitResult(subscription_id, REJECTED, tx_hash=prepared.tx_hash, reason=str(e))
        except LedgerRpcError as e:
            # Unknown whether the node accepted it; reconciliation decides.
            self.logger.warning(
                "Broadcast outcome unknown; tracking as in-flight subscription_id=%s tx=%s error=%s",
                subscription_id,
                prepared.tx_hash,
                e,
            )
            return SubmitResult(subscription_id, PENDING, tx_hash=prepared.tx_hash, reason=str(e))
        except Exception as e:
            self.logger.exception(
                "Broadcast raised unexpectedly; tracking as in-flight subscription_id=%s tx=%s",
                subscription_id,
                prepared.tx_hash,
            )
            return SubmitResult(subscription_id, PENDING, tx_hash=prepared.tx_hash, reason=f"{type(e).__name__}: {e}")

        self.logger.info("collect submitted subscription_id=%s tx=%s", subscription_id, prepared.tx_hash)

        receipt = self.wait_for_receipt(prepared.tx_hash)
        if receipt is None:
            self.logger.warning(
                "Collect still pending after timeout; tracking as in-flight subscription_id=%s tx=%s timeout_s=%s",
                subscription_id,
                prepared.tx_hash,
                self.tx_timeout_seconds,
            )
            return SubmitResult(subscription_id, PENDING, tx_hash=prepared.tx_hash)

        record = apply_receipt(self.state, self.policy, entry, receipt, self.clock())
        self.checkpoint()
        if record is None:
            self.logger.info(
                "collect succeeded subscription_id=%s tx=%s block=%s",
                subscription_id,
                prepared.tx_hash,
                receipt.block_number,
            )
            return SubmitResult(subscription_id, SUCCEEDED, tx_hash=prepared.tx_hash)
        self.logger.warning(
            "Collect mined but reverted; backing off subscription_id=%s tx=%s attempt=%s next_retry_at=%s",
            subscription_id,
            prepared.tx_hash,
            record.attempt_count,
            record.next_retry_at,
        )
        return SubmitResult(subscription_id, REVERTED, tx_hash=prepared.tx_hash, reason=record.last_error_message)

    def wait_for_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        """Poll until the receipt is ``confirmations`` deep, the timeout passes, or shutdown."""
        deadline = self.monotonic() + self.tx_timeout_seconds
        while True:
            try:
                receipt = self.ledger.get_receipt(tx_hash)
                if receipt is not None and receipt_is_final(receipt, self.ledger.block_number(), self.confirmations):
                    return receipt
            except LedgerRpcError as e:
                self.logger.debug("Receipt poll failed tx=%s error=%s", tx_hash, e)
            remaining = deadline - self.monotonic()
            if remaining <= 0:
                return None
            if self.wait(min(self.receipt_poll_seconds, remaining)):
                # Shutdown requested; the entry stays in-flight for the next run.
                return None


def _sleep_wait(seconds: float) -> bool:
    time.sleep(seconds)
    return False
