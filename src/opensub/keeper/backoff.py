from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .config import KeeperConfig
from .state import FailureKind, KeeperState, RetryRecord, clip_error_message


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: int
    plan_inactive_seconds: int
    rpc_error_seconds: int
    max_seconds: int
    jitter_seconds: int

    @classmethod
    def from_config(cls, cfg: KeeperConfig) -> "BackoffPolicy":
        return cls(
            base_seconds=cfg.backoff_base_seconds,
            plan_inactive_seconds=cfg.plan_inactive_backoff_seconds,
            rpc_error_seconds=cfg.rpc_error_backoff_seconds,
            max_seconds=cfg.backoff_max_seconds,
            jitter_seconds=cfg.jitter_seconds,
        )

    def base_for(self, kind: FailureKind) -> int:
        # Merchant-controlled conditions get the long base; user-fixable ones the short one.
        if kind is FailureKind.PLAN_INACTIVE:
            return self.plan_inactive_seconds
        if kind is FailureKind.RPC_ERROR:
            return self.rpc_error_seconds
        if kind in (
            FailureKind.INSUFFICIENT_ALLOWANCE,
            FailureKind.INSUFFICIENT_BALANCE,
            FailureKind.SIMULATION_REVERT,
            FailureKind.MINED_REVERT,
            FailureKind.SEND_ERROR,
        ):
            return self.base_seconds
        raise ValueError(f"no backoff policy for failure kind {kind!r}")

    def duration(self, kind: FailureKind, attempt: int, subscription_id: int) -> int:
        """Seconds to wait after the ``attempt``-th consecutive failure of ``kind``.

        RPC errors use a short fixed delay. Everything else doubles per attempt up to
        ``max_seconds``. Jitter is derived from the subscription id so it is stable
        across attempts, and the cap is re-applied afterwards so it stays hard.
        """
        max_seconds = max(1, self.max_seconds)
        base = max(1, self.base_for(kind))
        if kind is FailureKind.RPC_ERROR:
            return min(base, max_seconds)
        base = min(base, max_seconds)
        exponent = min(max(0, attempt - 1), 62)
        seconds = min(base * (1 << exponent), max_seconds)
        if self.jitter_seconds > 0:
            seconds = min(seconds + (int(subscription_id) % self.jitter_seconds), max_seconds)
        return seconds


def is_backed_off(state: KeeperState, subscription_id: int, now: int) -> bool:
    record = state.retries.get(subscription_id)
    return record is not None and now < record.next_retry_at


def next_failure_record(
    previous: Optional[RetryRecord],
    policy: BackoffPolicy,
    subscription_id: int,
    kind: FailureKind,
    reason: Optional[str],
    now: int,
) -> RetryRecord:
    if previous is not None and previous.failure_kind is kind:
        attempt = previous.attempt_count + 1
        next_retry_at = max(now + policy.duration(kind, attempt, subscription_id), previous.next_retry_at)
    else:
        attempt = 1
        next_retry_at = now + policy.duration(kind, attempt, subscription_id)
    return RetryRecord(
        subscription_id=subscription_id,
        failure_kind=kind,
        attempt_count=attempt,
        last_failure_at=now,
        next_retry_at=next_retry_at,
        last_error_message=clip_error_message(reason),
    )


def record_failure(
    state: KeeperState,
    policy: BackoffPolicy,
    subscription_id: int,
    kind: FailureKind,
    reason: Optional[str],
    now: int,
) -> RetryRecord:
    record = next_failure_record(state.retries.get(subscription_id), policy, subscription_id, kind, reason, now)
    state.retries[subscription_id] = record
    return record


def record_success(state: KeeperState, subscription_id: int) -> bool:
    return state.retries.pop(subscription_id, None) is not None
