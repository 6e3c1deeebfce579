from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


STATE_VERSION = 1
MAX_ERROR_MESSAGE_CHARS = 240


def now_unix() -> int:
    return int(time.time())


class FailureKind(str, Enum):
    RPC_ERROR = "rpcError"
    PLAN_INACTIVE = "planInactive"
    INSUFFICIENT_ALLOWANCE = "insufficientAllowance"
    INSUFFICIENT_BALANCE = "insufficientBalance"
    SIMULATION_REVERT = "simulationRevert"
    MINED_REVERT = "minedRevert"
    SEND_ERROR = "sendError"

    @classmethod
    def parse(cls, value: Any) -> "FailureKind":
        text = str(value or "").strip()
        for kind in cls:
            if kind.value.lower() == text.lower() or kind.name.lower() == text.lower():
                return kind
        # Older state files used "unknown"; treat it like a generic simulation failure.
        return cls.SIMULATION_REVERT


def clip_error_message(message: Optional[str]) -> Optional[str]:
    if message is None:
        return None
    text = str(message).strip()
    if len(text) <= MAX_ERROR_MESSAGE_CHARS:
        return text
    return text[:MAX_ERROR_MESSAGE_CHARS] + "..."


@dataclass(frozen=True)
class KnownSubscription:
    id: int
    plan_id: Optional[int]
    subscriber: Optional[str]
    discovered_at_block: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "planId": self.plan_id,
            "subscriber": self.subscriber,
            "discoveredAtBlock": self.discovered_at_block,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "KnownSubscription":
        plan_id = data.get("planId")
        block = data.get("discoveredAtBlock")
        return cls(
            id=int(data["id"]),
            plan_id=int(plan_id) if plan_id is not None else None,
            subscriber=data.get("subscriber"),
            discovered_at_block=int(block) if block is not None else None,
        )


@dataclass
class RetryRecord:
    subscription_id: int
    failure_kind: FailureKind
    attempt_count: int
    last_failure_at: int
    next_retry_at: int
    last_error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "failureKind": self.failure_kind.value,
            "attemptCount": self.attempt_count,
            "lastFailureAt": self.last_failure_at,
            "nextRetryAt": self.next_retry_at,
            "lastErrorMessage": self.last_error_message,
        }

    @classmethod
    def from_dict(cls, subscription_id: int, data: Dict[str, Any]) -> "RetryRecord":
        # Field names written by older keeper versions are accepted as well.
        kind = data.get("failureKind", data.get("lastFailureKind"))
        attempts = data.get("attemptCount", data.get("consecutiveFailures", 1))
        return cls(
            subscription_id=subscription_id,
            failure_kind=FailureKind.parse(kind),
            attempt_count=max(1, int(attempts or 1)),
            last_failure_at=int(data.get("lastFailureAt") or 0),
            next_retry_at=int(data.get("nextRetryAt") or 0),
            last_error_message=data.get("lastErrorMessage", data.get("lastFailureReason")),
        )


@dataclass
class InFlightEntry:
    subscription_id: int
    tx_hash: str
    submitted_at: int
    prior_failure_kind: Optional[FailureKind] = None
    prior_attempt_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriptionId": self.subscription_id,
            "txHash": self.tx_hash,
            "submittedAt": self.submitted_at,
            "priorFailureKind": self.prior_failure_kind.value if self.prior_failure_kind else None,
            "priorAttemptCount": self.prior_attempt_count,
        }

    @classmethod
    def from_dict(cls, subscription_id: int, data: Dict[str, Any]) -> "InFlightEntry":
        prior_kind = data.get("priorFailureKind")
        return cls(
            subscription_id=subscription_id,
            tx_hash=str(data.get("txHash") or ""),
            submitted_at=int(data.get("submittedAt", data.get("sentAt", 0)) or 0),
            prior_failure_kind=FailureKind.parse(prior_kind) if prior_kind else None,
            prior_attempt_count=int(data.get("priorAttemptCount") or 0),
        )


@dataclass
class KeeperState:
    last_scanned_block: int
    subscriptions: Dict[int, KnownSubscription] = field(default_factory=dict)
    retries: Dict[int, RetryRecord] = field(default_factory=dict)
    in_flight: Dict[int, InFlightEntry] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "scanCursor": {"lastScannedBlock": self.last_scanned_block},
            "subscriptions": {str(k): v.to_dict() for k, v in sorted(self.subscriptions.items())},
            "retries": {str(k): v.to_dict() for k, v in sorted(self.retries.items())},
            "inFlight": {str(k): v.to_dict() for k, v in sorted(self.in_flight.items())},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], start_block: int = 0) -> "KeeperState":
        cursor = data.get("scanCursor")
        if isinstance(cursor, dict):
            last_scanned = int(cursor.get("lastScannedBlock", max(0, start_block - 1)))
        else:
            last_scanned = int(data.get("lastScannedBlock", max(0, start_block - 1)))

        subscriptions: Dict[int, KnownSubscription] = {}
        raw_subs = data.get("subscriptions")
        if isinstance(raw_subs, dict):
            for key, item in raw_subs.items():
                if isinstance(item, dict):
                    item = {"id": key, **item}
                    sub = KnownSubscription.from_dict(item)
                    subscriptions[sub.id] = sub
        # Original keeper layout: a bare list of ids with no identity details.
        raw_ids = data.get("subscriptionIds")
        if isinstance(raw_ids, list):
            for raw_id in raw_ids:
                sub_id = int(raw_id)
                if sub_id not in subscriptions:
                    subscriptions[sub_id] = KnownSubscription(
                        id=sub_id, plan_id=None, subscriber=None, discovered_at_block=None
                    )

        retries: Dict[int, RetryRecord] = {}
        raw_retries = data.get("retries")
        if isinstance(raw_retries, dict):
            for key, item in raw_retries.items():
                if isinstance(item, dict):
                    retries[int(key)] = RetryRecord.from_dict(int(key), item)

        in_flight: Dict[int, InFlightEntry] = {}
        raw_in_flight = data.get("inFlight")
        if isinstance(raw_in_flight, dict):
            for key, item in raw_in_flight.items():
                if isinstance(item, dict):
                    in_flight[int(key)] = InFlightEntry.from_dict(int(key), item)

        # A record and an in-flight entry for the same id cannot coexist; the in-flight
        # entry wins because it guards against a duplicate charge.
        for sub_id in list(retries):
            if sub_id in in_flight:
                del retries[sub_id]

        return cls(
            last_scanned_block=last_scanned,
            subscriptions=subscriptions,
            retries=retries,
            in_flight=in_flight,
        )

    def retry_snapshot(self) -> Dict[str, Any]:
        """Serialized retries and in-flight entries, used to compare before/after a cycle."""
        data = self.to_dict()
        return {"retries": data["retries"], "inFlight": data["inFlight"]}


def load_state(path: Path, start_block: int = 0) -> KeeperState:
    if not path.exists():
        return KeeperState(last_scanned_block=max(0, start_block - 1))
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected JSON object in state file {path}")
    return KeeperState.from_dict(data, start_block=start_block)


def save_state(path: Path, state: KeeperState) -> None:
    """Write the state file atomically (tmp + fsync + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    data = json.dumps(state.to_dict(), indent=2, sort_keys=True)
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(str(tmp_path), str(path))
