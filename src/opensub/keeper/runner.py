from __future__ import annotations

import logging
import signal
import threading
import time
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Set

from ..ledger_client import LedgerRpcError, OpenSubLedger
from .backoff import BackoffPolicy, is_backed_off, record_failure
from .config import KeeperConfig, load_config
from .logging_utils import setup_logging
from .prechecks import PlanCache, run_prechecks
from .resolver import DueSubscription, resolve_due_set
from .scanner import scan_new_subscriptions
from .simulation import simulate_collect
from .state import FailureKind, KeeperState, load_state, now_unix, save_state
from .submitter import NOT_SENT, PENDING, REJECTED, REVERTED, SUCCEEDED, TxSubmitter, reconcile_in_flight
from .ui import print_cycle_banner, print_runtime_banner


class KeeperStartupError(Exception):
    pass


class KeeperLockError(KeeperStartupError):
    pass


class Phase(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    RESOLVING = "resolving"
    RECONCILING = "reconciling"
    SELECTING = "selecting"
    EXECUTING = "executing"
    SLEEPING = "sleeping"
    TERMINATED = "terminated"


@dataclass
class CycleReport:
    known: int = 0
    discovered: int = 0
    checked: int = 0
    due: int = 0
    skipped_backoff: int = 0
    skipped_in_flight: int = 0
    precheck_failed: int = 0
    simulation_failed: int = 0
    sent: int = 0
    succeeded: int = 0
    reverted: int = 0
    pending: int = 0
    rejected: int = 0
    not_sent: int = 0
    deferred: int = 0
    reconciled: int = 0
    dropped: int = 0
    rpc_errors: int = 0
    scan_failed: bool = False
    interrupted: bool = False


class Keeper:
    """One keeper instance bound to a ledger and its state file.

    ``run_cycle`` performs a single pass; state is mutated in memory and written
    atomically at checkpoints. In dry-run mode retries and in-flight entries are never
    modified; only the scan cursor and known set move.
    """

    def __init__(
        self,
        cfg: KeeperConfig,
        ledger,
        state: KeeperState,
        logger: logging.Logger,
        stop_event: Optional[threading.Event] = None,
        clock: Callable[[], int] = now_unix,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.ledger = ledger
        self.state = state
        self.logger = logger
        self.stop_event = stop_event or threading.Event()
        self.clock = clock
        self.sleep = sleep
        self.policy = BackoffPolicy.from_config(cfg)
        self.phase = Phase.IDLE
        self.submitter = TxSubmitter(
            ledger=ledger,
            state=state,
            policy=self.policy,
            checkpoint=self.persist,
            logger=logger,
            tx_timeout_seconds=cfg.tx_timeout_seconds,
            confirmations=cfg.confirmations,
            receipt_poll_seconds=cfg.receipt_poll_seconds,
            wait=self.stop_event.wait,
            clock=clock,
            monotonic=monotonic,
        )

    def persist(self) -> None:
        save_state(self.cfg.state_path, self.state)

    def _enter(self, phase: Phase) -> None:
        self.phase = phase
        self.logger.debug("phase=%s", phase.value)

    def _note_failure(self, subscription_id: int, kind: FailureKind, reason: Optional[str], report: CycleReport) -> None:
        if kind is FailureKind.RPC_ERROR:
            report.rpc_errors += 1
        if self.cfg.dry_run:
            self.logger.info(
                "DRY RUN: would back off subscription_id=%s kind=%s reason=%s", subscription_id, kind.value, reason
            )
            return
        record = record_failure(self.state, self.policy, subscription_id, kind, reason, self.clock())
        self.logger.info(
            "Charge not attempted; backing off subscription_id=%s kind=%s attempt=%s next_retry_at=%s reason=%s",
            subscription_id,
            kind.value,
            record.attempt_count,
            record.next_retry_at,
            reason,
        )

    def _scan(self, report: CycleReport) -> None:
        self._enter(Phase.SCANNING)
        try:
            report.discovered = scan_new_subscriptions(
                self.ledger,
                self.state,
                start_block=self.cfg.start_block,
                confirmations=self.cfg.confirmations,
                chunk_size=self.cfg.log_chunk_size,
                logger=self.logger,
                sleep=self.sleep,
            )
        except LedgerRpcError as e:
            report.scan_failed = True
            self.logger.warning(
                "Log scan stopped early; cursor kept at last complete chunk last_scanned_block=%s error=%s",
                self.state.last_scanned_block,
                e,
            )
        # Cursor progress is persisted even if a later stage fails.
        self.persist()

    def _select(self, due: List[DueSubscription], blocked: Set[int], now: int, report: CycleReport) -> List[DueSubscription]:
        self._enter(Phase.SELECTING)
        candidates: List[DueSubscription] = []
        bypassed = 0
        for item in due:
            if item.subscription_id in blocked:
                report.skipped_in_flight += 1
                continue
            if is_backed_off(self.state, item.subscription_id, now):
                if not self.cfg.ignore_backoff:
                    report.skipped_backoff += 1
                    continue
                bypassed += 1
            candidates.append(item)
        if bypassed:
            self.logger.warning("ignore_backoff bypassing live backoff records count=%s", bypassed)
        # Most overdue first.
        candidates.sort(key=lambda d: (d.info.paid_through, d.subscription_id))
        return candidates

    def _execute(self, candidates: List[DueSubscription], report: CycleReport) -> None:
        self._enter(Phase.EXECUTING)
        plans = PlanCache(self.ledger)
        budget = self.cfg.max_txs_per_cycle
        for index, item in enumerate(candidates):
            sub_id = item.subscription_id
            if self.stop_event.is_set():
                report.interrupted = True
                self.logger.info("Shutdown requested; not submitting remaining=%s", len(candidates) - index)
                break
            if budget <= 0:
                report.deferred += 1
                continue

            check = run_prechecks(self.ledger, item, plans)
            if not check.ok:
                report.precheck_failed += 1
                self._note_failure(sub_id, check.kind, check.reason, report)
                continue

            if self.cfg.simulate:
                check = simulate_collect(self.ledger, sub_id, self.logger)
                if not check.ok:
                    report.simulation_failed += 1
                    self._note_failure(sub_id, check.kind, check.reason, report)
                    continue

            budget -= 1
            if self.cfg.dry_run:
                report.sent += 1
                self.logger.info("DRY RUN: would call collect() subscription_id=%s", sub_id)
                continue

            result = self.submitter.submit(sub_id)
            if result.outcome == NOT_SENT:
                report.not_sent += 1
            elif result.outcome == REJECTED:
                report.rejected += 1
            else:
                report.sent += 1
                if result.outcome == SUCCEEDED:
                    report.succeeded += 1
                elif result.outcome == REVERTED:
                    report.reverted += 1
                elif result.outcome == PENDING:
                    report.pending += 1

            if budget > 0 and self.cfg.tx_interval_seconds > 0:
                self.stop_event.wait(self.cfg.tx_interval_seconds)

        if report.deferred:
            self.logger.warning("Tx budget exhausted; deferred to next cycle count=%s", report.deferred)

    def run_cycle(self) -> CycleReport:
        report = CycleReport()
        self._scan(report)
        report.known = len(self.state.subscriptions)

        self._enter(Phase.RESOLVING)
        now = self.clock()
        ids: List[int] = []
        for sub_id in self.state.subscriptions:
            if not self.cfg.ignore_backoff and is_backed_off(self.state, sub_id, now):
                report.skipped_backoff += 1
                continue
            ids.append(sub_id)
        resolution = resolve_due_set(self.ledger, ids, self.cfg.max_concurrency, self.logger)
        report.checked = resolution.checked
        report.due = len(resolution.due)

        self._enter(Phase.RECONCILING)
        reconciled = reconcile_in_flight(
            self.ledger,
            self.state,
            self.policy,
            ttl_seconds=self.cfg.pending_ttl_seconds,
            confirmations=self.cfg.confirmations,
            now=self.clock(),
            logger=self.logger,
            apply=not self.cfg.dry_run,
        )
        report.reconciled = len(reconciled.finalized)
        report.dropped = len(reconciled.dropped)
        blocked: Set[int] = set(reconciled.kept) | set(reconciled.finalized)

        for sub_id, error in sorted(resolution.errors.items()):
            if sub_id in blocked:
                continue
            self._note_failure(sub_id, FailureKind.RPC_ERROR, error, report)

        candidates = self._select(resolution.due, blocked, self.clock(), report)
        if candidates:
            self._execute(candidates, report)
        elif report.known == 0:
            self.logger.info("No subscriptions known yet")
        else:
            self.logger.info(
                "No subscriptions eligible this cycle known=%s due=%s skipped_backoff=%s skipped_in_flight=%s",
                report.known,
                report.due,
                report.skipped_backoff,
                report.skipped_in_flight,
            )

        self.persist()
        self._enter(Phase.IDLE)
        self.logger.info("Cycle complete %s", " ".join(f"{k}={v}" for k, v in asdict(report).items()))
        return report


def acquire_state_lock(lock_path: Path):
    """Hold an exclusive lock beside the state file for the life of the process."""
    import fcntl  # POSIX

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = lock_path.open("a+", encoding="utf-8")
    try:
        fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        handle.close()
        raise KeeperLockError(f"keeper already running or lock unavailable ({lock_path}): {e}") from e
    return handle


def connect_ledger(cfg: KeeperConfig, logger: logging.Logger) -> OpenSubLedger:
    ledger = OpenSubLedger.connect(
        cfg.rpc_url,
        cfg.ledger_address,
        private_key=cfg.private_key,
        gas_limit=cfg.gas_limit,
    )
    check_ledger(ledger, cfg, logger)
    return ledger


def check_ledger(ledger, cfg: KeeperConfig, logger: logging.Logger) -> None:
    try:
        remote_chain_id = ledger.chain_id()
        has_code = ledger.has_code()
    except LedgerRpcError as e:
        raise KeeperStartupError(f"RPC unreachable at startup: {e}") from e
    if remote_chain_id != cfg.chain_id:
        raise KeeperStartupError(
            f"RPC chainId mismatch: deployment expects {cfg.chain_id}, but RPC reports {remote_chain_id}. "
            "Refusing to run."
        )
    if not has_code:
        raise KeeperStartupError(
            f"no contract code found at OpenSub address {cfg.ledger_address}. Check the deployment file and RPC."
        )
    logger.info("Connected chain_id=%s ledger=%s signer=%s", remote_chain_id, cfg.ledger_address, ledger.keeper_address)


def install_signal_handlers(stop_event: threading.Event, logger: logging.Logger) -> None:
    def _handle(signum, _frame) -> None:
        if stop_event.is_set():
            raise KeyboardInterrupt
        logger.info("Shutdown signal received signal=%s; finishing current step", signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def run_keeper(cfg: KeeperConfig, ledger=None, stop_event: Optional[threading.Event] = None) -> Dict[str, int]:
    logger = setup_logging(cfg)
    stop_event = stop_event or threading.Event()
    if ledger is None:
        ledger = connect_ledger(cfg, logger)
    print_runtime_banner(cfg, getattr(ledger, "keeper_address", None) or "")

    if cfg.ignore_backoff:
        logger.warning("ignore_backoff enabled: persisted backoff is bypassed every cycle (debug only)")
    if cfg.dry_run:
        logger.info("DRY RUN enabled: no transactions will be broadcast and backoff state is left untouched")

    lock_handle = acquire_state_lock(cfg.lock_path)
    try:
        state = load_state(cfg.state_path, start_block=cfg.start_block)
        logger.info(
            "Loaded state path=%s last_scanned_block=%s known=%s retries=%s in_flight=%s",
            cfg.state_path,
            state.last_scanned_block,
            len(state.subscriptions),
            len(state.retries),
            len(state.in_flight),
        )
        if threading.current_thread() is threading.main_thread():
            install_signal_handlers(stop_event, logger)

        keeper = Keeper(cfg, ledger, state, logger, stop_event=stop_event)
        iteration = 0
        totals: Dict[str, int] = {"cycles": 0, "sent": 0, "succeeded": 0}
        while not stop_event.is_set():
            iteration += 1
            now = now_unix()
            print_cycle_banner(
                iteration,
                known=len(state.subscriptions),
                in_flight=len(state.in_flight),
                backed_off=sum(1 for r in state.retries.values() if r.next_retry_at > now),
            )
            sleep_seconds = cfg.poll_seconds
            sleep_reason = "poll_interval"
            try:
                report = keeper.run_cycle()
                totals["cycles"] += 1
                totals["sent"] += report.sent
                totals["succeeded"] += report.succeeded
            except Exception as e:
                if cfg.once:
                    raise
                logger.exception("Cycle=%s loop_error=%s", iteration, e)
                sleep_reason = "loop_error_backoff"

            if cfg.once:
                break
            keeper.phase = Phase.SLEEPING
            logger.info("Sleeping seconds=%s reason=%s", sleep_seconds, sleep_reason)
            if stop_event.wait(sleep_seconds):
                break
        keeper.phase = Phase.TERMINATED
        logger.info("Keeper stopped cycles=%s sent=%s succeeded=%s", totals["cycles"], totals["sent"], totals["succeeded"])
        return totals
    finally:
        lock_handle.close()


def run_loop() -> None:
    run_keeper(load_config())


if __name__ == "__main__":
    run_loop()
