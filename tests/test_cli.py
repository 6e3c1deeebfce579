import io
import json
import os
import signal
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest import mock

from _fakes import FakeClock, FakeLedger, make_config

from opensub.cli import build_parser, inspect_subscription, main, overrides_from_args
from opensub.keeper.runner import KeeperLockError, KeeperStartupError, acquire_state_lock, check_ledger, run_keeper
from opensub.keeper.state import FailureKind, InFlightEntry, KeeperState, RetryRecord, save_state
from opensub.keeper.ui import print_runtime_banner


class CliTests(unittest.TestCase):
    def test_status_prints_state_summary(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "keeper-state.json"
            state = KeeperState(last_scanned_block=321)
            state.retries[2] = RetryRecord(2, FailureKind.PLAN_INACTIVE, 1, 10, 4_000_000_000, "plan 1 inactive")
            state.retries[3] = RetryRecord(3, FailureKind.RPC_ERROR, 1, 10, 40, "timeout")
            state.in_flight[5] = InFlightEntry(5, "0x05", 100)
            save_state(path, state)

            args = build_parser().parse_args(["status", "--state-file", str(path)])
            out = io.StringIO()
            with redirect_stdout(out):
                args.func(args)

        summary = json.loads(out.getvalue())
        self.assertEqual(summary["lastScannedBlock"], 321)
        self.assertEqual(summary["backedOff"], [2])
        self.assertEqual(sorted(summary["retries"]), ["2", "3"])
        self.assertEqual(summary["inFlight"]["5"]["txHash"], "0x05")

    def test_run_flags_map_to_config_overrides(self) -> None:
        args = build_parser().parse_args(
            ["run", "--once", "--dry-run", "--max-txs-per-cycle", "3", "--log-chunk", "500", "--rpc-url", "http://n"]
        )
        overrides = overrides_from_args(args)
        self.assertEqual(overrides["max_txs_per_cycle"], 3)
        self.assertEqual(overrides["log_chunk"], 500)
        self.assertEqual(overrides["rpc_url"], "http://n")
        self.assertTrue(overrides["once"])
        self.assertTrue(overrides["dry_run"])
        self.assertNotIn("ignore_backoff", overrides)
        self.assertNotIn("poll_seconds", overrides)

    def test_bad_deployment_exits_with_message(self) -> None:
        argv = ["opensub-keeper", "run", "--once", "--deployment", "/nonexistent/deployment.json"]
        with mock.patch.dict(os.environ, {}, clear=True), mock.patch.object(sys, "argv", argv):
            with self.assertRaises(SystemExit) as ctx:
                main()
        self.assertIn("deployment descriptor not found", str(ctx.exception.code))
        self.assertTrue(str(ctx.exception.code).startswith("Error:"))

    def test_inspect_combines_ledger_reads_and_local_records(self) -> None:
        clock = FakeClock()
        ledger = FakeLedger(clock)
        ledger.add_plan(1, price=10)
        ledger.add_subscription(7, allowance=4)
        with tempfile.TemporaryDirectory() as tmp:
            cfg = make_config(Path(tmp) / "state.json")
            state = KeeperState(last_scanned_block=0)
            state.retries[7] = RetryRecord(7, FailureKind.INSUFFICIENT_ALLOWANCE, 2, 1, 2, "allowance 4 < price 10")
            save_state(cfg.state_path, state)
            report = inspect_subscription(ledger, cfg, 7)

        self.assertTrue(report["isDue"])
        self.assertEqual(report["allowance"], 4)
        self.assertEqual(report["plan"]["price"], 10)
        self.assertFalse(report["simulation"]["ok"])
        self.assertEqual(report["retry"]["attemptCount"], 2)
        self.assertIsNone(report["inFlight"])
        self.assertFalse(report["known"])

    def test_runtime_banner_shows_deployment_plan_and_token(self) -> None:
        token = "0x" + "ee" * 20
        cfg = make_config(Path("state.json"), plan_id=3, token=token)
        out = io.StringIO()
        with redirect_stdout(out), mock.patch.dict(os.environ, {"NO_COLOR": "1"}):
            print_runtime_banner(cfg, "0x" + "dd" * 20)
        self.assertIn(f"deployment: plan=3 token={token}", out.getvalue())

        out = io.StringIO()
        with redirect_stdout(out), mock.patch.dict(os.environ, {"NO_COLOR": "1"}):
            print_runtime_banner(make_config(Path("state.json")), "")
        self.assertNotIn("deployment:", out.getvalue())


class StartupTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.cfg = make_config(Path(self._tmp.name) / "state" / "keeper-state.json")
        self.logger = mock.Mock()

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_chain_id_mismatch_refuses_to_run(self) -> None:
        ledger = FakeLedger(FakeClock())
        self.cfg.chain_id = 1
        with self.assertRaises(KeeperStartupError) as ctx:
            check_ledger(ledger, self.cfg, self.logger)
        self.assertIn("chainId mismatch", str(ctx.exception))

    def test_missing_code_refuses_to_run(self) -> None:
        ledger = FakeLedger(FakeClock())
        ledger.has_code = lambda: False
        with self.assertRaises(KeeperStartupError):
            check_ledger(ledger, self.cfg, self.logger)

    def test_second_instance_cannot_take_the_lock(self) -> None:
        first = acquire_state_lock(self.cfg.lock_path)
        try:
            with self.assertRaises(KeeperLockError):
                acquire_state_lock(self.cfg.lock_path)
        finally:
            first.close()
        acquire_state_lock(self.cfg.lock_path).close()

    def test_once_mode_runs_a_single_cycle(self) -> None:
        clock = FakeClock()
        ledger = FakeLedger(clock)
        ledger.add_plan(1)
        ledger.add_subscription(1)
        saved = (signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM))
        try:
            with redirect_stdout(io.StringIO()):
                totals = run_keeper(self.cfg, ledger=ledger)
        finally:
            signal.signal(signal.SIGINT, saved[0])
            signal.signal(signal.SIGTERM, saved[1])
        self.assertEqual(totals, {"cycles": 1, "sent": 1, "succeeded": 1})
        self.assertTrue(self.cfg.state_path.exists())
        self.assertEqual(ledger.collected, [1])

    def test_continuous_mode_survives_a_failed_cycle(self) -> None:
        clock = FakeClock()
        ledger = FlakyHead(clock)
        ledger.add_plan(1)
        ledger.add_subscription(1)
        cfg = make_config(self.cfg.state_path, once=False, log_path=Path(self._tmp.name) / "keeper.log")
        stop = StopAfterSleeps(2)
        saved = (signal.getsignal(signal.SIGINT), signal.getsignal(signal.SIGTERM))
        try:
            with redirect_stdout(io.StringIO()), redirect_stderr(io.StringIO()):
                totals = run_keeper(cfg, ledger=ledger, stop_event=stop)
        finally:
            signal.signal(signal.SIGINT, saved[0])
            signal.signal(signal.SIGTERM, saved[1])

        self.assertEqual(totals, {"cycles": 1, "sent": 1, "succeeded": 1})
        self.assertEqual(stop.sleeps, [30, 30])
        self.assertEqual(ledger.collected, [1])
        log_text = cfg.log_path.read_text(encoding="utf-8")
        self.assertIn("loop_error=head lookup exploded", log_text)
        self.assertIn("reason=loop_error_backoff", log_text)
        self.assertIn("Keeper stopped cycles=1", log_text)


class FlakyHead(FakeLedger):
    """First block_number call blows up with a non-RPC error."""

    failures_left = 1

    def block_number(self) -> int:
        if self.failures_left:
            self.failures_left -= 1
            raise RuntimeError("head lookup exploded")
        return super().block_number()


class StopAfterSleeps:
    """Stop event stand-in that records inter-cycle sleeps and stops after ``limit`` of them."""

    def __init__(self, limit: int):
        self.limit = limit
        self.sleeps = []
        self._set = False

    def is_set(self) -> bool:
        return self._set

    def set(self) -> None:
        self._set = True

    def wait(self, seconds: float) -> bool:
        self.sleeps.append(seconds)
        if len(self.sleeps) >= self.limit:
            self._set = True
        return self._set


if __name__ == "__main__":
    unittest.main()
