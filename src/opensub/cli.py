import argparse
import json
import os
from pathlib import Path
from typing import Any, Dict

from .keeper.backoff import is_backed_off
from .keeper.config import DEFAULT_STATE_PATH, KeeperConfig, load_config
from .keeper.deployments import KeeperConfigError
from .keeper.runner import KeeperStartupError, run_keeper
from .keeper.state import load_state, now_unix
from .ledger_client import CollectReverted, LedgerRpcError, OpenSubLedger


# Options passed to load_config under their own names when given.
_RUN_OVERRIDES = (
    "deployment",
    "state_file",
    "rpc_url",
    "private_key_env",
    "poll_seconds",
    "confirmations",
    "log_chunk",
    "max_concurrency",
    "gas_limit",
    "max_txs_per_cycle",
    "tx_timeout_seconds",
    "pending_ttl_seconds",
    "tx_interval_seconds",
    "backoff_base_seconds",
    "backoff_max_seconds",
    "plan_inactive_backoff_seconds",
    "rpc_error_backoff_seconds",
    "jitter_seconds",
    "log_level",
    "log_path",
)
_RUN_SWITCHES = ("once", "dry_run", "no_simulate", "ignore_backoff")


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, sort_keys=True))


def overrides_from_args(args: argparse.Namespace) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    for attr in _RUN_OVERRIDES:
        value = getattr(args, attr, None)
        if value is not None:
            overrides[attr] = value
    # Switches only override the environment when given.
    for attr in _RUN_SWITCHES:
        if getattr(args, attr, False):
            overrides[attr] = True
    return overrides


def cmd_run(args: argparse.Namespace) -> None:
    """Run the keeper loop (or a single cycle with --once).

    Examples:

        KEEPER_PRIVATE_KEY=0x... opensub-keeper run \
          --deployment deployments/base-sepolia.json --once

        opensub-keeper run --dry-run --ignore-backoff --log-level DEBUG
    """
    cfg = load_config(overrides_from_args(args))
    run_keeper(cfg)


def state_summary(state_path: Path, now: int) -> Dict[str, Any]:
    state = load_state(state_path)
    data = state.to_dict()
    backed_off = sorted(sid for sid in state.retries if is_backed_off(state, sid, now))
    return {
        "stateFile": str(state_path),
        "exists": state_path.exists(),
        "now": now,
        "lastScannedBlock": state.last_scanned_block,
        "knownSubscriptions": len(state.subscriptions),
        "backedOff": backed_off,
        "retries": data["retries"],
        "inFlight": data["inFlight"],
    }


def cmd_status(args: argparse.Namespace) -> None:
    """Summarize the local state file. Makes no RPC calls."""
    state_path = Path(args.state_file or os.getenv("OPENSUB_KEEPER_STATE_FILE") or DEFAULT_STATE_PATH)
    print_json(state_summary(state_path, now_unix()))


def inspect_subscription(ledger, cfg: KeeperConfig, subscription_id: int) -> Dict[str, Any]:
    sub = ledger.get_subscription(subscription_id)
    plan = ledger.get_plan(sub.plan_id)
    report: Dict[str, Any] = {
        "subscriptionId": subscription_id,
        "isDue": ledger.is_due(subscription_id),
        "hasAccess": ledger.has_access(subscription_id),
        "subscription": {
            "planId": sub.plan_id,
            "subscriber": sub.subscriber,
            "status": sub.status,
            "active": sub.active,
            "startTime": sub.start_time,
            "paidThrough": sub.paid_through,
            "lastChargedAt": sub.last_charged_at,
        },
        "plan": {
            "merchant": plan.merchant,
            "token": plan.token,
            "price": plan.price,
            "interval": plan.interval,
            "collectorFeeBps": plan.fee_bps,
            "active": plan.active,
            "createdAt": plan.created_at,
        },
        "allowance": ledger.allowance(plan.token, sub.subscriber),
        "balance": ledger.balance_of(plan.token, sub.subscriber),
    }
    try:
        merchant_amount, collector_fee = ledger.simulate_collect(subscription_id)
        report["simulation"] = {"ok": True, "merchantAmount": merchant_amount, "collectorFee": collector_fee}
    except CollectReverted as e:
        report["simulation"] = {"ok": False, "reason": e.reason}

    state = load_state(cfg.state_path, start_block=cfg.start_block)
    retry = state.retries.get(subscription_id)
    entry = state.in_flight.get(subscription_id)
    report["known"] = subscription_id in state.subscriptions
    report["retry"] = retry.to_dict() if retry else None
    report["inFlight"] = entry.to_dict() if entry else None
    return report


def cmd_inspect(args: argparse.Namespace) -> None:
    """Show live ledger reads for one subscription next to its local keeper records."""
    overrides = overrides_from_args(args)
    overrides["dry_run"] = True  # read-only; no signer needed
    cfg = load_config(overrides)
    ledger = OpenSubLedger.connect(cfg.rpc_url, cfg.ledger_address, private_key=cfg.private_key)
    print_json(inspect_subscription(ledger, cfg, args.subscription_id))


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--deployment", help="Deployment descriptor JSON (default deployments/base-sepolia.json)")
    p.add_argument("--state-file", help=f"Keeper state file (default {DEFAULT_STATE_PATH})")
    p.add_argument("--rpc-url", help="RPC URL; overrides OPENSUB_KEEPER_RPC_URL and the descriptor")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="OpenSub keeper: charges due subscriptions without spending gas on predictable reverts.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    p_run = subparsers.add_parser("run", help="Run the keeper loop")
    _add_common(p_run)
    p_run.add_argument("--private-key-env", help="Env var holding the keeper key (default KEEPER_PRIVATE_KEY)")
    p_run.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    p_run.add_argument("--poll-seconds", type=int, help="Seconds between cycles (default 30)")
    p_run.add_argument("--confirmations", type=int, help="Blocks behind head to scan and confirm (default 2)")
    p_run.add_argument("--log-chunk", type=int, help="Blocks per getLogs request (default 2000)")
    p_run.add_argument("--max-concurrency", type=int, help="Parallel due-status reads (default 10)")
    p_run.add_argument("--gas-limit", type=int, help="Fixed gas limit for collect(); estimated when unset")
    p_run.add_argument("--max-txs-per-cycle", type=int, help="Collect transactions per cycle (default 25)")
    p_run.add_argument("--tx-timeout-seconds", type=int, help="Receipt wait per transaction (default 120, min 5)")
    p_run.add_argument("--pending-ttl-seconds", type=int, help="Drop unconfirmed in-flight after (default 900, min 30)")
    p_run.add_argument("--tx-interval-seconds", type=float, help="Pause between submissions (default 0)")
    p_run.add_argument("--backoff-base-seconds", type=int, help="Base backoff (default 300)")
    p_run.add_argument("--backoff-max-seconds", type=int, help="Backoff cap (default 21600)")
    p_run.add_argument("--plan-inactive-backoff-seconds", type=int, help="Base backoff for planInactive (default 1800)")
    p_run.add_argument("--rpc-error-backoff-seconds", type=int, help="Fixed backoff for rpcError (default 30)")
    p_run.add_argument("--jitter-seconds", type=int, help="Deterministic jitter window (default 30)")
    p_run.add_argument("--dry-run", action="store_true", help="Do everything except broadcast; leave backoff untouched")
    p_run.add_argument("--no-simulate", action="store_true", help="Skip the eth_call guard before sending")
    p_run.add_argument("--ignore-backoff", action="store_true", help="Bypass persisted backoff (debug only)")
    p_run.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR (default INFO)")
    p_run.add_argument("--log-path", help="Also write logs to this file")
    p_run.set_defaults(func=cmd_run)

    # status
    p_status = subparsers.add_parser("status", help="Summarize the keeper state file")
    p_status.add_argument("--state-file", help=f"Keeper state file (default {DEFAULT_STATE_PATH})")
    p_status.set_defaults(func=cmd_status)

    # inspect
    p_inspect = subparsers.add_parser("inspect", help="Show live ledger reads for one subscription")
    p_inspect.add_argument("subscription_id", type=int, help="Subscription id")
    _add_common(p_inspect)
    p_inspect.set_defaults(func=cmd_inspect)

    return parser


def main() -> None:
    try:
        parser = build_parser()
        args = parser.parse_args()
        args.func(args)
    except (KeeperConfigError, KeeperStartupError) as e:
        raise SystemExit(f"Error: {e}")
    except LedgerRpcError as e:
        raise SystemExit(f"Error: RPC failure: {e}")
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        # Catch-all to avoid noisy tracebacks for common runtime issues
        raise SystemExit(f"Error: {e}")


if __name__ == "__main__":
    main()
