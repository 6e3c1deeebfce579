from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .deployments import DeploymentDescriptor, KeeperConfigError, load_deployment


logger = logging.getLogger("opensub.keeper")

DEFAULT_DEPLOYMENT_PATH = "deployments/base-sepolia.json"
DEFAULT_STATE_PATH = "state/keeper-state.json"
RPC_URL_ENV = "OPENSUB_KEEPER_RPC_URL"
_TRUE_VALUES = {"1", "true", "yes", "on"}


@dataclass
class KeeperConfig:
    deployment_path: Path
    state_path: Path
    chain_id: int
    rpc_url: str
    ledger_address: str
    start_block: int
    plan_id: Optional[int]
    token: Optional[str]
    private_key_env: str
    private_key: Optional[str]
    poll_seconds: int
    once: bool
    confirmations: int
    log_chunk_size: int
    max_concurrency: int
    gas_limit: Optional[int]
    max_txs_per_cycle: int
    tx_timeout_seconds: int
    pending_ttl_seconds: int
    tx_interval_seconds: float
    receipt_poll_seconds: float
    backoff_base_seconds: int
    backoff_max_seconds: int
    plan_inactive_backoff_seconds: int
    rpc_error_backoff_seconds: int
    jitter_seconds: int
    simulate: bool
    dry_run: bool
    ignore_backoff: bool
    log_level: str
    log_path: Optional[Path]

    @property
    def lock_path(self) -> Path:
        return self.state_path.with_name(f"{self.state_path.name}.lock")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE_VALUES


def _optional_int(value: Any) -> Optional[int]:
    text = str(value).strip()
    if not text or text.lower() in {"none", "0"}:
        return None
    return int(text)


def _setting(
    overrides: Dict[str, Any],
    key: str,
    env_key: str,
    default: Any,
    cast: Callable[[Any], Any],
) -> Any:
    value = overrides.get(key)
    if value is None:
        value = os.getenv(env_key)
    if value is None or (isinstance(value, str) and not value.strip()):
        value = default
    if value is None:
        return None
    try:
        return cast(value)
    except (TypeError, ValueError) as e:
        raise KeeperConfigError(f"invalid value for {key} ({env_key}): {value!r}") from e


def resolve_rpc_url(deployment: DeploymentDescriptor, rpc_override: Optional[str]) -> str:
    candidates = [
        rpc_override,
        os.getenv(RPC_URL_ENV),
        os.getenv(deployment.rpc_env_var) if deployment.rpc_env_var else None,
        deployment.rpc,
    ]
    for candidate in candidates:
        if candidate and str(candidate).strip():
            rpc_url = str(candidate).strip()
            if "alchemy.com/v2/" in rpc_url or "infura.io/v3/" in rpc_url:
                logger.warning(
                    "RPC URL looks like it embeds an API key; prefer %s over committing it to the deployment file.",
                    RPC_URL_ENV,
                )
            return rpc_url
    raise KeeperConfigError(
        f"no RPC URL provided. Pass --rpc-url, set {RPC_URL_ENV}, set rpcEnvVar in the deployment "
        "file, or include rpc in the deployment file."
    )


def load_config(overrides: Optional[Dict[str, Any]] = None) -> KeeperConfig:
    """Build the keeper config from CLI overrides, OPENSUB_KEEPER_* env vars and defaults.

    Precedence is override > environment > default. The deployment descriptor is read
    here so that a malformed one aborts before any RPC traffic.
    """
    o = dict(overrides or {})

    deployment_path = _setting(o, "deployment", "OPENSUB_KEEPER_DEPLOYMENT", DEFAULT_DEPLOYMENT_PATH, Path)
    state_path = _setting(o, "state_file", "OPENSUB_KEEPER_STATE_FILE", DEFAULT_STATE_PATH, Path)
    deployment = load_deployment(deployment_path)
    rpc_url = resolve_rpc_url(deployment, o.get("rpc_url"))

    poll_seconds = _setting(o, "poll_seconds", "OPENSUB_KEEPER_POLL_SECONDS", 30, int)
    once = _setting(o, "once", "OPENSUB_KEEPER_ONCE", False, _as_bool)
    confirmations = _setting(o, "confirmations", "OPENSUB_KEEPER_CONFIRMATIONS", 2, int)
    log_chunk_size = _setting(o, "log_chunk", "OPENSUB_KEEPER_LOG_CHUNK", 2000, int)
    max_concurrency = _setting(o, "max_concurrency", "OPENSUB_KEEPER_MAX_CONCURRENCY", 10, int)
    gas_limit = _setting(o, "gas_limit", "OPENSUB_KEEPER_GAS_LIMIT", "", _optional_int)
    max_txs_per_cycle = _setting(o, "max_txs_per_cycle", "OPENSUB_KEEPER_MAX_TXS_PER_CYCLE", 25, int)
    tx_timeout_seconds = _setting(o, "tx_timeout_seconds", "OPENSUB_KEEPER_TX_TIMEOUT_SECONDS", 120, int)
    pending_ttl_seconds = _setting(o, "pending_ttl_seconds", "OPENSUB_KEEPER_PENDING_TTL_SECONDS", 900, int)
    tx_interval_seconds = _setting(o, "tx_interval_seconds", "OPENSUB_KEEPER_TX_INTERVAL_SECONDS", 0, float)
    receipt_poll_seconds = _setting(o, "receipt_poll_seconds", "OPENSUB_KEEPER_RECEIPT_POLL_SECONDS", 2, float)
    backoff_base_seconds = _setting(o, "backoff_base_seconds", "OPENSUB_KEEPER_BACKOFF_BASE_SECONDS", 300, int)
    backoff_max_seconds = _setting(o, "backoff_max_seconds", "OPENSUB_KEEPER_BACKOFF_MAX_SECONDS", 21600, int)
    plan_inactive_backoff_seconds = _setting(
        o, "plan_inactive_backoff_seconds", "OPENSUB_KEEPER_PLAN_INACTIVE_BACKOFF_SECONDS", 1800, int
    )
    rpc_error_backoff_seconds = _setting(
        o, "rpc_error_backoff_seconds", "OPENSUB_KEEPER_RPC_ERROR_BACKOFF_SECONDS", 30, int
    )
    jitter_seconds = _setting(o, "jitter_seconds", "OPENSUB_KEEPER_JITTER_SECONDS", 30, int)
    no_simulate = _setting(o, "no_simulate", "OPENSUB_KEEPER_NO_SIMULATE", False, _as_bool)
    dry_run = _setting(o, "dry_run", "OPENSUB_KEEPER_DRY_RUN", False, _as_bool)
    ignore_backoff = _setting(o, "ignore_backoff", "OPENSUB_KEEPER_IGNORE_BACKOFF", False, _as_bool)
    private_key_env = _setting(o, "private_key_env", "OPENSUB_KEEPER_PRIVATE_KEY_ENV", "KEEPER_PRIVATE_KEY", str)
    log_level = _setting(o, "log_level", "OPENSUB_KEEPER_LOG_LEVEL", "INFO", str).strip().upper()
    log_path_str = _setting(o, "log_path", "OPENSUB_KEEPER_LOG_PATH", "", str).strip()

    if log_chunk_size <= 0:
        raise KeeperConfigError("log chunk size must be > 0")
    if max_concurrency <= 0:
        raise KeeperConfigError("max concurrency must be > 0")
    if max_txs_per_cycle <= 0:
        raise KeeperConfigError("max txs per cycle must be > 0")
    if confirmations < 0:
        raise KeeperConfigError("confirmations must be >= 0")

    private_key = (os.getenv(private_key_env) or "").strip() or None
    if private_key is None and not dry_run:
        raise KeeperConfigError(
            f"missing private key env var '{private_key_env}'. Set it in your shell before running."
        )

    backoff_max_seconds = max(1, backoff_max_seconds)
    if backoff_base_seconds > backoff_max_seconds:
        logger.warning(
            "Backoff base exceeds max; clamping base=%s max=%s", backoff_base_seconds, backoff_max_seconds
        )
    if plan_inactive_backoff_seconds > backoff_max_seconds:
        logger.warning(
            "Plan-inactive backoff exceeds max; clamping plan_inactive=%s max=%s",
            plan_inactive_backoff_seconds,
            backoff_max_seconds,
        )

    return KeeperConfig(
        deployment_path=deployment_path,
        state_path=state_path,
        chain_id=deployment.chain_id,
        rpc_url=rpc_url,
        ledger_address=deployment.ledger_address,
        start_block=deployment.start_block,
        plan_id=deployment.plan_id,
        token=deployment.token,
        private_key_env=private_key_env,
        private_key=private_key,
        poll_seconds=max(1, poll_seconds),
        once=once,
        confirmations=confirmations,
        log_chunk_size=log_chunk_size,
        max_concurrency=max_concurrency,
        gas_limit=gas_limit,
        max_txs_per_cycle=max_txs_per_cycle,
        tx_timeout_seconds=max(5, tx_timeout_seconds),
        pending_ttl_seconds=max(30, pending_ttl_seconds),
        tx_interval_seconds=max(0.0, tx_interval_seconds),
        receipt_poll_seconds=max(0.1, receipt_poll_seconds),
        backoff_base_seconds=min(max(1, backoff_base_seconds), backoff_max_seconds),
        backoff_max_seconds=backoff_max_seconds,
        plan_inactive_backoff_seconds=min(max(1, plan_inactive_backoff_seconds), backoff_max_seconds),
        rpc_error_backoff_seconds=max(1, rpc_error_backoff_seconds),
        jitter_seconds=max(0, jitter_seconds),
        simulate=not no_simulate,
        dry_run=dry_run,
        ignore_backoff=ignore_backoff,
        log_level=log_level,
        log_path=Path(log_path_str) if log_path_str else None,
    )
