from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from web3 import Web3


logger = logging.getLogger("opensub.keeper")


class KeeperConfigError(Exception):
    pass


@dataclass
class DeploymentDescriptor:
    """Subset of a deployments/<network>.json artifact the keeper needs.

    Extra fields are ignored. ``planId`` and ``token`` are only shown in the
    runtime banner; the keeper services every plan on the ledger.
    """

    chain_id: int
    ledger_address: str
    start_block: int
    rpc: Optional[str] = None
    rpc_env_var: Optional[str] = None
    plan_id: Optional[int] = None
    token: Optional[str] = None
    source: str = "unknown"


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value is not None and value != "":
            return value
    return None


def _as_int(value: Any, field: str, path: Path) -> int:
    try:
        return int(str(value).strip(), 0)
    except (TypeError, ValueError) as e:
        raise KeeperConfigError(f"deployment descriptor {path}: '{field}' is not an integer ({value!r})") from e


def parse_deployment(data: Dict[str, Any], path: Path) -> DeploymentDescriptor:
    if not isinstance(data, dict):
        raise KeeperConfigError(f"deployment descriptor {path} must be a JSON object")

    chain_id = _first(data, "chainId", "chain_id")
    if chain_id is None:
        raise KeeperConfigError(f"deployment descriptor {path} is missing 'chainId'")
    address = _first(data, "openSub", "ledgerAddress", "ledger")
    if address is None or not str(address).strip():
        raise KeeperConfigError(f"deployment descriptor {path} is missing 'openSub' (ledger address)")
    address = str(address).strip()
    if not Web3.is_address(address):
        raise KeeperConfigError(f"deployment descriptor {path}: invalid ledger address '{address}'")
    start_block = _first(data, "startBlock", "start_block")
    if start_block is None:
        raise KeeperConfigError(f"deployment descriptor {path} is missing 'startBlock'")

    plan_id = _first(data, "planId", "plan_id")
    token = _first(data, "token", "tokenAddress")
    descriptor = DeploymentDescriptor(
        chain_id=_as_int(chain_id, "chainId", path),
        ledger_address=Web3.to_checksum_address(address),
        start_block=_as_int(start_block, "startBlock", path),
        rpc=(str(_first(data, "rpc", "rpcUrl")).strip() if _first(data, "rpc", "rpcUrl") else None),
        rpc_env_var=(str(data["rpcEnvVar"]).strip() if data.get("rpcEnvVar") else None),
        plan_id=_as_int(plan_id, "planId", path) if plan_id is not None else None,
        token=str(token).strip() if token else None,
        source=str(path),
    )
    if descriptor.start_block < 0:
        raise KeeperConfigError(f"deployment descriptor {path}: 'startBlock' must be >= 0")
    if descriptor.start_block == 0:
        logger.warning("Deployment startBlock is 0; log scanning will start from genesis and may be slow.")
    return descriptor


def load_deployment(path: Path) -> DeploymentDescriptor:
    if not path.exists():
        raise KeeperConfigError(f"deployment descriptor not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise KeeperConfigError(f"failed to read deployment descriptor {path}: {e}") from e
    return parse_deployment(data, path)
