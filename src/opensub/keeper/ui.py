from __future__ import annotations

import os
import sys
import textwrap
from typing import Any, Dict, List, Tuple

from .config import KeeperConfig


def supports_color() -> bool:
    return sys.stdout.isatty() and not bool(os.getenv("NO_COLOR"))


def _ui_palette() -> Dict[str, str]:
    if not supports_color():
        return {
            "reset": "",
            "bold": "",
            "dim": "",
            "blue": "",
            "cyan": "",
            "green": "",
            "yellow": "",
            "magenta": "",
        }
    return {
        "reset": "\033[0m",
        "bold": "\033[1m",
        "dim": "\033[2m",
        "blue": "\033[1;34m",
        "cyan": "\033[1;36m",
        "green": "\033[1;32m",
        "yellow": "\033[1;33m",
        "magenta": "\033[1;35m",
    }


def _ui_paint(text: str, tone: str = "", bold: bool = False) -> str:
    palette = _ui_palette()
    reset = palette["reset"]
    if not reset:
        return text
    chunks: List[str] = []
    if bold:
        chunks.append(palette["bold"])
    if tone:
        chunks.append(palette.get(tone, ""))
    chunks.append(text)
    chunks.append(reset)
    return "".join(chunks)


def _ui_wrap_lines(value: Any, width: int) -> List[str]:
    text = str(value if value is not None else "").strip()
    if width < 8:
        width = 8
    if not text:
        return [""]
    return textwrap.wrap(text, width=width, break_long_words=True, break_on_hyphens=False) or [""]


def _ui_print_panel(
    title: str,
    rows: List[Tuple[str, Any]],
    tone: str = "cyan",
    width: int = 74,
) -> None:
    inner = max(30, width - 4)
    border = "+" + ("-" * (inner + 2)) + "+"
    print("")
    print(_ui_paint(border, tone=tone, bold=True))
    title_text = title.strip() or "INFO"
    print(_ui_paint(f"| {title_text:<{inner}} |", tone=tone, bold=True))
    print(_ui_paint(border, tone=tone))
    for key, value in rows:
        label = key.strip()
        value_lines = _ui_wrap_lines(value, width=(inner - (len(label) + 2) if label else inner))
        for idx, line in enumerate(value_lines):
            if label:
                prefix = f"{label}: " if idx == 0 else (" " * (len(label) + 2))
            else:
                prefix = ""
            content = f"{prefix}{line}"
            print(f"| {content:<{inner}} |")
    print(_ui_paint(border, tone=tone))
    print("")


def print_runtime_banner(cfg: KeeperConfig, keeper_address: str) -> None:
    mode = "once" if cfg.once else f"continuous/{cfg.poll_seconds}s"
    flags = []
    if cfg.dry_run:
        flags.append("dry_run")
    if not cfg.simulate:
        flags.append("no_simulate")
    if cfg.ignore_backoff:
        flags.append("ignore_backoff")
    rows = [("chain", f"{cfg.chain_id} ledger={cfg.ledger_address}")]
    if cfg.plan_id is not None or cfg.token:
        plan = "-" if cfg.plan_id is None else cfg.plan_id
        rows.append(("deployment", f"plan={plan} token={cfg.token or '-'}"))
    rows += [
        ("keeper", keeper_address or "<no signer>"),
        ("mode", f"{mode} {' '.join(flags)}".strip()),
        (
            "limits",
            f"txs/cycle={cfg.max_txs_per_cycle} tx_timeout={cfg.tx_timeout_seconds}s "
            f"pending_ttl={cfg.pending_ttl_seconds}s confirmations={cfg.confirmations}",
        ),
        (
            "backoff",
            f"base={cfg.backoff_base_seconds}s plan_inactive={cfg.plan_inactive_backoff_seconds}s "
            f"rpc={cfg.rpc_error_backoff_seconds}s max={cfg.backoff_max_seconds}s jitter={cfg.jitter_seconds}s",
        ),
        ("state", str(cfg.state_path)),
    ]
    _ui_print_panel(title="OPENSUB KEEPER", rows=rows, tone="magenta")


def print_cycle_banner(iteration: int, known: int, in_flight: int, backed_off: int) -> None:
    summary = f"known={known} | in_flight={in_flight} | backed_off={backed_off}"
    _ui_print_panel(
        title=f"CYCLE {iteration}",
        rows=[("", summary)],
        tone="blue",
        width=62,
    )
