import logging
from pathlib import Path
from typing import Dict, List, Optional

from opensub.keeper.config import KeeperConfig
from opensub.ledger_client import (
    CollectReverted,
    LedgerRpcError,
    PlanInfo,
    PreparedTx,
    SubscribedEvent,
    SubscriptionInfo,
    TxReceipt,
)


TOKEN = "0x00000000000000000000000000000000000000aa"
MERCHANT = "0x00000000000000000000000000000000000000bb"
LEDGER = "0x00000000000000000000000000000000000000cc"


def subscriber_address(n: int) -> str:
    return "0x" + f"{n:040x}"


class FakeClock:
    def __init__(self, now: int = 1_700_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


class FakeLedger:
    """In-memory OpenSub ledger.

    ``receipt_mode`` controls what a broadcast collect does: ``instant`` executes it
    and mines a receipt at the current head, ``revert`` mines a failed receipt,
    ``pending`` leaves it unmined.
    """

    def __init__(self, clock: FakeClock, head: int = 100):
        self.clock = clock
        self.head = head
        self.events: List[SubscribedEvent] = []
        self.subs: Dict[int, dict] = {}
        self.plans: Dict[int, dict] = {}
        self.allowances: Dict[str, int] = {}
        self.balances: Dict[str, int] = {}
        self.receipts: Dict[str, TxReceipt] = {}
        self.receipt_mode = "instant"
        self.broadcast_error: Optional[Exception] = None
        self.failing_ids = set()
        self.failing_log_ranges = 0
        self.log_requests: List[tuple] = []
        self.prepared: List[int] = []
        self.sent: List[int] = []
        self.simulations: List[int] = []
        self.collected: List[int] = []
        self.merchant_balance = 0
        self._nonce = 0
        self.keeper_address = "0x00000000000000000000000000000000000000dd"

    # setup helpers

    def add_plan(self, plan_id: int, price: int = 10, interval: int = 2_592_000, active: bool = True) -> None:
        self.plans[plan_id] = {"price": price, "interval": interval, "active": active}

    def add_subscription(
        self,
        sub_id: int,
        plan_id: int = 1,
        block: int = 50,
        paid_through: Optional[int] = None,
        allowance: int = 1_000,
        balance: int = 1_000,
        status: int = 1,
    ) -> str:
        payer = subscriber_address(sub_id)
        self.subs[sub_id] = {
            "plan_id": plan_id,
            "subscriber": payer,
            "status": status,
            "paid_through": self.clock.now - 1 if paid_through is None else paid_through,
        }
        self.allowances[payer] = allowance
        self.balances[payer] = balance
        self.events.append(SubscribedEvent(sub_id, plan_id, payer, block))
        return payer

    # reads

    def chain_id(self) -> int:
        return 84532

    def has_code(self) -> bool:
        return True

    def block_number(self) -> int:
        return self.head

    def subscribed_events(self, from_block: int, to_block: int) -> List[SubscribedEvent]:
        self.log_requests.append((from_block, to_block))
        if self.failing_log_ranges > 0 and to_block - from_block + 1 > self.failing_log_ranges:
            raise LedgerRpcError(f"range too large [{from_block},{to_block}]")
        return [e for e in self.events if from_block <= e.block_number <= to_block]

    def _check_id(self, sub_id: int) -> None:
        if sub_id in self.failing_ids:
            raise LedgerRpcError(f"timeout reading {sub_id}")

    def is_due(self, sub_id: int) -> bool:
        self._check_id(sub_id)
        sub = self.subs[sub_id]
        return sub["status"] == 1 and self.clock.now >= sub["paid_through"]

    def has_access(self, sub_id: int) -> bool:
        return self.clock.now < self.subs[sub_id]["paid_through"]

    def get_subscription(self, sub_id: int) -> SubscriptionInfo:
        self._check_id(sub_id)
        sub = self.subs[sub_id]
        return SubscriptionInfo(
            plan_id=sub["plan_id"],
            subscriber=sub["subscriber"],
            status=sub["status"],
            start_time=0,
            paid_through=sub["paid_through"],
            last_charged_at=0,
        )

    def get_plan(self, plan_id: int) -> PlanInfo:
        plan = self.plans[plan_id]
        return PlanInfo(
            merchant=MERCHANT,
            token=TOKEN,
            price=plan["price"],
            interval=plan["interval"],
            fee_bps=100,
            active=plan["active"],
            created_at=0,
        )

    def allowance(self, token: str, owner: str) -> int:
        return self.allowances.get(owner, 0)

    def balance_of(self, token: str, owner: str) -> int:
        return self.balances.get(owner, 0)

    # collect

    def _collect_error(self, sub_id: int) -> Optional[str]:
        sub = self.subs[sub_id]
        plan = self.plans[sub["plan_id"]]
        if sub["status"] != 1:
            return f"SubscriptionNotActive({sub_id})"
        if self.clock.now < sub["paid_through"]:
            return f"NotDue({sub['paid_through']})"
        if not plan["active"]:
            return f"PlanInactive({sub['plan_id']})"
        if self.allowances.get(sub["subscriber"], 0) < plan["price"]:
            return "ERC20: insufficient allowance"
        if self.balances.get(sub["subscriber"], 0) < plan["price"]:
            return "ERC20: transfer amount exceeds balance"
        return None

    def simulate_collect(self, sub_id: int):
        self.simulations.append(sub_id)
        error = self._collect_error(sub_id)
        if error:
            raise CollectReverted(error)
        price = self.plans[self.subs[sub_id]["plan_id"]]["price"]
        return price - price // 100, price // 100

    def prepare_collect(self, sub_id: int) -> PreparedTx:
        self._nonce += 1
        self.prepared.append(sub_id)
        return PreparedTx(subscription_id=sub_id, tx_hash=f"0x{self._nonce:064x}", raw=b"\x01")

    def broadcast(self, prepared: PreparedTx) -> str:
        if self.broadcast_error is not None:
            raise self.broadcast_error
        self.sent.append(prepared.subscription_id)
        if self.receipt_mode == "pending":
            return prepared.tx_hash
        ok = self.receipt_mode == "instant" and self._collect_error(prepared.subscription_id) is None
        if ok:
            self._apply_collect(prepared.subscription_id)
        self.receipts[prepared.tx_hash] = TxReceipt(prepared.tx_hash, 1 if ok else 0, self.head)
        return prepared.tx_hash

    def _apply_collect(self, sub_id: int) -> None:
        sub = self.subs[sub_id]
        plan = self.plans[sub["plan_id"]]
        payer = sub["subscriber"]
        self.allowances[payer] -= plan["price"]
        self.balances[payer] -= plan["price"]
        self.merchant_balance += plan["price"]
        sub["paid_through"] += plan["interval"]
        self.collected.append(sub_id)

    def mine(self, tx_hash: str, sub_id: int, status: int = 1) -> None:
        if status == 1:
            self._apply_collect(sub_id)
        self.receipts[tx_hash] = TxReceipt(tx_hash, status, self.head)

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        return self.receipts.get(tx_hash)


def make_config(state_path: Path, **overrides) -> KeeperConfig:
    values = dict(
        deployment_path=Path("deployments/test.json"),
        state_path=state_path,
        chain_id=84532,
        rpc_url="http://127.0.0.1:8545",
        ledger_address=LEDGER,
        start_block=10,
        plan_id=None,
        token=None,
        private_key_env="KEEPER_PRIVATE_KEY",
        private_key="0x" + "11" * 32,
        poll_seconds=30,
        once=True,
        confirmations=1,
        log_chunk_size=2000,
        max_concurrency=4,
        gas_limit=None,
        max_txs_per_cycle=25,
        tx_timeout_seconds=0,
        pending_ttl_seconds=900,
        tx_interval_seconds=0.0,
        receipt_poll_seconds=0.1,
        backoff_base_seconds=300,
        backoff_max_seconds=21600,
        plan_inactive_backoff_seconds=1800,
        rpc_error_backoff_seconds=30,
        jitter_seconds=30,
        simulate=True,
        dry_run=False,
        ignore_backoff=False,
        log_level="INFO",
        log_path=None,
    )
    values.update(overrides)
    return KeeperConfig(**values)


def quiet_logger() -> logging.Logger:
    logger = logging.getLogger("opensub.keeper.tests")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    if not logger.handlers:
        logger.addHandler(logging.NullHandler())
    return logger
