from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from requests import exceptions as requests_exceptions
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound, Web3Exception


SUBSCRIBED_EVENT_SIGNATURE = "Subscribed(uint256,uint256,address,uint40,uint40)"
SUBSCRIPTION_STATUS_ACTIVE = 1
DEFAULT_RPC_TIMEOUT_SECONDS = 30

# Minimal ABI for the keeper. uint40/uint16 return values are widened to uint256;
# the ABI encoding is one 32-byte word either way.
OPENSUB_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "isDue",
        "stateMutability": "view",
        "inputs": [{"name": "subscriptionId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "hasAccess",
        "stateMutability": "view",
        "inputs": [{"name": "subscriptionId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "type": "function",
        "name": "collect",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "subscriptionId", "type": "uint256"}],
        "outputs": [
            {"name": "merchantAmount", "type": "uint256"},
            {"name": "collectorFee", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "subscriptions",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "planId", "type": "uint256"},
            {"name": "subscriber", "type": "address"},
            {"name": "status", "type": "uint8"},
            {"name": "startTime", "type": "uint256"},
            {"name": "paidThrough", "type": "uint256"},
            {"name": "lastChargedAt", "type": "uint256"},
        ],
    },
    {
        "type": "function",
        "name": "plans",
        "stateMutability": "view",
        "inputs": [{"name": "", "type": "uint256"}],
        "outputs": [
            {"name": "merchant", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "price", "type": "uint256"},
            {"name": "interval", "type": "uint256"},
            {"name": "collectorFeeBps", "type": "uint256"},
            {"name": "active", "type": "bool"},
            {"name": "createdAt", "type": "uint256"},
        ],
    },
]

ERC20_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "allowance",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]

# OpenSub custom errors, used to turn revert data into something an operator can read.
OPENSUB_ERRORS: Dict[str, Tuple[str, ...]] = {
    "InvalidParameters": (),
    "InvalidPlan": ("uint256",),
    "PlanInactive": ("uint256",),
    "Unauthorized": (),
    "AlreadySubscribed": ("uint256", "address"),
    "InvalidSubscription": ("uint256",),
    "NotDue": ("uint40",),
    "SubscriptionNotActive": ("uint256",),
}
_ERROR_STRING_SELECTOR = "08c379a0"


def _selector(name: str, arg_types: Sequence[str]) -> str:
    return Web3.keccak(text=f"{name}({','.join(arg_types)})")[:4].hex().removeprefix("0x")


_ERROR_BY_SELECTOR: Dict[str, Tuple[str, Tuple[str, ...]]] = {
    _selector(name, arg_types): (name, arg_types) for name, arg_types in OPENSUB_ERRORS.items()
}


class LedgerError(Exception):
    pass


class LedgerRpcError(LedgerError):
    """Transport or node failure. Retrying later may succeed."""


class CollectReverted(LedgerError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class BroadcastRejected(LedgerError):
    """The node refused the signed transaction, so it was never broadcast."""


@dataclass(frozen=True)
class SubscribedEvent:
    subscription_id: int
    plan_id: int
    subscriber: str
    block_number: int


@dataclass(frozen=True)
class SubscriptionInfo:
    plan_id: int
    subscriber: str
    status: int
    start_time: int
    paid_through: int
    last_charged_at: int

    @property
    def active(self) -> bool:
        return self.status == SUBSCRIPTION_STATUS_ACTIVE


@dataclass(frozen=True)
class PlanInfo:
    merchant: str
    token: str
    price: int
    interval: int
    fee_bps: int
    active: bool
    created_at: int


@dataclass(frozen=True)
class PreparedTx:
    subscription_id: int
    tx_hash: str
    raw: bytes


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: int

    @property
    def succeeded(self) -> bool:
        return self.status == 1


def decode_revert_reason(exc: BaseException) -> str:
    data = getattr(exc, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = "0x" + bytes(data).hex()
    if isinstance(data, str) and data.startswith("0x") and len(data) >= 10:
        selector = data[2:10].lower()
        payload = bytes.fromhex(data[10:]) if len(data) > 10 else b""
        if selector == _ERROR_STRING_SELECTOR:
            try:
                (message,) = abi_decode(["string"], payload)
                return str(message)
            except (DecodingError, ValueError):
                return "Error(string)"
        known = _ERROR_BY_SELECTOR.get(selector)
        if known:
            name, arg_types = known
            if not arg_types:
                return f"{name}()"
            try:
                values = abi_decode(list(arg_types), payload)
            except (DecodingError, ValueError):
                return f"{name}(?)"
            return f"{name}({', '.join(str(v) for v in values)})"
        return f"unknown revert selector=0x{selector}"
    message = getattr(exc, "message", None) or str(exc)
    return str(message).strip() or exc.__class__.__name__


def _is_transport_error(exc: BaseException) -> bool:
    return isinstance(
        exc,
        (
            requests_exceptions.RequestException,
            ConnectionError,
            TimeoutError,
        ),
    )


class OpenSubLedger:
    """Read/write access to an OpenSub deployment over JSON-RPC.

    Every read is wrapped so callers only ever see ``LedgerRpcError`` for transport
    problems; contract reverts surface as ``CollectReverted`` from the collect paths.
    """

    def __init__(
        self,
        w3: Web3,
        address: str,
        private_key: Optional[str] = None,
        gas_limit: Optional[int] = None,
    ):
        self.w3 = w3
        self.address = Web3.to_checksum_address(address)
        self.contract = w3.eth.contract(address=self.address, abi=OPENSUB_ABI)
        self.gas_limit = gas_limit
        self.account = None
        if private_key:
            key = private_key.strip()
            if not key.startswith("0x"):
                key = f"0x{key}"
            self.account = w3.eth.account.from_key(key)
        self._token_contracts: Dict[str, Any] = {}
        self._chain_id: Optional[int] = None

    @classmethod
    def connect(
        cls,
        rpc_url: str,
        address: str,
        private_key: Optional[str] = None,
        gas_limit: Optional[int] = None,
        timeout: int = DEFAULT_RPC_TIMEOUT_SECONDS,
    ) -> "OpenSubLedger":
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        return cls(w3, address, private_key=private_key, gas_limit=gas_limit)

    @property
    def keeper_address(self) -> Optional[str]:
        return self.account.address if self.account is not None else None

    def _rpc(self, label: str, fn: Callable[[], Any], allow_revert: bool = False) -> Any:
        try:
            return fn()
        except ContractLogicError as e:
            if allow_revert:
                raise
            raise LedgerRpcError(f"{label} reverted: {decode_revert_reason(e)}") from e
        except (requests_exceptions.RequestException, Web3Exception, ValueError, OSError) as e:
            raise LedgerRpcError(f"{label} failed: {e}") from e

    def _token(self, token: str):
        key = token.lower()
        contract = self._token_contracts.get(key)
        if contract is None:
            contract = self.w3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
            self._token_contracts[key] = contract
        return contract

    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self._rpc("eth_chainId", lambda: self.w3.eth.chain_id))
        return self._chain_id

    def has_code(self) -> bool:
        code = self._rpc("eth_getCode", lambda: self.w3.eth.get_code(self.address))
        return len(bytes(code)) > 0

    def block_number(self) -> int:
        return int(self._rpc("eth_blockNumber", lambda: self.w3.eth.block_number))

    def subscribed_events(self, from_block: int, to_block: int) -> List[SubscribedEvent]:
        if from_block > to_block:
            raise ValueError(f"invalid log range: from({from_block}) > to({to_block})")
        topic0 = Web3.to_hex(Web3.keccak(text=SUBSCRIBED_EVENT_SIGNATURE))
        logs = self._rpc(
            f"eth_getLogs[{from_block},{to_block}]",
            lambda: self.w3.eth.get_logs(
                {
                    "address": self.address,
                    "topics": [topic0],
                    "fromBlock": from_block,
                    "toBlock": to_block,
                }
            ),
        )
        events: List[SubscribedEvent] = []
        for log in logs:
            topics = log.get("topics") or []
            if len(topics) < 4:
                continue
            events.append(
                SubscribedEvent(
                    subscription_id=int.from_bytes(bytes(topics[1]), "big"),
                    plan_id=int.from_bytes(bytes(topics[2]), "big"),
                    subscriber=Web3.to_checksum_address(bytes(topics[3])[-20:]),
                    block_number=int(log.get("blockNumber") or 0),
                )
            )
        return events

    def is_due(self, subscription_id: int) -> bool:
        fn = self.contract.functions.isDue(int(subscription_id))
        return bool(self._rpc(f"isDue({subscription_id})", fn.call))

    def has_access(self, subscription_id: int) -> bool:
        fn = self.contract.functions.hasAccess(int(subscription_id))
        return bool(self._rpc(f"hasAccess({subscription_id})", fn.call))

    def get_subscription(self, subscription_id: int) -> SubscriptionInfo:
        fn = self.contract.functions.subscriptions(int(subscription_id))
        plan_id, subscriber, status, start_time, paid_through, last_charged_at = self._rpc(
            f"subscriptions({subscription_id})", fn.call
        )
        return SubscriptionInfo(
            plan_id=int(plan_id),
            subscriber=str(subscriber),
            status=int(status),
            start_time=int(start_time),
            paid_through=int(paid_through),
            last_charged_at=int(last_charged_at),
        )

    def get_plan(self, plan_id: int) -> PlanInfo:
        fn = self.contract.functions.plans(int(plan_id))
        merchant, token, price, interval, fee_bps, active, created_at = self._rpc(f"plans({plan_id})", fn.call)
        return PlanInfo(
            merchant=str(merchant),
            token=str(token),
            price=int(price),
            interval=int(interval),
            fee_bps=int(fee_bps),
            active=bool(active),
            created_at=int(created_at),
        )

    def allowance(self, token: str, owner: str) -> int:
        fn = self._token(token).functions.allowance(Web3.to_checksum_address(owner), self.address)
        return int(self._rpc(f"allowance({owner})", fn.call))

    def balance_of(self, token: str, owner: str) -> int:
        fn = self._token(token).functions.balanceOf(Web3.to_checksum_address(owner))
        return int(self._rpc(f"balanceOf({owner})", fn.call))

    def simulate_collect(self, subscription_id: int) -> Tuple[int, int]:
        params: Dict[str, Any] = {}
        if self.account is not None:
            params["from"] = self.account.address
        fn = self.contract.functions.collect(int(subscription_id))
        try:
            merchant_amount, collector_fee = self._rpc(
                f"collect({subscription_id}) simulation",
                lambda: fn.call(params),
                allow_revert=True,
            )
        except ContractLogicError as e:
            raise CollectReverted(decode_revert_reason(e)) from e
        return int(merchant_amount), int(collector_fee)

    def _fee_params(self) -> Dict[str, int]:
        latest = self._rpc("eth_getBlockByNumber(latest)", lambda: self.w3.eth.get_block("latest"))
        base_fee = latest.get("baseFeePerGas")
        if base_fee is None:
            return {"gasPrice": int(self._rpc("eth_gasPrice", lambda: self.w3.eth.gas_price))}
        try:
            priority = int(self.w3.eth.max_priority_fee)
        except (requests_exceptions.RequestException, Web3Exception, ValueError):
            priority = int(Web3.to_wei(1, "gwei"))
        return {
            "maxPriorityFeePerGas": priority,
            "maxFeePerGas": int(base_fee) * 2 + priority,
        }

    def prepare_collect(self, subscription_id: int) -> PreparedTx:
        """Build and sign a collect() transaction without broadcasting it.

        The hash is known up front so the caller can record the submission before the
        node ever sees it.
        """
        if self.account is None:
            raise LedgerError("no keeper private key configured; cannot sign transactions")
        sender = self.account.address
        nonce = self._rpc(
            "eth_getTransactionCount",
            lambda: self.w3.eth.get_transaction_count(sender, "pending"),
        )
        params: Dict[str, Any] = {"from": sender, "nonce": int(nonce), "chainId": self.chain_id()}
        params.update(self._fee_params())
        fn = self.contract.functions.collect(int(subscription_id))
        try:
            if self.gas_limit:
                params["gas"] = int(self.gas_limit)
            else:
                estimate = self._rpc(
                    f"collect({subscription_id}) estimateGas",
                    lambda: fn.estimate_gas(params),
                    allow_revert=True,
                )
                params["gas"] = int(int(estimate) * 1.2)
            tx = self._rpc(
                f"collect({subscription_id}) build",
                lambda: fn.build_transaction(params),
                allow_revert=True,
            )
        except ContractLogicError as e:
            raise CollectReverted(decode_revert_reason(e)) from e
        signed = self.account.sign_transaction(tx)
        raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction", None)
        if raw is None:
            raise LedgerError("signed transaction is missing its raw payload")
        return PreparedTx(
            subscription_id=int(subscription_id),
            tx_hash=Web3.to_hex(Web3.keccak(raw)),
            raw=bytes(raw),
        )

    def broadcast(self, prepared: PreparedTx) -> str:
        try:
            self.w3.eth.send_raw_transaction(prepared.raw)
        except Exception as e:
            if _is_transport_error(e):
                # The node may or may not have accepted it.
                raise LedgerRpcError(f"eth_sendRawTransaction failed: {e}") from e
            if "already known" in str(e).lower():
                return prepared.tx_hash
            if isinstance(e, (Web3Exception, ValueError)):
                raise BroadcastRejected(str(e)) from e
            raise
        return prepared.tx_hash

    def get_receipt(self, tx_hash: str) -> Optional[TxReceipt]:
        try:
            receipt = self._rpc(
                f"eth_getTransactionReceipt({tx_hash})",
                lambda: self.w3.eth.get_transaction_receipt(tx_hash),
            )
        except LedgerRpcError as e:
            if isinstance(e.__cause__, TransactionNotFound):
                return None
            raise
        if not receipt:
            return None
        status = receipt.get("status")
        return TxReceipt(
            tx_hash=tx_hash,
            status=1 if status is None else int(status),
            block_number=int(receipt.get("blockNumber") or 0),
        )
