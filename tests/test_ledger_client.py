import unittest
from unittest import mock

from eth_abi import encode as abi_encode
from requests import exceptions as requests_exceptions
from web3 import Web3
from web3.exceptions import ContractLogicError, TransactionNotFound

from opensub.ledger_client import (
    BroadcastRejected,
    LedgerError,
    LedgerRpcError,
    OpenSubLedger,
    PreparedTx,
    decode_revert_reason,
)


LEDGER = "0x" + "cc" * 20


def _revert(signature: str, types, values) -> ContractLogicError:
    selector = bytes(Web3.keccak(text=signature)[:4])
    data = "0x" + (selector + abi_encode(types, values)).hex()
    return ContractLogicError("execution reverted", data=data)


class RevertDecodingTests(unittest.TestCase):
    def test_custom_errors_are_named(self) -> None:
        exc = _revert("NotDue(uint40)", ["uint40"], [1_700_000_000])
        self.assertEqual(decode_revert_reason(exc), "NotDue(1700000000)")
        self.assertEqual(decode_revert_reason(_revert("PlanInactive(uint256)", ["uint256"], [3])), "PlanInactive(3)")
        self.assertEqual(decode_revert_reason(_revert("Unauthorized()", [], [])), "Unauthorized()")

    def test_error_string(self) -> None:
        exc = _revert("Error(string)", ["string"], ["ERC20: insufficient allowance"])
        self.assertEqual(decode_revert_reason(exc), "ERC20: insufficient allowance")

    def test_unknown_selector_and_plain_message(self) -> None:
        exc = ContractLogicError("execution reverted", data="0xdeadbeef")
        self.assertEqual(decode_revert_reason(exc), "unknown revert selector=0xdeadbeef")
        self.assertEqual(decode_revert_reason(RuntimeError("boom")), "boom")


class LedgerWrapperTests(unittest.TestCase):
    def setUp(self) -> None:
        self.w3 = mock.Mock()
        self.ledger = OpenSubLedger(self.w3, LEDGER)
        self.prepared = PreparedTx(subscription_id=1, tx_hash="0x" + "ab" * 32, raw=b"\x02")

    def test_broadcast_transport_failure_is_ambiguous(self) -> None:
        self.w3.eth.send_raw_transaction.side_effect = requests_exceptions.ReadTimeout("timed out")
        with self.assertRaises(LedgerRpcError):
            self.ledger.broadcast(self.prepared)

    def test_broadcast_http_error_is_ambiguous(self) -> None:
        for error in (
            requests_exceptions.HTTPError("502 Server Error: Bad Gateway"),
            requests_exceptions.HTTPError("429 Client Error: Too Many Requests"),
        ):
            self.w3.eth.send_raw_transaction.side_effect = error
            with self.assertRaises(LedgerRpcError):
                self.ledger.broadcast(self.prepared)

    def test_broadcast_already_known_counts_as_sent(self) -> None:
        self.w3.eth.send_raw_transaction.side_effect = ValueError({"code": -32000, "message": "already known"})
        self.assertEqual(self.ledger.broadcast(self.prepared), self.prepared.tx_hash)

    def test_broadcast_node_refusal_is_definitive(self) -> None:
        self.w3.eth.send_raw_transaction.side_effect = ValueError({"code": -32000, "message": "nonce too low"})
        with self.assertRaises(BroadcastRejected):
            self.ledger.broadcast(self.prepared)

    def test_missing_receipt_is_none(self) -> None:
        self.w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("not found")
        self.assertIsNone(self.ledger.get_receipt(self.prepared.tx_hash))

    def test_receipt_fields(self) -> None:
        self.w3.eth.get_transaction_receipt.return_value = {"status": 0, "blockNumber": 42}
        receipt = self.ledger.get_receipt(self.prepared.tx_hash)
        self.assertFalse(receipt.succeeded)
        self.assertEqual(receipt.block_number, 42)

    def test_read_failures_become_rpc_errors(self) -> None:
        self.ledger.contract.functions.isDue.return_value.call.side_effect = requests_exceptions.ConnectionError("refused")
        with self.assertRaises(LedgerRpcError):
            self.ledger.is_due(1)
        self.ledger.contract.functions.isDue.return_value.call.side_effect = ContractLogicError("execution reverted")
        with self.assertRaises(LedgerRpcError):
            self.ledger.is_due(1)

    def test_prepare_without_key_is_refused(self) -> None:
        self.assertIsNone(self.ledger.keeper_address)
        with self.assertRaises(LedgerError) as ctx:
            self.ledger.prepare_collect(1)
        self.assertIn("private key", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
