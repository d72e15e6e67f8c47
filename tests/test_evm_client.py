#!/usr/bin/env python3
"""
EVM client tests: log decoding, lock reads, transaction building.

web3 is replaced with a MagicMock; logs are real ABI encodings.
"""

import sys
import os
import unittest
from unittest.mock import MagicMock, PropertyMock

import requests
from eth_abi import encode
from web3 import Web3
from web3.exceptions import TransactionNotFound, Web3Exception

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from relayer.chains.evm import (
    EVMClient, EVMConfig, SWAP_CLAIMED, SWAP_INITIATED, SWAP_REFUNDED, ZERO_ADDRESS,
)
from relayer.core import Chain, SwapStatus
from relayer.errors import TransientChainError

from fakes import SECRET, SECRET_HASH

CONTRACT = "0x" + "c0" * 20
HTLC_ADDRESS = Web3.to_checksum_address(CONTRACT)
SENDER = "0x" + "a1" * 20
KEY = "0x" + "4c" * 32
TX = bytes.fromhex("ee" * 32)


def _topic(value: bytes) -> bytes:
    return value.rjust(32, b"\x00")


def initiated_log(block=10, index=0):
    return {
        "topics": [SWAP_INITIATED.topic, bytes.fromhex(SECRET_HASH[2:]), _topic(bytes.fromhex(SENDER[2:]))],
        "data": encode(
            ["string", "address", "uint256", "uint256"],
            ["bob.testnet", ZERO_ADDRESS, 5 * 10 ** 18, 1_700_003_600],
        ),
        "transactionHash": TX,
        "blockNumber": block,
        "logIndex": index,
    }


class EVMTestCase(unittest.TestCase):

    def setUp(self):
        self.w3 = MagicMock()
        self.client = EVMClient(
            EVMConfig(contract_address=CONTRACT, private_key=KEY, chain_id=1337, log_batch_size=2),
            w3=self.w3,
        )


class TestParseLog(EVMTestCase):

    def test_initiated(self):
        event = self.client.parse_log(initiated_log())
        self.assertEqual(event.id, f"ethereum:{SECRET_HASH}")
        self.assertEqual(event.status, SwapStatus.LOCKED)
        self.assertEqual(event.dest_chain, Chain.NEAR)
        self.assertEqual(event.recipient, "bob.testnet")
        self.assertEqual(event.amount, str(5 * 10 ** 18))
        self.assertEqual(event.timelock, 1_700_003_600)
        self.assertEqual(event.dest_token, "near")
        self.assertEqual(event.tx_ref, "0x" + "ee" * 32)
        self.assertEqual((event.block_ref, event.log_index), (10, 0))

    def test_claimed_carries_secret(self):
        event = self.client.parse_log({
            "topics": [SWAP_CLAIMED.topic, bytes.fromhex(SECRET_HASH[2:])],
            "data": encode(["bytes32"], [bytes.fromhex(SECRET[2:])]),
            "transactionHash": TX,
            "blockNumber": 11,
            "logIndex": 2,
        })
        self.assertEqual(event.status, SwapStatus.RELEASED)
        self.assertEqual(event.secret, SECRET)

    def test_refunded(self):
        event = self.client.parse_log({
            "topics": ["0x" + SWAP_REFUNDED.topic.hex(), SECRET_HASH],
            "data": "0x",
            "transactionHash": TX,
        })
        self.assertEqual(event.status, SwapStatus.REFUNDED)
        self.assertIsNone(event.secret)

    def test_unknown_or_broken(self):
        self.assertIsNone(self.client.parse_log({"topics": [b"\x01" * 32], "data": b""}))
        self.assertIsNone(self.client.parse_log({"topics": []}))
        broken = initiated_log()
        broken["data"] = b"\x00" * 5
        self.assertIsNone(self.client.parse_log(broken))


class TestReads(EVMTestCase):

    def test_get_logs_in_batches(self):
        self.w3.eth.get_logs.side_effect = [
            [initiated_log(block=2, index=1)],
            [],
            [initiated_log(block=1, index=0)],
        ]
        events = self.client.get_swap_events(1, 5)
        ranges = [(c[0][0]["fromBlock"], c[0][0]["toBlock"]) for c in self.w3.eth.get_logs.call_args_list]
        self.assertEqual(ranges, [(1, 2), (3, 4), (5, 5)])
        self.assertEqual([e.block_ref for e in events], [1, 2])

    def test_get_logs_failure_is_transient(self):
        self.w3.eth.get_logs.side_effect = requests.exceptions.ConnectionError("reset")
        with self.assertRaises(TransientChainError):
            self.client.get_swap_events(1, 5)

    def test_block_number_failure_is_transient(self):
        type(self.w3.eth).block_number = PropertyMock(side_effect=requests.exceptions.Timeout())
        with self.assertRaises(TransientChainError):
            self.client.get_block_number()

    def test_get_lock(self):
        call = self.w3.eth.contract.return_value.functions.getSwap.return_value.call
        call.return_value = (SENDER, "0x" + "b2" * 20, ZERO_ADDRESS, 100, 60, 1_700_000_000, False, False)
        lock = self.client.get_lock(SECRET_HASH)
        self.assertEqual((lock.amount, lock.amount_remaining, lock.timelock), (100, 60, 1_700_000_000))
        self.assertFalse(lock.is_completed)

    def test_missing_lock(self):
        call = self.w3.eth.contract.return_value.functions.getSwap.return_value.call
        call.return_value = (ZERO_ADDRESS, ZERO_ADDRESS, ZERO_ADDRESS, 0, 0, 0, False, False)
        self.assertIsNone(self.client.get_lock(SECRET_HASH))

    def test_unknown_transaction(self):
        self.w3.eth.get_transaction.side_effect = TransactionNotFound("nope")
        self.assertIsNone(self.client.get_transaction("0x" + "ee" * 32))

    def test_receipt_normalized(self):
        self.w3.eth.get_transaction_receipt.return_value = {
            "status": 1,
            "blockNumber": 9,
            "logs": [{"address": CONTRACT.upper(), "topics": [SWAP_REFUNDED.topic], "data": b"", "logIndex": 4}],
        }
        receipt = self.client.get_receipt("0x" + "ee" * 32)
        self.assertEqual(receipt["logs"][0]["topics"], ["0x" + SWAP_REFUNDED.topic.hex()])
        self.assertEqual(receipt["logs"][0]["data"], "0x")

    def test_trace_unsupported(self):
        self.w3.provider.make_request.return_value = {"error": {"message": "method not found"}}
        self.assertIsNone(self.client.trace_transaction("0x" + "ee" * 32))

    def test_trace_rpc_error_reply(self):
        self.w3.provider.make_request.side_effect = Web3Exception("method not found")
        self.assertIsNone(self.client.trace_transaction("0x" + "ee" * 32))


class TestSubscription(EVMTestCase):

    def test_new_entries(self):
        log_filter = self.w3.eth.filter.return_value
        log_filter.get_new_entries.return_value = [initiated_log(), {"topics": []}]
        subscription = self.client.subscribe()
        events = subscription.get_new_events()
        self.assertEqual(len(events), 1)

        subscription.close()
        self.w3.eth.uninstall_filter.assert_called_once_with(log_filter.filter_id)

    def test_dropped_filter_is_transient(self):
        self.w3.eth.filter.return_value.get_new_entries.side_effect = ValueError("filter not found")
        subscription = self.client.subscribe()
        with self.assertRaises(TransientChainError):
            subscription.get_new_events()

    def test_filters_unsupported(self):
        self.w3.eth.filter.side_effect = ValueError("method not found")
        self.assertIsNone(self.client.subscribe())

    def test_rpc_error_reply_filter_dropped(self):
        # web3 7 raises Web3RPCError, a Web3Exception and not a ValueError
        self.w3.eth.filter.return_value.get_new_entries.side_effect = Web3Exception("filter not found")
        subscription = self.client.subscribe()
        with self.assertRaises(TransientChainError):
            subscription.get_new_events()

        self.w3.eth.uninstall_filter.side_effect = Web3Exception("filter not found")
        subscription.close()

    def test_rpc_error_reply_filters_unsupported(self):
        self.w3.eth.filter.side_effect = Web3Exception("the method eth_newFilter does not exist")
        self.assertIsNone(self.client.subscribe())


class TestWrites(EVMTestCase):

    def setUp(self):
        super().setUp()
        self.w3.eth.get_transaction_count.return_value = 7
        self.w3.eth.gas_price = 10 ** 9
        self.w3.eth.send_raw_transaction.return_value = TX
        self.functions = self.w3.eth.contract.return_value.functions
        for name in ("initiateSwap", "claim", "refund"):
            getattr(self.functions, name).return_value.build_transaction.side_effect = self._build

    @staticmethod
    def _build(params):
        tx = dict(params)
        tx.pop("from")
        tx.update({"to": CONTRACT, "data": "0x"})
        return tx

    def test_native_lock(self):
        tx_hash = self.client.create_lock("0x" + "b2" * 20, SECRET_HASH, 1_700_000_000, 10 ** 18)
        self.assertEqual(tx_hash, "0x" + "ee" * 32)
        args = self.functions.initiateSwap.call_args[0]
        self.assertEqual(args[0], bytes.fromhex(SECRET_HASH[2:]))
        self.assertEqual(args[3:], (10 ** 18, 1_700_000_000))

        params = self.functions.initiateSwap.return_value.build_transaction.call_args[0][0]
        self.assertEqual(params["value"], 10 ** 18)
        self.assertEqual(params["nonce"], 7)
        self.assertEqual(params["chainId"], 1337)
        self.assertEqual(params["gasPrice"], int(10 ** 9 * 1.1))
        self.w3.eth.send_raw_transaction.assert_called_once()

    def test_claim(self):
        self.client.claim(SECRET_HASH, SECRET, 5)
        self.functions.claim.assert_called_once_with(
            bytes.fromhex(SECRET_HASH[2:]), bytes.fromhex(SECRET[2:]))
        params = self.functions.claim.return_value.build_transaction.call_args[0][0]
        self.assertEqual(params["value"], 0)

    def test_token_lock_approves_first(self):
        erc20 = MagicMock()
        erc20.functions.allowance.return_value.call.return_value = 0
        erc20.functions.approve.return_value.build_transaction.side_effect = self._build
        htlc = self.w3.eth.contract.return_value
        self.w3.eth.contract.side_effect = lambda address, abi: htlc if address == HTLC_ADDRESS else erc20

        token = "0x" + "d4" * 20
        self.client.create_lock("0x" + "b2" * 20, SECRET_HASH, 1_700_000_000, 50, token=token)
        erc20.functions.approve.assert_called_once_with(HTLC_ADDRESS, 50)
        params = self.functions.initiateSwap.return_value.build_transaction.call_args[0][0]
        self.assertEqual(params["value"], 0)
        self.assertEqual(self.w3.eth.send_raw_transaction.call_count, 2)

    def test_broadcast_failure_is_transient(self):
        self.w3.eth.send_raw_transaction.side_effect = requests.exceptions.ConnectionError("reset")
        with self.assertRaises(TransientChainError):
            self.client.refund(SECRET_HASH)

    def test_no_key(self):
        client = EVMClient(EVMConfig(contract_address=CONTRACT), w3=self.w3)
        with self.assertRaises(RuntimeError):
            client.refund(SECRET_HASH)


if __name__ == "__main__":
    unittest.main(verbosity=2)
