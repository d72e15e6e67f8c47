"""
Chain A client: EVM HTLC contract over web3.

Contract interface:
    initiateSwap(bytes32 secretHash, address recipient, address token, uint256 amount, uint256 timelock)
    claim(bytes32 secretHash, bytes32 secret)
    refund(bytes32 secretHash)
    getSwap(bytes32 secretHash) -> (sender, recipient, token, amount, amountRemaining,
                                    timelock, claimed, refunded)

Timelocks are unix seconds.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests
from web3.exceptions import Web3Exception

from ..abi import parse_signature, decode_log, to_bytes
from ..core import Chain, LockState, SwapEvent, SwapStatus, normalize_hex, swap_id_for
from ..errors import TransientChainError
from .base import ChainClient, LogSubscription

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SWAP_INITIATED = parse_signature(
    "SwapInitiated(bytes32 indexed secretHash, address indexed sender, string recipient, "
    "address token, uint256 amount, uint256 timelock)"
)
SWAP_CLAIMED = parse_signature("SwapClaimed(bytes32 indexed secretHash, bytes32 secret)")
SWAP_REFUNDED = parse_signature("SwapRefunded(bytes32 indexed secretHash)")

SWAP_EVENTS = {
    SWAP_INITIATED.topic: (SWAP_INITIATED, SwapStatus.LOCKED),
    SWAP_CLAIMED.topic: (SWAP_CLAIMED, SwapStatus.RELEASED),
    SWAP_REFUNDED.topic: (SWAP_REFUNDED, SwapStatus.REFUNDED),
}

HTLC_ABI = [
    SWAP_INITIATED.to_abi("event"),
    SWAP_CLAIMED.to_abi("event"),
    SWAP_REFUNDED.to_abi("event"),
    {
        "name": "initiateSwap",
        "type": "function",
        "stateMutability": "payable",
        "inputs": [
            {"name": "secretHash", "type": "bytes32"},
            {"name": "recipient", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "timelock", "type": "uint256"}
        ],
        "outputs": []
    },
    {
        "name": "claim",
        "type": "function",
        "inputs": [
            {"name": "secretHash", "type": "bytes32"},
            {"name": "secret", "type": "bytes32"}
        ],
        "outputs": []
    },
    {
        "name": "refund",
        "type": "function",
        "inputs": [{"name": "secretHash", "type": "bytes32"}],
        "outputs": []
    },
    {
        "name": "getSwap",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "secretHash", "type": "bytes32"}],
        "outputs": [
            {"name": "sender", "type": "address"},
            {"name": "recipient", "type": "address"},
            {"name": "token", "type": "address"},
            {"name": "amount", "type": "uint256"},
            {"name": "amountRemaining", "type": "uint256"},
            {"name": "timelock", "type": "uint256"},
            {"name": "claimed", "type": "bool"},
            {"name": "refunded", "type": "bool"}
        ]
    }
]

ERC20_ABI = [
    {
        "name": "approve",
        "type": "function",
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"}
        ],
        "outputs": [{"name": "", "type": "bool"}]
    },
    {
        "name": "allowance",
        "type": "function",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"}
        ],
        "outputs": [{"name": "", "type": "uint256"}]
    }
]

# Network-level failures worth retrying
TRANSIENT_ERRORS = (requests.exceptions.RequestException, ConnectionError, TimeoutError)

# JSON-RPC error replies: ValueError on web3 6, Web3RPCError (a Web3Exception) on web3 7
RPC_ERRORS = (ValueError, Web3Exception)


@dataclass
class EVMConfig:
    """EVM chain configuration."""
    rpc_url: str = "http://127.0.0.1:8545"
    chain_id: int = 11155111
    contract_address: str = ""
    private_key: Optional[str] = None
    request_timeout: int = 30
    gas_limit: int = 300000
    gas_price_multiplier: float = 1.1
    log_batch_size: int = 2000
    # EVM token address (lowercase) -> NEAR token id for the mirrored lock
    token_map: Dict[str, str] = field(default_factory=dict)
    default_dest_token: str = "near"


def _hex(value) -> str:
    return "0x" + to_bytes(value).hex()


class EVMClient(ChainClient):
    """web3 access to the chain A HTLC contract."""

    chain = Chain.ETHEREUM

    def __init__(self, config: EVMConfig, w3=None):
        self.config = config
        self._web3 = w3
        self._contract = None
        self._account = None
        self._send_lock = threading.Lock()

    @property
    def web3(self):
        """Lazy-load web3 instance."""
        if self._web3 is None:
            from web3 import Web3
            self._web3 = Web3(Web3.HTTPProvider(
                self.config.rpc_url,
                request_kwargs={"timeout": self.config.request_timeout},
            ))
        return self._web3

    @property
    def contract(self):
        if self._contract is None:
            from web3 import Web3
            self._contract = self.web3.eth.contract(
                address=Web3.to_checksum_address(self.config.contract_address),
                abi=HTLC_ABI
            )
        return self._contract

    @property
    def account(self):
        if self._account is None:
            from eth_account import Account
            if not self.config.private_key:
                raise RuntimeError("EVM private key not configured")
            key = self.config.private_key
            if not key.startswith("0x"):
                key = "0x" + key
            self._account = Account.from_key(key)
        return self._account

    # =========================================================================
    # Reads
    # =========================================================================

    def get_block_number(self) -> int:
        try:
            return self.web3.eth.block_number
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"eth_blockNumber failed: {e}")

    def get_swap_events(self, from_block: int, to_block: int) -> List[SwapEvent]:
        from web3 import Web3

        address = Web3.to_checksum_address(self.config.contract_address)
        topics = [["0x" + t.hex() for t in SWAP_EVENTS]]
        events = []
        start = from_block
        while start <= to_block:
            end = min(to_block, start + self.config.log_batch_size - 1)
            try:
                logs = self.web3.eth.get_logs({
                    "fromBlock": start,
                    "toBlock": end,
                    "address": address,
                    "topics": topics,
                })
            except TRANSIENT_ERRORS as e:
                raise TransientChainError(f"eth_getLogs {start}-{end} failed: {e}")

            for entry in logs:
                event = self.parse_log(entry)
                if event is not None:
                    events.append(event)
            start = end + 1

        events.sort(key=lambda e: (e.block_ref, e.log_index))
        return events

    def parse_log(self, entry: Dict[str, Any]) -> Optional[SwapEvent]:
        """Convert a raw contract log into a SwapEvent."""
        topics = entry.get("topics") or []
        if not topics:
            return None
        match = SWAP_EVENTS.get(to_bytes(topics[0]))
        if match is None:
            return None
        sig, status = match
        fields = decode_log(sig, topics, entry.get("data"))
        if fields is None:
            log.warning(f"Undecodable {sig.name} log in tx {_hex(entry.get('transactionHash', b''))}")
            return None

        secret_hash = normalize_hex(fields["secretHash"])
        token = (fields.get("token") or "").lower()
        return SwapEvent(
            id=swap_id_for(self.chain, secret_hash),
            source_chain=self.chain,
            dest_chain=Chain.NEAR,
            source_token=token,
            dest_token=self.config.token_map.get(token, self.config.default_dest_token),
            amount=str(fields.get("amount", 0)),
            recipient=fields.get("recipient", ""),
            secret_hash=secret_hash,
            timelock=int(fields.get("timelock", 0)),
            status=status,
            tx_ref=_hex(entry.get("transactionHash", b"")),
            block_ref=int(entry.get("blockNumber", 0)),
            log_index=int(entry.get("logIndex", 0)),
            secret=normalize_hex(fields["secret"]) if "secret" in fields else None,
        )

    def get_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        from web3.exceptions import TransactionNotFound
        try:
            tx = self.web3.eth.get_transaction(tx_ref)
        except TransactionNotFound:
            return None
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"eth_getTransactionByHash failed: {e}")
        return {
            "hash": tx_ref,
            "from": tx.get("from"),
            "to": tx.get("to"),
            "input": _hex(tx.get("input", b"")),
            "blockNumber": tx.get("blockNumber"),
        }

    def get_receipt(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        from web3.exceptions import TransactionNotFound
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_ref)
        except TransactionNotFound:
            return None
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"eth_getTransactionReceipt failed: {e}")
        return {
            "status": receipt.get("status"),
            "blockNumber": receipt.get("blockNumber"),
            "logs": [
                {
                    "address": (entry.get("address") or "").lower(),
                    "topics": [_hex(t) for t in entry.get("topics", [])],
                    "data": _hex(entry.get("data", b"")),
                    "logIndex": entry.get("logIndex", 0),
                }
                for entry in receipt.get("logs", [])
            ],
        }

    def trace_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        """debug_traceTransaction with callTracer. None if the node refuses."""
        try:
            response = self.web3.provider.make_request(
                "debug_traceTransaction", [tx_ref, {"tracer": "callTracer"}]
            )
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"debug_traceTransaction failed: {e}")
        except RPC_ERRORS as e:
            log.debug(f"Tracing unavailable: {e}")
            return None
        if not isinstance(response, dict) or "error" in response:
            return None
        return response.get("result")

    def get_lock(self, secret_hash: str) -> Optional[LockState]:
        try:
            (sender, recipient, _token, amount, remaining,
             timelock, claimed, refunded) = self.contract.functions.getSwap(
                to_bytes(secret_hash)
            ).call()
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"getSwap failed: {e}")

        if sender == ZERO_ADDRESS:
            return None
        return LockState(
            secret_hash=normalize_hex(secret_hash),
            amount=amount,
            amount_remaining=remaining,
            timelock=timelock,
            recipient=recipient,
            is_completed=claimed,
            is_refunded=refunded,
        )

    def subscribe(self) -> Optional[LogSubscription]:
        from web3 import Web3
        try:
            log_filter = self.web3.eth.filter({
                "address": Web3.to_checksum_address(self.config.contract_address),
                "topics": [["0x" + t.hex() for t in SWAP_EVENTS]],
            })
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"eth_newFilter failed: {e}")
        except RPC_ERRORS as e:
            log.info(f"Log filters not supported by node: {e}")
            return None
        return EVMLogSubscription(self, log_filter)

    # =========================================================================
    # Writes
    # =========================================================================

    def _send(self, fn, value: int = 0) -> str:
        """Build, sign and broadcast a contract call. Returns tx hash."""
        from web3 import Web3

        w3 = self.web3
        account = self.account
        # Nonce allocation and broadcast must not interleave
        with self._send_lock:
            try:
                nonce = w3.eth.get_transaction_count(account.address, 'pending')
                gas_price = int(w3.eth.gas_price * self.config.gas_price_multiplier)
                tx = fn.build_transaction({
                    'from': account.address,
                    'nonce': nonce,
                    'gas': self.config.gas_limit,
                    'gasPrice': gas_price,
                    'chainId': self.config.chain_id,
                    'value': value,
                })
                signed = account.sign_transaction(tx)
                tx_hash = w3.eth.send_raw_transaction(signed.raw_transaction)
            except TRANSIENT_ERRORS as e:
                raise TransientChainError(f"Broadcast failed: {e}")
        return Web3.to_hex(tx_hash)

    def _ensure_allowance(self, token: str, amount: int):
        from web3 import Web3

        erc20 = self.web3.eth.contract(address=Web3.to_checksum_address(token), abi=ERC20_ABI)
        spender = Web3.to_checksum_address(self.config.contract_address)
        try:
            allowance = erc20.functions.allowance(self.account.address, spender).call()
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"allowance failed: {e}")
        if allowance >= amount:
            return
        tx_hash = self._send(erc20.functions.approve(spender, amount))
        log.info(f"Approve TX: {tx_hash}")

    def create_lock(self, recipient: str, secret_hash: str, timelock: int,
                    amount: int, token: str = "") -> str:
        from web3 import Web3

        token = token or ZERO_ADDRESS
        native = token.lower() == ZERO_ADDRESS
        if not native:
            self._ensure_allowance(token, amount)

        fn = self.contract.functions.initiateSwap(
            to_bytes(secret_hash),
            Web3.to_checksum_address(recipient),
            Web3.to_checksum_address(token),
            amount,
            timelock,
        )
        tx_hash = self._send(fn, value=amount if native else 0)
        log.info(f"initiateSwap TX: {tx_hash} (hash={secret_hash[:18]}..., amount={amount})")
        return tx_hash

    def claim(self, secret_hash: str, secret: str, amount: int) -> str:
        # The contract releases the full remaining amount
        tx_hash = self._send(self.contract.functions.claim(to_bytes(secret_hash), to_bytes(secret)))
        log.info(f"claim TX: {tx_hash}")
        return tx_hash

    def refund(self, secret_hash: str) -> str:
        tx_hash = self._send(self.contract.functions.refund(to_bytes(secret_hash)))
        log.info(f"refund TX: {tx_hash}")
        return tx_hash


class EVMLogSubscription(LogSubscription):
    """eth_newFilter feed. Nodes drop idle filters; callers re-subscribe."""

    def __init__(self, client: EVMClient, log_filter):
        self.client = client
        self.filter = log_filter

    def get_new_events(self) -> List[SwapEvent]:
        try:
            entries = self.filter.get_new_entries()
        except TRANSIENT_ERRORS as e:
            raise TransientChainError(f"eth_getFilterChanges failed: {e}")
        except RPC_ERRORS as e:
            # "filter not found" after the node expired it
            raise TransientChainError(f"Filter dropped: {e}")
        events = [self.client.parse_log(entry) for entry in entries]
        return [e for e in events if e is not None]

    def close(self):
        try:
            self.client.web3.eth.uninstall_filter(self.filter.filter_id)
        except (*RPC_ERRORS, *TRANSIENT_ERRORS) as e:
            log.debug(f"uninstall_filter failed: {e}")
