"""
Chain B client: NEAR HTLC contract over JSON-RPC (httpx).

The contract emits NEP-297 logs:

    EVENT_JSON:{"standard":"htlc","version":"1.0.0","event":"swap_initiated",
                "data":[{"hashlock":"0x..","sender":"alice.near","receiver":"0x..",
                         "amount":"1000","timelock":"1700000000000000000","token":"near"}]}

Events: swap_initiated, swap_claimed (hashlock, secret, amount), swap_refunded (hashlock).
Change methods: initiate_swap, claim_swap, refund_swap. View: get_swap.

Timelocks are nanoseconds since epoch. Transactions are signed by an
injected NearSigner; key management is outside the relayer.
"""

import json
import base64
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from ..core import Chain, LockState, SwapEvent, SwapStatus, normalize_hex, swap_id_for
from ..errors import TransientChainError
from .base import ChainClient

log = logging.getLogger(__name__)

TGAS = 10 ** 12
EVENT_PREFIX = "EVENT_JSON:"
EVENT_STANDARD = "htlc"

EVENT_STATUS = {
    "swap_initiated": SwapStatus.LOCKED,
    "swap_claimed": SwapStatus.RELEASED,
    "swap_refunded": SwapStatus.REFUNDED,
}

NATIVE_TOKENS = ("", "near")

# RPC error causes meaning "does not exist (yet)"
MISSING_CAUSES = ("UNKNOWN_BLOCK", "UNKNOWN_CHUNK", "UNKNOWN_TRANSACTION", "GARBAGE_COLLECTED_BLOCK")
TRANSIENT_CAUSES = ("TIMEOUT_ERROR", "NO_SYNCED_BLOCKS", "NOT_SYNCED_YET", "INTERNAL_ERROR")


@dataclass
class NearConfig:
    """NEAR chain configuration."""
    rpc_url: str = "https://rpc.testnet.near.org"
    network_id: str = "testnet"
    contract_id: str = "fusion-htlc.testnet"
    account_id: str = ""
    request_timeout: float = 30.0
    finality: str = "final"
    create_gas: int = 300 * TGAS
    claim_gas: int = 100 * TGAS
    refund_gas: int = 100 * TGAS
    # NEAR token id -> EVM token address for the mirrored lock
    token_map: Dict[str, str] = field(default_factory=dict)
    default_dest_token: str = "0x0000000000000000000000000000000000000000"


class NearSigner(ABC):
    """Signs NEAR function-call transactions for the relayer account."""

    @abstractmethod
    def sign_function_call(self, receiver_id: str, method_name: str, args: bytes,
                           gas: int, deposit: int) -> str:
        """Return the signed transaction, borsh-serialized and base64-encoded."""
        ...


class NearRPCError(RuntimeError):
    def __init__(self, message: str, cause: str = ""):
        super().__init__(message)
        self.cause = cause


class NearClient(ChainClient):
    """JSON-RPC access to the chain B HTLC contract."""

    chain = Chain.NEAR

    def __init__(self, config: NearConfig, signer: Optional[NearSigner] = None,
                 http: Optional[httpx.Client] = None):
        self.config = config
        self.signer = signer
        self._http = http or httpx.Client(timeout=config.request_timeout)
        # tx hash -> signer, needed by tx status lookups
        self._tx_signers: Dict[str, str] = {}
        self._lock = threading.Lock()

    def close(self):
        self._http.close()

    # =========================================================================
    # RPC
    # =========================================================================

    def _call_rpc(self, method: str, params: Any, allow_missing: bool = False) -> Any:
        payload = {
            "jsonrpc": "2.0",
            "id": "relayer",
            "method": method,
            "params": params,
        }
        try:
            response = self._http.post(self.config.rpc_url, json=payload)
        except httpx.TransportError as e:
            raise TransientChainError(f"NEAR RPC {method} failed: {e}")

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientChainError(f"NEAR RPC {method} HTTP {response.status_code}")
        response.raise_for_status()

        data = response.json()
        error = data.get("error")
        if error:
            cause = (error.get("cause") or {}).get("name", "")
            if cause in MISSING_CAUSES and allow_missing:
                return None
            if cause in TRANSIENT_CAUSES:
                raise TransientChainError(f"NEAR RPC {method}: {cause}")
            raise NearRPCError(f"NEAR RPC {method} error: {error}", cause)
        return data.get("result")

    def _view(self, method: str, args: Dict[str, Any]) -> Any:
        result = self._call_rpc("query", {
            "request_type": "call_function",
            "finality": self.config.finality,
            "account_id": self.config.contract_id,
            "method_name": method,
            "args_base64": base64.b64encode(json.dumps(args).encode()).decode(),
        })
        raw = bytes(result.get("result", []))
        return json.loads(raw) if raw else None

    # =========================================================================
    # Reads
    # =========================================================================

    def get_block_number(self) -> int:
        block = self._call_rpc("block", {"finality": self.config.finality})
        return int(block["header"]["height"])

    def get_swap_events(self, from_block: int, to_block: int) -> List[SwapEvent]:
        events = []
        for height in range(from_block, to_block + 1):
            block = self._call_rpc("block", {"block_id": height}, allow_missing=True)
            if block is None:
                # Skipped height
                continue
            for header in block.get("chunks", []):
                if header.get("height_included") != height:
                    continue
                chunk = self._call_rpc("chunk", {"chunk_id": header["chunk_hash"]}, allow_missing=True)
                if chunk is None:
                    continue
                for tx in chunk.get("transactions", []):
                    if tx.get("receiver_id") != self.config.contract_id:
                        continue
                    events.extend(self._events_for_tx(tx["hash"], tx["signer_id"], height))
        return events

    def _tx_status(self, tx_hash: str, signer_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        with self._lock:
            sender = signer_id or self._tx_signers.get(tx_hash) or self.config.account_id
        return self._call_rpc("tx", {
            "tx_hash": tx_hash,
            "sender_account_id": sender,
            "wait_until": "EXECUTED",
        }, allow_missing=True)

    def _events_for_tx(self, tx_hash: str, signer_id: str, height: int) -> List[SwapEvent]:
        with self._lock:
            self._tx_signers[tx_hash] = signer_id
        outcome = self._tx_status(tx_hash, signer_id)
        if outcome is None:
            return []

        events = []
        log_index = 0
        for receipt in outcome.get("receipts_outcome", []):
            result = receipt.get("outcome", {})
            if result.get("executor_id") != self.config.contract_id:
                continue
            for line in result.get("logs", []):
                for event in self.parse_event_log(line):
                    event.tx_ref = tx_hash
                    event.block_ref = height
                    event.log_index = log_index
                    events.append(event)
                log_index += 1
        return events

    def parse_event_log(self, line: str) -> List[SwapEvent]:
        """Parse one EVENT_JSON log line into SwapEvents."""
        if not line.startswith(EVENT_PREFIX):
            return []
        try:
            payload = json.loads(line[len(EVENT_PREFIX):])
        except ValueError:
            log.warning(f"Malformed NEAR event log: {line[:80]}")
            return []
        if payload.get("standard") != EVENT_STANDARD:
            return []
        status = EVENT_STATUS.get(payload.get("event"))
        if status is None:
            return []

        events = []
        for item in payload.get("data", []):
            try:
                secret_hash = normalize_hex(item["hashlock"])
            except (KeyError, AttributeError):
                log.warning(f"NEAR {payload.get('event')} event without hashlock")
                continue
            token = item.get("token", "near")
            secret = item.get("secret")
            events.append(SwapEvent(
                id=swap_id_for(self.chain, secret_hash),
                source_chain=self.chain,
                dest_chain=Chain.ETHEREUM,
                source_token=token,
                dest_token=self.config.token_map.get(token, self.config.default_dest_token),
                amount=str(item.get("amount", "0")),
                recipient=item.get("receiver", ""),
                secret_hash=secret_hash,
                timelock=int(item.get("timelock", 0)),
                status=status,
                secret=normalize_hex(secret) if secret else None,
            ))
        return events

    def get_transaction(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        outcome = self._tx_status(tx_ref)
        if outcome is None:
            return None
        tx = outcome.get("transaction", {})
        args = b""
        for action in tx.get("actions", []):
            if isinstance(action, dict) and "FunctionCall" in action:
                args = base64.b64decode(action["FunctionCall"].get("args", ""))
                break
        return {
            "hash": tx_ref,
            "from": tx.get("signer_id"),
            "to": tx.get("receiver_id"),
            "input": "0x" + args.hex(),
        }

    def get_receipt(self, tx_ref: str) -> Optional[Dict[str, Any]]:
        outcome = self._tx_status(tx_ref)
        if outcome is None:
            return None
        status = outcome.get("status", {})
        # NEAR logs are not EVM logs; the extractor finds nothing here
        return {"status": 1 if "SuccessValue" in status else 0, "logs": []}

    def get_lock(self, secret_hash: str) -> Optional[LockState]:
        data = self._view("get_swap", {"hashlock": normalize_hex(secret_hash)})
        if not data:
            return None
        return LockState(
            secret_hash=normalize_hex(secret_hash),
            amount=int(data.get("amount", 0)),
            amount_remaining=int(data.get("amount_remaining", data.get("amount", 0))),
            timelock=int(data.get("timelock", 0)),
            recipient=data.get("receiver", ""),
            is_completed=bool(data.get("is_completed", False)),
            is_refunded=bool(data.get("is_refunded", False)),
        )

    # =========================================================================
    # Writes
    # =========================================================================

    def _function_call(self, receiver_id: str, method: str, args: Dict[str, Any],
                       gas: int, deposit: int = 0) -> str:
        if self.signer is None:
            raise RuntimeError("NEAR signer not configured")
        signed = self.signer.sign_function_call(
            receiver_id, method, json.dumps(args).encode(), gas, deposit
        )
        tx_hash = self._call_rpc("broadcast_tx_async", [signed])
        with self._lock:
            self._tx_signers[tx_hash] = self.config.account_id
        log.info(f"NEAR {method} TX: {tx_hash}")
        return tx_hash

    def create_lock(self, recipient: str, secret_hash: str, timelock: int,
                    amount: int, token: str = "") -> str:
        swap_args = {
            "receiver": recipient,
            "hashlock": normalize_hex(secret_hash),
            "timelock": str(timelock),
        }
        if token in NATIVE_TOKENS:
            return self._function_call(
                self.config.contract_id, "initiate_swap", swap_args,
                self.config.create_gas, deposit=amount,
            )
        # NEP-141 tokens are locked through ft_transfer_call on the token contract
        return self._function_call(
            token, "ft_transfer_call",
            {
                "receiver_id": self.config.contract_id,
                "amount": str(amount),
                "msg": json.dumps(swap_args),
            },
            self.config.create_gas, deposit=1,
        )

    def claim(self, secret_hash: str, secret: str, amount: int) -> str:
        return self._function_call(
            self.config.contract_id, "claim_swap",
            {
                "hashlock": normalize_hex(secret_hash),
                "secret": normalize_hex(secret),
                "amount": str(amount),
            },
            self.config.claim_gas,
        )

    def refund(self, secret_hash: str) -> str:
        return self._function_call(
            self.config.contract_id, "refund_swap",
            {"hashlock": normalize_hex(secret_hash)},
            self.config.refund_gas,
        )
