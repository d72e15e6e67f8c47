"""
Minimal ABI helpers for human-readable signatures.

    sig = parse_signature("SwapClaimed(bytes32 indexed secretHash, bytes32 secret)")
    fields = decode_log(sig, log["topics"], log["data"])
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

_SIG_RE = re.compile(r"^\s*(\w+)\s*\((.*)\)\s*$")


@dataclass
class AbiParam:
    type: str
    name: str
    indexed: bool = False


@dataclass
class AbiSignature:
    name: str
    params: List[AbiParam]

    @property
    def canonical(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic(self) -> bytes:
        return keccak(text=self.canonical)

    @property
    def selector(self) -> bytes:
        return keccak(text=self.canonical)[:4]

    def to_abi(self, kind: str = "event") -> Dict[str, Any]:
        """JSON ABI entry usable with web3 contract objects."""
        entry = {
            "name": self.name,
            "type": kind,
            "inputs": [{"name": p.name, "type": p.type} for p in self.params],
        }
        if kind == "event":
            entry["anonymous"] = False
            for inp, p in zip(entry["inputs"], self.params):
                inp["indexed"] = p.indexed
        return entry


def parse_signature(text: str) -> AbiSignature:
    """Parse `Name(type [indexed] name, ...)`."""
    match = _SIG_RE.match(text)
    if not match:
        raise ValueError(f"Bad signature: {text}")
    name, body = match.groups()
    params = []
    for i, part in enumerate(p.strip() for p in body.split(",") if p.strip()):
        tokens = part.split()
        indexed = "indexed" in tokens
        tokens = [t for t in tokens if t != "indexed"]
        params.append(AbiParam(
            type=tokens[0],
            name=tokens[1] if len(tokens) > 1 else f"arg{i}",
            indexed=indexed,
        ))
    return AbiSignature(name=name, params=params)


def to_bytes(value) -> bytes:
    """Accept hex strings (with or without 0x), bytes or HexBytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    text = str(value)
    if text.lower().startswith("0x"):
        text = text[2:]
    return bytes.fromhex(text)


def _as_hex(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return value


def decode_log(sig: AbiSignature, topics: List[Any], data: Any) -> Optional[Dict[str, Any]]:
    """Decode a log if topic0 matches the event. bytes values come back as 0x-hex."""
    indexed = [p for p in sig.params if p.indexed]
    plain = [p for p in sig.params if not p.indexed]
    if not topics or len(topics) - 1 != len(indexed):
        return None

    fields: Dict[str, Any] = {}
    try:
        if to_bytes(topics[0]) != sig.topic:
            return None
        for param, topic in zip(indexed, topics[1:]):
            raw = to_bytes(topic)
            if param.type in ("string", "bytes") or param.type.endswith("]"):
                # Dynamic indexed values are stored as their hash
                fields[param.name] = _as_hex(raw)
            else:
                fields[param.name] = _as_hex(decode([param.type], raw)[0])

        values = decode([p.type for p in plain], to_bytes(data or b""))
    except (DecodingError, ValueError):
        return None

    for param, value in zip(plain, values):
        fields[param.name] = _as_hex(value)
    return fields


def decode_call(sig: AbiSignature, calldata: Any) -> Optional[Dict[str, Any]]:
    """Decode calldata if its selector matches the function."""
    try:
        raw = to_bytes(calldata or b"")
        if len(raw) < 4 or raw[:4] != sig.selector:
            return None
        values = decode([p.type for p in sig.params], raw[4:])
    except (DecodingError, ValueError):
        return None
    return {p.name: _as_hex(v) for p, v in zip(sig.params, values)}


def encode_call(sig: AbiSignature, *args) -> bytes:
    return sig.selector + encode([p.type for p in sig.params], list(args))
