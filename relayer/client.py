"""
Claim client - builds, signs and submits claim requests to a relayer.

Usage:
    from relayer.client import ResolverClient

    client = ResolverClient("http://localhost:3001", private_key)
    result = client.resolve_swap("ethereum:0x...", secret, "1000000000000000000")
    if not result.success:
        print(result.failed_conditions, result.error)
"""

import time
import secrets
import logging
from typing import Any, Dict, Optional

import httpx
from eth_account import Account
from eth_account.messages import encode_defunct

from .core import ClaimRequest, ResolutionResult
from .errors import RelayerError, TransientChainError

log = logging.getLogger(__name__)


def sign_claim_request(private_key: str, swap_id: str, secret: str, claim_amount: str,
                       nonce: Optional[str] = None, timestamp: Optional[int] = None) -> ClaimRequest:
    """
    Build a ClaimRequest signed with EIP-191 personal_sign.

    Args:
        private_key: Claimer key; the claimer address is derived from it
        swap_id: Registry id of the swap leg ("<chain>:<secret_hash>")
        secret: 0x-prefixed 32-byte preimage
        claim_amount: Amount in smallest units, decimal string
        nonce: Defaults to 16 random bytes as hex
        timestamp: Unix milliseconds, defaults to now

    Returns:
        ClaimRequest ready to submit
    """
    account = Account.from_key(private_key)
    request = ClaimRequest(
        swap_id=swap_id,
        secret=secret,
        claim_amount=str(claim_amount),
        claimer=account.address,
        signature="",
        timestamp=timestamp if timestamp is not None else int(time.time() * 1000),
        nonce=nonce or secrets.token_hex(16),
    )
    signed = Account.sign_message(encode_defunct(text=request.signing_message()), private_key=private_key)
    request.signature = "0x" + bytes(signed.signature).hex()
    return request


def _result_from(data: Dict[str, Any]) -> ResolutionResult:
    return ResolutionResult(
        success=bool(data.get("success")),
        swap_id=data.get("swap_id", ""),
        tx_ref=data.get("tx_ref"),
        validated_conditions=list(data.get("validated_conditions") or []),
        failed_conditions=list(data.get("failed_conditions") or []),
        execution_time=float(data.get("execution_time") or 0.0),
        error=data.get("error"),
        error_code=data.get("error_code"),
    )


class ResolverClient:
    """HTTP client for the relayer's /resolve, /swap and /stats endpoints."""

    def __init__(self, base_url: str, private_key: Optional[str] = None,
                 http: Optional[httpx.Client] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.private_key = private_key
        self._http = http or httpx.Client(timeout=timeout)

    def close(self):
        self._http.close()

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self._http.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.TransportError as e:
            raise TransientChainError(f"{method} {path} failed: {e}")

    def resolve(self, request: ClaimRequest) -> ResolutionResult:
        """Submit a signed request. Rejections come back as a failed result."""
        response = self._request("POST", "/resolve", json={
            "swap_id": request.swap_id,
            "secret": request.secret,
            "claim_amount": request.claim_amount,
            "claimer": request.claimer,
            "signature": request.signature,
            "timestamp": request.timestamp,
            "nonce": request.nonce,
        })
        try:
            data = response.json()
        except ValueError:
            data = None
        if not isinstance(data, dict) or "success" not in data:
            # Rate limiting and request validation reply with {"detail": ...}
            if response.status_code == 429:
                raise TransientChainError("Resolver rate limit reached")
            detail = data.get("detail") if isinstance(data, dict) else response.text
            raise RelayerError(f"Resolver returned {response.status_code}: {detail}")

        result = _result_from(data)
        if result.success:
            log.info(f"Claim for {result.swap_id} resolved: {result.tx_ref}")
        else:
            log.warning(f"Claim for {result.swap_id} failed ({result.error_code}): {result.error}")
        return result

    def resolve_swap(self, swap_id: str, secret: str, claim_amount: str) -> ResolutionResult:
        """Sign with the client's key and submit."""
        if not self.private_key:
            raise RuntimeError("No private key configured")
        return self.resolve(sign_claim_request(self.private_key, swap_id, secret, claim_amount))

    def get_swap(self, swap_id: str) -> Optional[Dict[str, Any]]:
        response = self._request("GET", f"/swap/{swap_id}")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return response.json()

    def get_stats(self) -> Dict[str, Any]:
        response = self._request("GET", "/stats")
        response.raise_for_status()
        return response.json()
