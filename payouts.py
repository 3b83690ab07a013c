# payouts.py
"""
Treasury payouts on the GOR chain (Solana fork): key loading, balance reads,
native transfers and signature status lookups.

Transfers are fire-and-forget: a submit accepted by the RPC node counts as
dispatched. Final settlement on-chain is checked later (claims.reconcile_payouts).
"""

from __future__ import annotations
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar, Union
import asyncio
import logging

import base58 as _b58
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from config import settings
from errors import ConfigurationError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SubmissionUncertain(Exception):
    """The submit call hit its deadline; the transaction may or may not have landed."""

    def __init__(self, signature: str, message: str):
        super().__init__(message)
        self.signature = signature


# =========================================================
# Keys
# =========================================================
def to_public_key(addr: Optional[Union[str, Pubkey, bytes, bytearray]]) -> Pubkey:
    if addr is None or addr == "":
        raise ValueError("Empty public key provided")
    if isinstance(addr, Pubkey):
        return addr
    if isinstance(addr, (bytes, bytearray)):
        if len(addr) != 32:
            raise ValueError(f"Public key length != 32 ({len(addr)})")
        return Pubkey.from_bytes(bytes(addr))
    raw = _b58.b58decode(str(addr).strip())
    if len(raw) != 32:
        raise ValueError(f"Decoded key length != 32 ({len(raw)})")
    return Pubkey.from_bytes(raw)


def _secret_bytes(credential: str) -> bytes:
    """Accept base58 (wallet export) or a comma-separated byte array ('[1,2,...]' or '1,2,...')."""
    s = credential.strip()
    if "," in s:
        parts = s.strip("[]").split(",")
        try:
            values = [int(p.strip()) for p in parts if p.strip()]
        except ValueError as e:
            raise ValueError(f"Invalid byte-array secret key: {e}")
        if any(v < 0 or v > 255 for v in values):
            raise ValueError("Byte-array secret key has values outside 0..255")
        return bytes(values)
    return _b58.b58decode(s)


def keypair_from_secret(credential: str) -> Keypair:
    if not credential:
        raise ValueError("Empty secret key provided")
    raw = _secret_bytes(credential)
    if len(raw) == 64:
        try:
            return Keypair.from_bytes(raw)
        except Exception as e:
            raise ValueError(f"Could not construct Keypair from 64-byte raw key: {e}")
    if len(raw) == 32:
        try:
            return Keypair.from_seed(raw)
        except Exception as e:
            raise ValueError(f"Could not construct Keypair from 32-byte seed: {e}")
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def load_treasury_signer(address: str, credential: str) -> Keypair:
    """
    Build the treasury keypair from system_config and check it signs for the
    configured address. Every problem is a ConfigurationError.
    """
    if not address or not credential:
        raise ConfigurationError(
            "Treasury wallet not properly configured (address and signing credential required)."
        )
    try:
        treasury = to_public_key(address)
    except Exception as e:
        raise ConfigurationError(f"Invalid treasury address {address!r}: {e}")
    try:
        kp = keypair_from_secret(credential)
    except Exception as e:
        raise ConfigurationError(f"Invalid treasury signing credential: {e}")
    if kp.pubkey() != treasury:
        raise ConfigurationError(
            "Treasury signer does not match configured address. "
            f"({treasury} != {kp.pubkey()})"
        )
    return kp


# =========================================================
# RPC helpers
# =========================================================
async def _with_retries(
    label: str,
    fn: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
) -> T:
    attempts = max(1, int(attempts or settings.RPC_RETRIES))
    delay = settings.RPC_RETRY_DELAY if delay is None else delay
    i = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            logger.warning("[payout] %s failed (attempt %d/%d): %s", label, i, attempts, e)
            if i >= attempts:
                raise
        await asyncio.sleep(delay)
        i += 1


async def _get_latest_blockhash(client: AsyncClient) -> Hash:
    lbh = await client.get_latest_blockhash(commitment=Confirmed)
    bh = getattr(getattr(lbh, "value", None), "blockhash", None)
    if bh is None:
        raise RuntimeError("Could not fetch latest blockhash")
    return bh


def _normalize_sig(resp) -> str:
    return str(getattr(resp, "value", None) or resp)


# =========================================================
# Payer
# =========================================================
class SolanaPayer:
    """Chain access used by the claim workflow. Tests swap in a fake with the same methods."""

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        send_timeout: Optional[float] = None,
    ):
        self.rpc_url = rpc_url or settings.RPC_URL
        self.retries = retries or settings.RPC_RETRIES
        self.retry_delay = settings.RPC_RETRY_DELAY if retry_delay is None else retry_delay
        self.send_timeout = send_timeout or settings.SEND_TIMEOUT_SECONDS

    async def get_balance(self, address: Union[str, Pubkey]) -> int:
        """Balance in lamports (3 attempts, fixed backoff)."""
        key = to_public_key(address)
        async with AsyncClient(self.rpc_url, commitment=Confirmed) as client:
            resp = await _with_retries(
                "get_balance",
                lambda: client.get_balance(key, commitment=Confirmed),
                self.retries, self.retry_delay,
            )
        return int(resp.value)

    async def transfer(self, signer: Keypair, recipient: Union[str, Pubkey], lamports: int) -> str:
        """Sign and submit one native transfer. Returns the signature once the node accepts it."""
        if lamports <= 0:
            raise ValueError("lamports must be > 0")
        to = to_public_key(recipient)

        async with AsyncClient(self.rpc_url, commitment=Confirmed) as client:
            blockhash = await _with_retries(
                "get_latest_blockhash", lambda: _get_latest_blockhash(client), self.retries, self.retry_delay
            )
            ix = transfer(TransferParams(from_pubkey=signer.pubkey(), to_pubkey=to, lamports=int(lamports)))
            tx = Transaction([signer], Message([ix], signer.pubkey()), blockhash)
            sig = str(tx.signatures[0])

            logger.info("[payout] sending %d lamports %s -> %s (sig %s)", lamports, signer.pubkey(), to, sig)
            try:
                resp = await asyncio.wait_for(
                    client.send_raw_transaction(
                        bytes(tx),
                        opts=TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3),
                    ),
                    timeout=self.send_timeout,
                )
            except asyncio.TimeoutError:
                raise SubmissionUncertain(sig, f"send_raw_transaction timed out after {self.send_timeout}s")

        return _normalize_sig(resp)

    async def signature_statuses(self, signatures: Sequence[str]) -> Dict[str, Optional[str]]:
        """
        Map each signature to 'confirmed', 'failed', 'processed', or None when
        the cluster does not know it.
        """
        if not signatures:
            return {}
        sig_objs: List[Signature] = [Signature.from_string(s) for s in signatures]
        async with AsyncClient(self.rpc_url, commitment=Confirmed) as client:
            resp = await _with_retries(
                "get_signature_statuses",
                lambda: client.get_signature_statuses(sig_objs, search_transaction_history=True),
                self.retries, self.retry_delay,
            )

        out: Dict[str, Optional[str]] = {}
        for s, st in zip(signatures, resp.value):
            if st is None:
                out[s] = None
            elif st.err is not None:
                out[s] = "failed"
            elif st.confirmation_status in (
                TransactionConfirmationStatus.Confirmed,
                TransactionConfirmationStatus.Finalized,
            ):
                out[s] = "confirmed"
            else:
                out[s] = "processed"
        return out
