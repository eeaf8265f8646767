# gateway.py
"""
TikShot — AccountGateway.

One gateway per RPC endpoint (base ledger, ephemeral rollup). Each wraps a
single long-lived AsyncClient and exposes:
  - typed reads of Game / Round / Player accounts
  - sign + send + confirm of instruction batches
  - one helper per program operation
"""

from __future__ import annotations
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, TypeVar
import json
import os

import base58 as _b58
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from errors import AccountNotFound, SubmissionFailed
import program as prog

T = TypeVar("T")


# =========================================================
# Keys
# =========================================================
def _kp_from_base58(b58: str) -> Keypair:
    if not b58:
        raise ValueError("Empty secret key provided")
    raw = _b58.b58decode(b58.strip())
    if len(raw) == 64:
        return Keypair.from_bytes(raw)
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def load_keypair(path: Optional[str] = None, secret_b58: Optional[str] = None) -> Keypair:
    """
    Authority keypair from a base58 secret (preferred when set) or from a
    Solana CLI keypair file (JSON array of 64 ints).
    """
    if secret_b58:
        return _kp_from_base58(secret_b58)
    if not path:
        raise ValueError("No keypair path or secret provided")
    with open(os.path.expanduser(path), "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list) or len(raw) != 64:
        raise ValueError(f"Keypair file {path} must hold a JSON array of 64 bytes")
    return Keypair.from_bytes(bytes(raw))


def short_sig(sig) -> str:
    return f"{str(sig)[:20]}..."


def _extract_logs(exc: BaseException) -> List[str]:
    """Program logs attached to a preflight failure, when solana-py exposes them."""
    for arg in getattr(exc, "args", ()):
        data = getattr(arg, "data", None)
        logs = getattr(data, "logs", None)
        if logs:
            return [str(line) for line in logs]
    return list(getattr(exc, "logs", None) or [])


# =========================================================
# Gateway
# =========================================================
class AccountGateway:
    def __init__(
        self,
        endpoint: str,
        authority: Keypair,
        label: str = "base",
        program_id: Pubkey = prog.PROGRAM_ID,
        client: Optional[AsyncClient] = None,
    ):
        self.endpoint = endpoint
        self.authority = authority
        self.label = label
        self.program_id = program_id
        self._client = client

    # ---------------- lifetime ----------------
    async def open(self) -> "AccountGateway":
        if self._client is None:
            self._client = AsyncClient(self.endpoint, commitment=Confirmed)
        return self

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None

    async def __aenter__(self) -> "AccountGateway":
        return await self.open()

    async def __aexit__(self, *exc) -> None:
        await self.close()

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            raise RuntimeError(f"{self.label} gateway is not open")
        return self._client

    @property
    def authority_pubkey(self) -> Pubkey:
        return self.authority.pubkey()

    # ---------------- reads ----------------
    async def _account_data(self, address: Pubkey, kind: str) -> bytes:
        resp = await self.client.get_account_info(address, commitment=Confirmed)
        val = getattr(resp, "value", None)
        if val is None:
            raise AccountNotFound(kind, str(address))
        return bytes(val.data)

    async def account_exists(self, address: Pubkey) -> bool:
        resp = await self.client.get_account_info(address, commitment=Confirmed)
        return getattr(resp, "value", None) is not None

    async def fetch_game(self) -> prog.Game:
        data = await self._account_data(prog.game_address(self.program_id), "Game")
        return prog.Game.decode(data)

    async def fetch_round(self, round_id: int) -> prog.Round:
        data = await self._account_data(prog.round_address(round_id, self.program_id), "Round")
        return prog.Round.decode(data)

    async def fetch_player(self, wallet: Pubkey) -> prog.Player:
        data = await self._account_data(prog.player_address(wallet, self.program_id), "Player")
        return prog.Player.decode(data)

    # ---------------- writes ----------------
    async def _latest_blockhash(self) -> Hash:
        lbh = await self.client.get_latest_blockhash(Confirmed)
        bh = getattr(getattr(lbh, "value", None), "blockhash", None)
        if bh is None:
            raise SubmissionFailed(f"Could not fetch latest blockhash from {self.label}")
        return bh

    async def send(
        self,
        instructions: Iterable[Instruction],
        signers: Sequence[Keypair] = (),
        compute_units: Optional[int] = None,
        priority_micro_lamports: Optional[int] = None,
        skip_preflight: bool = False,
    ) -> str:
        """Sign with the authority (fee payer) plus `signers`, submit, wait for confirmation."""
        ixs: List[Instruction] = []
        if compute_units:
            ixs.append(set_compute_unit_limit(compute_units))
        if priority_micro_lamports:
            ixs.append(set_compute_unit_price(priority_micro_lamports))
        ixs.extend(instructions)
        if not ixs:
            raise ValueError("no instructions to send")

        sig = None
        try:
            blockhash = await self._latest_blockhash()
            msg = Message.new_with_blockhash(ixs, self.authority_pubkey, blockhash)
            tx = Transaction([self.authority, *signers], msg, blockhash)
            resp = await self.client.send_raw_transaction(
                bytes(tx),
                opts=TxOpts(skip_preflight=skip_preflight, preflight_commitment=Confirmed),
            )
            sig = resp.value
            conf = await self.client.confirm_transaction(sig, commitment=Confirmed)
        except SubmissionFailed:
            raise
        except Exception as e:
            raise SubmissionFailed(
                f"{self.label} submission failed: {e}",
                signature=str(sig) if sig is not None else None,
                logs=_extract_logs(e),
            ) from e

        statuses = getattr(conf, "value", None) or []
        err = getattr(statuses[0], "err", None) if statuses and statuses[0] is not None else None
        if err is not None:
            raise SubmissionFailed(f"{self.label} transaction {short_sig(sig)} failed: {err}", signature=str(sig))
        return str(sig)

    # ---------------- program operations ----------------
    async def init_game(self, fee_bps: int) -> str:
        return await self.send([prog.init_game_ix(self.authority_pubkey, fee_bps, self.program_id)])

    async def register_player(self) -> str:
        return await self.send([prog.register_player_ix(self.authority_pubkey, self.program_id)])

    async def place_bet(self, round_id: int, direction: prog.Direction, amount: int) -> str:
        return await self.send([
            prog.place_bet_ix(self.authority_pubkey, round_id, direction, amount, self.program_id)
        ])

    def start_round(self, round_id: int, price_update: Pubkey) -> Instruction:
        """Built only; submitted by the price poster once the attestation exists."""
        return prog.start_round_ix(self.authority_pubkey, round_id, price_update, self.program_id)

    async def delegate_round(self, round_id: int) -> str:
        return await self.send([prog.delegate_round_ix(self.authority_pubkey, round_id, self.program_id)])

    async def lock_round(self, round_id: int) -> str:
        return await self.send([prog.lock_round_ix(self.authority_pubkey, round_id, self.program_id)])

    async def commit_round(self, round_id: int) -> str:
        return await self.send([prog.commit_round_ix(self.authority_pubkey, round_id, self.program_id)])

    def settle_round(self, round_id: int, price_update: Pubkey) -> Instruction:
        """Built only; submitted by the price poster once the attestation exists."""
        return prog.settle_round_ix(self.authority_pubkey, round_id, price_update, self.program_id)

    async def claim(self, round_id: int) -> str:
        return await self.send([prog.claim_ix(self.authority_pubkey, round_id, self.program_id)])


async def fetch_with_fallback(
    primary: AccountGateway,
    fallback: AccountGateway,
    fetch: Callable[[AccountGateway], Awaitable[T]],
) -> T:
    """Ephemeral-first read: a delegated account is freshest on the rollup, otherwise on base."""
    try:
        return await fetch(primary)
    except Exception:
        return await fetch(fallback)
