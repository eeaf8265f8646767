# program.py
"""
TikShot — on-chain program client layer.

Everything needed to talk to the TikShot Anchor program without an IDL:
  - PDA derivation (game / round / player + delegation accounts)
  - account layouts (Game, Round, Player) decoded from Borsh
  - instruction builders for the nine program operations

No I/O lives here; see gateway.py for the RPC side.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import IntEnum
from typing import List, Optional, Tuple
import hashlib
import struct

from solders.pubkey import Pubkey
from solders.instruction import Instruction, AccountMeta
from solders.system_program import ID as SYS_PROGRAM_ID

from config import settings

# =========================================================
# Constants
# =========================================================
PROGRAM_ID = Pubkey.from_string(settings.PROGRAM_ID)

# Ephemeral rollup (MagicBlock) programs
DELEGATION_PROGRAM_ID = Pubkey.from_string("DELeGGvXpWV2fqJUhqcF5ZSYMS4JTLjteaAMARRSaeSh")
MAGIC_PROGRAM_ID = Pubkey.from_string("Magic11111111111111111111111111111111111111")
MAGIC_CONTEXT_ID = Pubkey.from_string("MagicContext1111111111111111111111111111111")

GAME_SEED = b"game"
ROUND_SEED = b"round"
PLAYER_SEED = b"player"

MAX_PLAYERS = 8
CREDIT_DECIMALS = 9
STARTING_CREDITS = 1_000 * 10**CREDIT_DECIMALS
MAX_FEE_BPS = 10_000

DEFAULT_PUBKEY = Pubkey.default()


class Direction(IntEnum):
    UP = 0
    DOWN = 1


class RoundStatus(IntEnum):
    OPEN = 0
    LOCKED = 1
    SETTLED = 2


class RoundResult(IntEnum):
    PENDING = 0
    UP = 1
    DOWN = 2
    TIE = 3


# =========================================================
# Anchor discriminators
# =========================================================
def _sighash(namespace: str, name: str) -> bytes:
    return hashlib.sha256(f"{namespace}:{name}".encode()).digest()[:8]


def instruction_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256('global:<snake_case_name>')."""
    return _sighash("global", name)


def account_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256('account:<TypeName>')."""
    return _sighash("account", name)


# =========================================================
# PDA helpers
# =========================================================
def round_seed(round_id: int) -> bytes:
    """Canonical u64 little-endian encoding used in round seeds."""
    if not 0 <= int(round_id) < 2**64:
        raise ValueError(f"round id out of u64 range: {round_id}")
    return int(round_id).to_bytes(8, "little")


def game_address(program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    pda, _ = Pubkey.find_program_address([GAME_SEED], program_id)
    return pda


def round_address(round_id: int, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    pda, _ = Pubkey.find_program_address([ROUND_SEED, round_seed(round_id)], program_id)
    return pda


def player_address(wallet: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Pubkey:
    pda, _ = Pubkey.find_program_address([PLAYER_SEED, bytes(wallet)], program_id)
    return pda


def delegation_accounts(pda: Pubkey, owner_program: Pubkey = PROGRAM_ID) -> Tuple[Pubkey, Pubkey, Pubkey]:
    """(buffer, delegation record, delegation metadata) for a delegated PDA."""
    buffer, _ = Pubkey.find_program_address([b"buffer", bytes(pda)], owner_program)
    record, _ = Pubkey.find_program_address([b"delegation", bytes(pda)], DELEGATION_PROGRAM_ID)
    metadata, _ = Pubkey.find_program_address([b"delegation-metadata", bytes(pda)], DELEGATION_PROGRAM_ID)
    return buffer, record, metadata


# =========================================================
# Account layouts
# =========================================================
_GAME = struct.Struct("<32sHQ")
_ROUND_HEAD = struct.Struct("<QqqqqqiQQBBB")
_BET = struct.Struct("<32sQQ")
_PLAYER = struct.Struct("<32sQ")

GAME_SIZE = 8 + _GAME.size
ROUND_SIZE = 8 + _ROUND_HEAD.size + _BET.size * MAX_PLAYERS
PLAYER_SIZE = 8 + _PLAYER.size


def _strip_discriminator(data: bytes, name: str, size: int) -> bytes:
    data = bytes(data)
    if len(data) < size:
        raise ValueError(f"{name} account too short: {len(data)} < {size}")
    if data[:8] != account_discriminator(name):
        raise ValueError(f"not a {name} account (discriminator mismatch)")
    return data[8:]


@dataclass(frozen=True)
class Game:
    authority: Pubkey
    fee_bps: int
    round_count: int

    @classmethod
    def decode(cls, data: bytes) -> "Game":
        body = _strip_discriminator(data, "Game", GAME_SIZE)
        authority, fee_bps, round_count = _GAME.unpack_from(body)
        return cls(Pubkey.from_bytes(authority), fee_bps, round_count)

    def encode(self) -> bytes:
        return account_discriminator("Game") + _GAME.pack(bytes(self.authority), self.fee_bps, self.round_count)


@dataclass(frozen=True)
class Bet:
    player: Pubkey
    up_amount: int = 0
    down_amount: int = 0

    @property
    def total(self) -> int:
        return self.up_amount + self.down_amount

    @property
    def claimed(self) -> bool:
        return self.player == DEFAULT_PUBKEY


@dataclass(frozen=True)
class Round:
    round_id: int
    start_ts: int
    lock_ts: int
    end_ts: int
    start_price: int
    end_price: int
    price_expo: int
    total_up: int
    total_down: int
    status: RoundStatus
    result: RoundResult
    bets: Tuple[Bet, ...] = ()

    @property
    def total_pool(self) -> int:
        return self.total_up + self.total_down

    @property
    def is_settled(self) -> bool:
        return self.status == RoundStatus.SETTLED

    @classmethod
    def decode(cls, data: bytes) -> "Round":
        body = _strip_discriminator(data, "Round", ROUND_SIZE)
        (round_id, start_ts, lock_ts, end_ts, start_price, end_price, expo,
         total_up, total_down, status, result, num_bets) = _ROUND_HEAD.unpack_from(body)
        if num_bets > MAX_PLAYERS:
            raise ValueError(f"num_bets {num_bets} exceeds {MAX_PLAYERS}")
        bets: List[Bet] = []
        off = _ROUND_HEAD.size
        for i in range(num_bets):
            player, up, down = _BET.unpack_from(body, off + i * _BET.size)
            bets.append(Bet(Pubkey.from_bytes(player), up, down))
        return cls(
            round_id=round_id, start_ts=start_ts, lock_ts=lock_ts, end_ts=end_ts,
            start_price=start_price, end_price=end_price, price_expo=expo,
            total_up=total_up, total_down=total_down,
            status=RoundStatus(status), result=RoundResult(result),
            bets=tuple(bets),
        )

    def encode(self) -> bytes:
        head = _ROUND_HEAD.pack(
            self.round_id, self.start_ts, self.lock_ts, self.end_ts,
            self.start_price, self.end_price, self.price_expo,
            self.total_up, self.total_down, int(self.status), int(self.result), len(self.bets),
        )
        slots = list(self.bets) + [Bet(DEFAULT_PUBKEY)] * (MAX_PLAYERS - len(self.bets))
        tail = b"".join(_BET.pack(bytes(b.player), b.up_amount, b.down_amount) for b in slots)
        return account_discriminator("Round") + head + tail


@dataclass(frozen=True)
class Player:
    owner: Pubkey
    credits: int

    @classmethod
    def decode(cls, data: bytes) -> "Player":
        body = _strip_discriminator(data, "Player", PLAYER_SIZE)
        owner, credits = _PLAYER.unpack_from(body)
        return cls(Pubkey.from_bytes(owner), credits)

    def encode(self) -> bytes:
        return account_discriminator("Player") + _PLAYER.pack(bytes(self.owner), self.credits)


# =========================================================
# Instruction builders
# =========================================================
def _ix(name: str, accounts: List[AccountMeta], args: bytes = b"", program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return Instruction(program_id, instruction_discriminator(name) + args, accounts)


def _w(pk: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pk, is_signer=signer, is_writable=True)


def _r(pk: Pubkey, signer: bool = False) -> AccountMeta:
    return AccountMeta(pubkey=pk, is_signer=signer, is_writable=False)


def init_game_ix(authority: Pubkey, fee_bps: int, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    if not 0 <= fee_bps <= MAX_FEE_BPS:
        raise ValueError(f"fee_bps must be within 0..{MAX_FEE_BPS}")
    return _ix("init_game", [
        _w(game_address(program_id)),
        _w(authority, signer=True),
        _r(SYS_PROGRAM_ID),
    ], struct.pack("<H", fee_bps), program_id)


def register_player_ix(wallet: Pubkey, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return _ix("register_player", [
        _w(player_address(wallet, program_id)),
        _w(wallet, signer=True),
        _r(SYS_PROGRAM_ID),
    ], program_id=program_id)


def place_bet_ix(wallet: Pubkey, round_id: int, direction: Direction, amount: int,
                 program_id: Pubkey = PROGRAM_ID) -> Instruction:
    if amount <= 0:
        raise ValueError("bet amount must be > 0")
    return _ix("place_bet", [
        _w(round_address(round_id, program_id)),
        _r(player_address(wallet, program_id)),
        _r(wallet, signer=True),
    ], struct.pack("<BQ", int(Direction(direction)), amount), program_id)


def start_round_ix(authority: Pubkey, round_id: int, price_update: Pubkey,
                   program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return _ix("start_round", [
        _w(game_address(program_id)),
        _w(round_address(round_id, program_id)),
        _r(price_update),
        _w(authority, signer=True),
        _r(SYS_PROGRAM_ID),
    ], program_id=program_id)


def delegate_round_ix(payer: Pubkey, round_id: int, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    pda = round_address(round_id, program_id)
    buffer, record, metadata = delegation_accounts(pda, program_id)
    return _ix("delegate_round", [
        _w(payer, signer=True),
        _w(buffer),
        _w(record),
        _w(metadata),
        _w(pda),
        _r(program_id),
        _r(DELEGATION_PROGRAM_ID),
        _r(SYS_PROGRAM_ID),
    ], program_id=program_id)


def lock_round_ix(authority: Pubkey, round_id: int, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return _ix("lock_round", [
        _w(round_address(round_id, program_id)),
        _r(game_address(program_id)),
        _r(authority, signer=True),
    ], program_id=program_id)


def commit_round_ix(payer: Pubkey, round_id: int, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return _ix("commit_round", [
        _w(payer, signer=True),
        _w(round_address(round_id, program_id)),
        _w(MAGIC_CONTEXT_ID),
        _r(MAGIC_PROGRAM_ID),
    ], program_id=program_id)


def settle_round_ix(authority: Pubkey, round_id: int, price_update: Pubkey,
                    program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return _ix("settle_round", [
        _w(round_address(round_id, program_id)),
        _r(game_address(program_id)),
        _r(price_update),
        _r(authority, signer=True),
    ], program_id=program_id)


def claim_ix(wallet: Pubkey, round_id: int, program_id: Pubkey = PROGRAM_ID) -> Instruction:
    return _ix("claim", [
        _w(round_address(round_id, program_id)),
        _w(player_address(wallet, program_id)),
        _r(game_address(program_id)),
        _r(wallet, signer=True),
    ], struct.pack("<Q", round_id), program_id)


def decode_result(value: Optional[int]) -> str:
    """Human label for a raw result byte (UNKNOWN for anything unexpected)."""
    try:
        return RoundResult(int(value)).name
    except (TypeError, ValueError):
        return "UNKNOWN"
