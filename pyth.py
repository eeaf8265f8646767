# pyth.py
"""
TikShot — Pyth Solana receiver codec.

Parses Hermes accumulator updates ("PNAU" + Wormhole VAA + Merkle price
messages) and builds the receiver instructions used by the poster:
  - post_update_atomic : verify a (signature-trimmed) VAA and write a PriceUpdateV2 account
  - reclaim_rent       : close that account back to the payer
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Tuple
import struct

from solders.instruction import Instruction, AccountMeta
from solders.pubkey import Pubkey
from solders.system_program import ID as SYS_PROGRAM_ID

from program import instruction_discriminator

RECEIVER_PROGRAM_ID = Pubkey.from_string("rec5EKMGg6MxZYaMdyBfgwp4d5rB9T1VQH5pJv5LtFJ")
WORMHOLE_PROGRAM_ID = Pubkey.from_string("HDwcJBJXjL9FpJ7UBsYBtaDjsBUhuLCUYoz3zr8SWWaQ")

ACCUMULATOR_MAGIC = b"PNAU"
UPDATE_TYPE_WORMHOLE_MERKLE = 0
VAA_SIGNATURE_SIZE = 66      # guardian index (1) + r,s,v (65)
MERKLE_NODE_SIZE = 20
DEFAULT_SIGNATURES = 5


@dataclass(frozen=True)
class MerklePriceUpdate:
    message: bytes
    proof: Tuple[bytes, ...]


@dataclass(frozen=True)
class AccumulatorUpdate:
    vaa: bytes
    updates: Tuple[MerklePriceUpdate, ...]


class _Reader:
    def __init__(self, data: bytes):
        self.data = data
        self.pos = 0

    def take(self, n: int) -> bytes:
        if self.pos + n > len(self.data):
            raise ValueError("accumulator update truncated")
        out = self.data[self.pos:self.pos + n]
        self.pos += n
        return out

    def u8(self) -> int:
        return self.take(1)[0]

    def u16be(self) -> int:
        return struct.unpack(">H", self.take(2))[0]


def parse_accumulator_update(data: bytes) -> AccumulatorUpdate:
    rd = _Reader(bytes(data))
    if rd.take(4) != ACCUMULATOR_MAGIC:
        raise ValueError("not an accumulator update (bad magic)")
    major, _minor = rd.u8(), rd.u8()
    if major != 1:
        raise ValueError(f"unsupported accumulator major version {major}")
    rd.take(rd.u8())  # trailing header
    if rd.u8() != UPDATE_TYPE_WORMHOLE_MERKLE:
        raise ValueError("unsupported accumulator update type")
    vaa = rd.take(rd.u16be())
    updates: List[MerklePriceUpdate] = []
    for _ in range(rd.u8()):
        message = rd.take(rd.u16be())
        proof = tuple(rd.take(MERKLE_NODE_SIZE) for _ in range(rd.u8()))
        updates.append(MerklePriceUpdate(message, proof))
    return AccumulatorUpdate(vaa, tuple(updates))


def message_feed_id(message: bytes) -> str:
    """Hex feed id of a price-feed message (type byte 0, then the 32-byte id)."""
    if len(message) < 33 or message[0] != 0:
        raise ValueError("not a price feed message")
    return message[1:33].hex()


def vaa_guardian_set_index(vaa: bytes) -> int:
    return struct.unpack(">I", vaa[1:5])[0]


def trim_signatures(vaa: bytes, n: int = DEFAULT_SIGNATURES) -> bytes:
    """Keep the first n guardian signatures so the VAA fits one transaction."""
    num = vaa[5]
    if n >= num:
        return bytes(vaa)
    head = vaa[:5] + bytes([n])
    sigs = vaa[6:6 + n * VAA_SIGNATURE_SIZE]
    body = vaa[6 + num * VAA_SIGNATURE_SIZE:]
    return bytes(head + sigs + body)


# =========================================================
# Receiver accounts
# =========================================================
def guardian_set_address(index: int) -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"GuardianSet", struct.pack(">I", index)], WORMHOLE_PROGRAM_ID)
    return pda


def receiver_config_address() -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"config"], RECEIVER_PROGRAM_ID)
    return pda


def treasury_address(treasury_id: int) -> Pubkey:
    pda, _ = Pubkey.find_program_address([b"treasury", bytes([treasury_id])], RECEIVER_PROGRAM_ID)
    return pda


# =========================================================
# Instructions
# =========================================================
def _borsh_bytes(b: bytes) -> bytes:
    return struct.pack("<I", len(b)) + b


def post_update_atomic_ix(
    payer: Pubkey,
    price_update_account: Pubkey,
    vaa: bytes,
    update: MerklePriceUpdate,
    treasury_id: int = 0,
) -> Instruction:
    args = (
        _borsh_bytes(vaa)
        + _borsh_bytes(update.message)
        + struct.pack("<I", len(update.proof)) + b"".join(update.proof)
        + bytes([treasury_id])
    )
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(guardian_set_address(vaa_guardian_set_index(vaa)), is_signer=False, is_writable=False),
        AccountMeta(receiver_config_address(), is_signer=False, is_writable=False),
        AccountMeta(treasury_address(treasury_id), is_signer=False, is_writable=True),
        AccountMeta(price_update_account, is_signer=True, is_writable=True),
        AccountMeta(SYS_PROGRAM_ID, is_signer=False, is_writable=False),
        AccountMeta(payer, is_signer=True, is_writable=False),  # write authority
    ]
    return Instruction(RECEIVER_PROGRAM_ID, instruction_discriminator("post_update_atomic") + args, accounts)


def reclaim_rent_ix(payer: Pubkey, price_update_account: Pubkey) -> Instruction:
    accounts = [
        AccountMeta(payer, is_signer=True, is_writable=True),
        AccountMeta(price_update_account, is_signer=False, is_writable=True),
    ]
    return Instruction(RECEIVER_PROGRAM_ID, instruction_discriminator("reclaim_rent"), accounts)
