"""
Mochimo Block Codec

Decodes the node's fixed-width binary records into immutable records.

Block file layout (little-endian):
    header   hdrlen u32 | miner address (2208) | miner reward u64   (NORMAL only)
             hdrlen u32                                             (ledger style)
    body     N * tx entry (8824)  or  N * ledger entry (2216)
    trailer  phash | bnum | mfee | tcount | time0 | difficulty | mroot
             | nonce | stime | bhash                                (160 bytes)

The trailing block hash is SHA-256 over every byte before it.
"""

import hashlib
import struct
from typing import Iterator, List, Optional, Tuple

from ..types import BlockRecord, BlockType, LedgerEntry, TransactionRecord


class CodecError(ValueError):
    """Raised when a byte buffer cannot be decoded as the requested record."""


class InvalidBlockError(CodecError):
    """Raised when a block fails size, type or hash validation."""

    def __init__(self, message: str, bnum: Optional[int] = None, bhash: Optional[str] = None):
        super().__init__(message)
        self.bnum = bnum
        self.bhash = bhash


# ==================== Record Lengths ====================

ADDR_LEN = 2208
TAG_LEN = 12
HASH_LEN = 32
SIG_LEN = 2144
U64_MAX = 0xffffffffffffffff

HEADER_LEN = 4 + ADDR_LEN + 8          # 2220
LEDGER_HEADER_LEN = 4
TRAILER_LEN = 160
LEDGER_ENTRY_LEN = ADDR_LEN + 8        # 2216
TX_ENTRY_LEN = 3 * ADDR_LEN + 3 * 8 + SIG_LEN + HASH_LEN  # 8824

# len % record == remainder for a well-formed block of each style
LEDGER_REMAINDER = (LEDGER_HEADER_LEN + TRAILER_LEN) % LEDGER_ENTRY_LEN   # 164
TX_REMAINDER = (HEADER_LEN + TRAILER_LEN) % TX_ENTRY_LEN                  # 2380

DEFAULT_TAG = bytes.fromhex("420000000e00000001000000")

# trailer: phash, bnum, mfee, tcount, time0, difficulty, mroot, nonce, stime, bhash
_TRAILER = struct.Struct("<32sQQIII32s32sI32s")
# tx amounts: send, change, fee
_TX_AMOUNTS = struct.Struct("<QQQ")

EPOCH_LENGTH = 256


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


# ==================== Addresses ====================

def address_tag(address: bytes) -> Optional[str]:
    """Hex tag of a full address, or None when untagged."""
    tag = address[-TAG_LEN:]
    if tag == DEFAULT_TAG:
        return None
    return tag.hex()


def address_short(address: bytes) -> str:
    """Stored form of an address: first 32 bytes, hex."""
    return address[:HASH_LEN].hex()


# ==================== Size checks ====================

def is_ledger_size(length: int) -> bool:
    return length % LEDGER_ENTRY_LEN == LEDGER_REMAINDER


def is_transaction_size(length: int) -> bool:
    return length % TX_ENTRY_LEN == TX_REMAINDER


def valid_block_size(length: int) -> bool:
    """True if `length` satisfies either block-style modulus constraint."""
    if length < LEDGER_HEADER_LEN + TRAILER_LEN:
        return False
    return is_ledger_size(length) or is_transaction_size(length)


def verify_hash(data: bytes) -> bool:
    """Recompute the block hash and compare it against the trailing field."""
    if len(data) < TRAILER_LEN:
        return False
    return hashlib.sha256(data[:-HASH_LEN]).digest() == data[-HASH_LEN:]


# ==================== Entries ====================

def decode_transaction(data: bytes, offset: int = 0) -> TransactionRecord:
    """Decode one 8824-byte transaction entry starting at `offset`."""
    record = data[offset:offset + TX_ENTRY_LEN]
    if len(record) != TX_ENTRY_LEN:
        raise CodecError(f"Transaction entry needs {TX_ENTRY_LEN} bytes, got {len(record)}")

    src = record[0:ADDR_LEN]
    dst = record[ADDR_LEN:2 * ADDR_LEN]
    chg = record[2 * ADDR_LEN:3 * ADDR_LEN]
    pos = 3 * ADDR_LEN
    send, change, fee = _TX_AMOUNTS.unpack_from(record, pos)
    pos += _TX_AMOUNTS.size
    sig = record[pos:pos + SIG_LEN]
    txid = record[pos + SIG_LEN:pos + SIG_LEN + HASH_LEN]

    return TransactionRecord(
        txid=txid.hex(),
        txsig_hash=sha256_hex(sig),
        src_addr=address_short(src),
        src_tag=address_tag(src),
        dst_addr=address_short(dst),
        dst_tag=address_tag(dst),
        chg_addr=address_short(chg),
        chg_tag=address_tag(chg),
        send_total=send,
        change_total=change,
        fee=fee,
        content_hash=sha256_hex(record),
    )


def decode_ledger_entry(data: bytes, offset: int = 0) -> LedgerEntry:
    """Decode one 2216-byte ledger entry starting at `offset`."""
    record = data[offset:offset + LEDGER_ENTRY_LEN]
    if len(record) != LEDGER_ENTRY_LEN:
        raise CodecError(f"Ledger entry needs {LEDGER_ENTRY_LEN} bytes, got {len(record)}")
    address = record[:ADDR_LEN]
    balance, = struct.unpack_from("<Q", record, ADDR_LEN)
    return LedgerEntry(
        address=address_short(address),
        address_hash=sha256_hex(address),
        tag=address_tag(address),
        balance=balance,
    )


def iter_transactions(data: bytes) -> Iterator[TransactionRecord]:
    """Decode a buffer made of whole transaction entries (e.g. mempool reads)."""
    if len(data) % TX_ENTRY_LEN:
        raise CodecError(f"Buffer of {len(data)} bytes is not a multiple of {TX_ENTRY_LEN}")
    for offset in range(0, len(data), TX_ENTRY_LEN):
        yield decode_transaction(data, offset)


# ==================== Blocks ====================

def read_trailer(data: bytes) -> Tuple:
    """Unpack the 160-byte trailer of a block buffer."""
    if len(data) < TRAILER_LEN:
        raise CodecError(f"Block of {len(data)} bytes has no trailer")
    return _TRAILER.unpack_from(data, len(data) - TRAILER_LEN)


def peek_trailer(data: bytes) -> Tuple[int, str, str]:
    """(bnum, bhash, phash) from a block trailer, no validation."""
    phash, bnum, _, _, _, _, _, _, _, bhash = read_trailer(data)
    return bnum, bhash.hex(), phash.hex()


def classify(bnum: int, hdrlen: int, body_len: int) -> BlockType:
    if bnum == 0:
        return BlockType.GENESIS
    if bnum & 0xff == 0:
        return BlockType.NEOGENESIS
    if hdrlen == HEADER_LEN:
        return BlockType.NORMAL
    if hdrlen == LEDGER_HEADER_LEN and body_len == 0:
        return BlockType.PSEUDO
    return BlockType.INVALID


def decode_block(data: bytes, verify: bool = True) -> BlockRecord:
    """
    Decode and validate a complete block file.

    Raises:
        InvalidBlockError: size constraint, type or hash check failed
    """
    length = len(data)
    if not valid_block_size(length):
        raise InvalidBlockError(f"Invalid block size {length}")

    phash, bnum, mfee, tcount, time0, difficulty, mroot, nonce, stime, bhash = read_trailer(data)
    bhash_hex = bhash.hex()

    if verify and not verify_hash(data):
        raise InvalidBlockError(f"Block hash mismatch for block {bnum}", bnum, bhash_hex)

    hdrlen, = struct.unpack_from("<I", data, 0)
    if hdrlen not in (HEADER_LEN, LEDGER_HEADER_LEN) or hdrlen + TRAILER_LEN > length:
        raise InvalidBlockError(f"Invalid header length {hdrlen} in block {bnum}", bnum, bhash_hex)

    body = data[hdrlen:length - TRAILER_LEN]
    block_type = classify(bnum, hdrlen, len(body))
    if block_type is BlockType.INVALID:
        raise InvalidBlockError(f"Invalid block type for block {bnum}", bnum, bhash_hex)

    maddr: Optional[str] = None
    mreward = 0
    transactions: List[TransactionRecord] = []
    ledger: List[LedgerEntry] = []

    if block_type.is_ledger:
        if hdrlen != LEDGER_HEADER_LEN or len(body) % LEDGER_ENTRY_LEN:
            raise InvalidBlockError(f"Malformed ledger body in block {bnum}", bnum, bhash_hex)
        ledger = [decode_ledger_entry(body, off) for off in range(0, len(body), LEDGER_ENTRY_LEN)]
        amount = sum(entry.balance for entry in ledger)
        count = len(ledger)
    elif block_type is BlockType.NORMAL:
        if len(body) % TX_ENTRY_LEN:
            raise InvalidBlockError(f"Malformed transaction body in block {bnum}", bnum, bhash_hex)
        maddr = address_short(data[4:4 + ADDR_LEN])
        mreward, = struct.unpack_from("<Q", data, 4 + ADDR_LEN)
        transactions = list(iter_transactions(body))
        amount = sum(tx.send_total for tx in transactions)
        count = len(transactions)
    else:
        amount = 0
        count = 0

    return BlockRecord(
        bnum=bnum,
        bhash=bhash_hex,
        phash=phash.hex(),
        block_type=block_type,
        size=length,
        difficulty=difficulty,
        time0=time0,
        stime=stime,
        mroot=mroot.hex(),
        nonce=nonce.hex(),
        maddr=maddr,
        mreward=mreward,
        mfee=mfee,
        amount=min(amount, U64_MAX),
        count=count,
        transactions=tuple(transactions),
        ledger=tuple(ledger),
    )
