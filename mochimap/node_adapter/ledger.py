"""
Ledger Projections

Derives the two ledger views persisted for every (neo)genesis block:

- RichList: non-zero balances ranked 1..K by descending balance
- LedgerDelta: signed balance change per identity against the ledger of the
  neogenesis block one epoch (256 heights) earlier

The epoch baseline is located by walking previous-hash links backward through
the archive directory, reading only block trailers until the baseline height.
"""

import os
from collections import OrderedDict
from typing import Iterable, List, Optional, Sequence

from ..types import BlockRecord, LedgerDelta, LedgerEntry, RichListEntry, archive_filename
from .codec import EPOCH_LENGTH, TRAILER_LEN, CodecError, decode_block, peek_trailer


class BaselineNotFound(LookupError):
    """The epoch baseline block is missing from the archive or fails validation."""


def _aggregate(ledger: Iterable[LedgerEntry], by_tag: bool) -> "OrderedDict[str, LedgerEntry]":
    """Ledger keyed by identity. Repeated identities have their balances summed."""
    merged: "OrderedDict[str, LedgerEntry]" = OrderedDict()
    for entry in ledger:
        key = entry.identity(by_tag)
        existing = merged.get(key)
        if existing is None:
            merged[key] = entry
        else:
            merged[key] = LedgerEntry(existing.address, existing.address_hash, existing.tag,
                                      existing.balance + entry.balance)
    return merged


def build_richlist(ledger: Sequence[LedgerEntry], bnum: int, by_tag: bool = True) -> List[RichListEntry]:
    """Dense ranking of non-zero balances; ties ordered by identity."""
    entries = [(key, e) for key, e in _aggregate(ledger, by_tag).items() if e.balance > 0]
    entries.sort(key=lambda item: (-item[1].balance, item[0]))
    return [
        RichListEntry(
            rank=rank,
            id=key,
            address=entry.address,
            address_hash=entry.address_hash,
            tag=entry.tag,
            balance=entry.balance,
            bnum=bnum,
        )
        for rank, (key, entry) in enumerate(entries, start=1)
    ]


def compute_deltas(
    current: Sequence[LedgerEntry],
    baseline: Optional[Sequence[LedgerEntry]] = None,
    by_tag: bool = True,
) -> List[LedgerDelta]:
    """
    Non-zero balance changes between two ledgers.

    Without a baseline every entry is new (delta == balance). Identities
    missing from the current ledger are reported as emptied (balance 0).
    """
    now = _aggregate(current, by_tag)
    before = _aggregate(baseline or (), by_tag)
    deltas: List[LedgerDelta] = []

    for key, entry in now.items():
        previous = before.get(key)
        delta = entry.balance - (previous.balance if previous else 0)
        if delta:
            deltas.append(LedgerDelta(key, entry.address, entry.address_hash, entry.tag, entry.balance, delta))

    for key, entry in before.items():
        if key not in now and entry.balance:
            deltas.append(LedgerDelta(key, entry.address, entry.address_hash, entry.tag, 0, -entry.balance))

    return deltas


# ==================== Baseline lookup ====================

def _read_tail(path: str) -> bytes:
    with open(path, 'rb') as f:
        f.seek(0, os.SEEK_END)
        size = f.tell()
        if size < TRAILER_LEN:
            raise BaselineNotFound(f"{path} is too short ({size} bytes)")
        f.seek(size - TRAILER_LEN)
        return f.read(TRAILER_LEN)


def find_baseline(archive_dir: str, block: BlockRecord, epoch: int = EPOCH_LENGTH) -> BlockRecord:
    """
    Locate the neogenesis block `epoch` heights before `block`.

    Follows phash links one height at a time through archived files named
    b<bnum>x<hash prefix>.bc and fully validates the block it lands on.
    Blocking; run in an executor.

    Raises:
        BaselineNotFound: a link is missing, mismatched, or the baseline is invalid
    """
    if block.bnum < epoch:
        raise BaselineNotFound(f"Block {block.bnum} has no epoch baseline")

    target = block.bnum - epoch
    bnum, expected = block.bnum - 1, block.phash

    while True:
        path = os.path.join(archive_dir, archive_filename(bnum, expected))
        try:
            if bnum == target:
                with open(path, 'rb') as f:
                    data = f.read()
                baseline = decode_block(data)
                if baseline.bhash != expected:
                    raise BaselineNotFound(f"{path} hash does not match chain link")
                if not baseline.block_type.is_ledger:
                    raise BaselineNotFound(f"{path} is not a ledger block")
                return baseline

            trailer_bnum, bhash, phash = peek_trailer(_read_tail(path))
        except FileNotFoundError:
            raise BaselineNotFound(f"Missing archived block {os.path.basename(path)}")
        except (OSError, CodecError) as e:
            raise BaselineNotFound(f"Unreadable archived block {os.path.basename(path)}: {e}")

        if trailer_bnum != bnum or bhash != expected:
            raise BaselineNotFound(f"Chain link broken at {os.path.basename(path)}")
        bnum, expected = bnum - 1, phash
