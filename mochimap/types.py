"""
Mochimo Data Types

Pure data structures for blocks, transactions, ledger projections and peers.
Decoded records are immutable; PeerNode is the only mutable type and it is
owned by the peer scanner's cache.
"""

from dataclasses import dataclass, asdict
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Tuple


class BlockType(Enum):
    """Block classification derived from height and header length."""
    GENESIS = "genesis"
    NEOGENESIS = "neogenesis"
    NORMAL = "normal"
    PSEUDO = "pseudo"
    INVALID = "invalid"

    @property
    def is_ledger(self) -> bool:
        """Ledger-style blocks embed a full ledger snapshot."""
        return self in (BlockType.GENESIS, BlockType.NEOGENESIS)


@dataclass(frozen=True)
class TransactionRecord:
    """
    Single transaction entry, as found in a block body or the mempool file.

    Addresses are the first 32 bytes of the full address, hex encoded.
    Tags are None for untagged addresses.
    """
    txid: str
    txsig_hash: str
    src_addr: str
    src_tag: Optional[str]
    dst_addr: str
    dst_tag: Optional[str]
    chg_addr: str
    chg_tag: Optional[str]
    send_total: int
    change_total: int
    fee: int
    content_hash: str

    def to_row(self) -> Dict[str, Any]:
        return {
            'txid': self.txid,
            'txhash': self.content_hash,
            'txsig': self.txsig_hash,
            'srcaddr': self.src_addr,
            'srctag': self.src_tag,
            'dstaddr': self.dst_addr,
            'dsttag': self.dst_tag,
            'chgaddr': self.chg_addr,
            'chgtag': self.chg_tag,
            'sendtotal': self.send_total,
            'changetotal': self.change_total,
            'txfee': self.fee,
        }


@dataclass(frozen=True)
class LedgerEntry:
    """Ledger snapshot entry embedded in (neo)genesis blocks."""
    address: str
    address_hash: str
    tag: Optional[str]
    balance: int

    def identity(self, by_tag: bool = True) -> str:
        """Identity key: tag when tagged (and enabled), else address hash."""
        if by_tag and self.tag:
            return self.tag
        return self.address_hash


@dataclass(frozen=True)
class BlockRecord:
    """
    Decoded block file.

    Exactly one of `transactions` / `ledger` is populated, depending on type.
    """
    bnum: int
    bhash: str
    phash: str
    block_type: BlockType
    size: int
    difficulty: int
    time0: int
    stime: int
    mroot: str
    nonce: str
    maddr: Optional[str]
    mreward: int
    mfee: int
    amount: int
    count: int
    transactions: Tuple[TransactionRecord, ...] = ()
    ledger: Tuple[LedgerEntry, ...] = ()

    @property
    def created(self) -> datetime:
        return datetime.utcfromtimestamp(self.stime)

    @property
    def started(self) -> datetime:
        return datetime.utcfromtimestamp(self.time0)

    @property
    def archive_name(self) -> str:
        return archive_filename(self.bnum, self.bhash)

    def to_row(self) -> Dict[str, Any]:
        """Row for the `block` table."""
        return {
            'bnum': self.bnum,
            'bhash': self.bhash,
            'phash': self.phash,
            'type': self.block_type.value,
            'size': self.size,
            'difficulty': self.difficulty,
            'created': self.created,
            'started': self.started,
            'mroot': self.mroot,
            'nonce': self.nonce,
            'maddr': self.maddr,
            'mreward': self.mreward,
            'mfee': self.mfee,
            'amount': self.amount,
            'count': self.count,
        }


def archive_filename(bnum: int, bhash: str) -> str:
    """Canonical archive name: b<16-hex bnum>x<8-hex hash prefix>.bc"""
    return f"b{bnum & 0xffffffffffffffff:016x}x{bhash[:8]}.bc"


@dataclass(frozen=True)
class RichListEntry:
    rank: int
    id: str
    address: str
    address_hash: str
    tag: Optional[str]
    balance: int
    bnum: int

    def to_row(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class LedgerDelta:
    """Signed balance change of one identity between two neogenesis ledgers."""
    id: str
    address: str
    address_hash: str
    tag: Optional[str]
    balance: int
    delta: int

    def to_row(self, bnum: int, bhash: str, created: datetime) -> Dict[str, Any]:
        row = asdict(self)
        row.update({'bnum': bnum, 'bhash': bhash, 'created': created})
        return row


class PeerStatus(Enum):
    """Peer status as reported by the peer protocol."""
    OK = "ok"
    TIMEOUT = "timeout"
    BAD = "bad"
    UNREACHABLE = "unreachable"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "PeerStatus":
        if isinstance(value, PeerStatus):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


@dataclass
class PeerNode:
    """
    Cached state of one network peer.

    Only the fields declared here are ever updated from protocol responses;
    anything else a response carries is dropped by merge().
    """
    ip: str
    status: PeerStatus = PeerStatus.UNKNOWN
    chain_height: int = 0
    chain_hash: str = ""
    chain_weight: str = ""
    peers: Tuple[str, ...] = ()
    timestamp: float = 0.0
    uptimestamp: float = 0.0
    geo: Optional[Dict[str, str]] = None

    MERGE_FIELDS = ('status', 'chain_height', 'chain_hash', 'chain_weight', 'peers')

    @property
    def healthy(self) -> bool:
        return self.status is PeerStatus.OK

    @property
    def uptime(self) -> float:
        """Seconds of continuous healthy contact."""
        return self.timestamp - self.uptimestamp if self.uptimestamp else 0.0

    @property
    def weight_value(self) -> int:
        return weight_value(self.chain_weight)

    def merge(self, report: Mapping[str, Any]) -> None:
        """Field-level overwrite from a protocol response."""
        for name in self.MERGE_FIELDS:
            if name not in report:
                continue
            value = report[name]
            if name == 'status':
                value = PeerStatus.parse(value)
            elif name == 'chain_height':
                value = int(value or 0)
            elif name in ('chain_hash', 'chain_weight'):
                value = str(value or "")
            elif name == 'peers':
                value = tuple(dict.fromkeys(str(ip) for ip in (value or ())))
            setattr(self, name, value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ip': self.ip,
            'status': self.status.value,
            'chain_height': self.chain_height,
            'chain_hash': self.chain_hash,
            'chain_weight': self.chain_weight,
            'peers': list(self.peers),
            'timestamp': self.timestamp,
            'uptimestamp': self.uptimestamp,
            'geo': dict(self.geo) if self.geo else None,
        }


def weight_value(weight: Optional[str]) -> int:
    """Numeric value of a hex chain weight ("0x0a", "0a", "" -> 0)."""
    if not weight:
        return 0
    try:
        return int(weight, 16)
    except ValueError:
        return 0


def diff_dict(old: Mapping[str, Any], new: Mapping[str, Any]) -> Dict[str, Any]:
    """Keys of `new` whose values differ from `old`."""
    return {k: v for k, v in new.items() if old.get(k) != v}
