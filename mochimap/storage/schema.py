"""
MochiMap Relational Schema

Table definitions shared by every Store implementation: column whitelist,
primary key (conflict target) and the columns an upsert overwrites.
"""

from dataclasses import dataclass
from typing import Dict, Tuple


@dataclass(frozen=True)
class TableDef:
    name: str
    columns: Tuple[str, ...]
    primary_key: Tuple[str, ...]
    # Columns overwritten by bulk_load on conflict (empty = DO NOTHING)
    upsert: Tuple[str, ...] = ()
    default_order: Tuple[Tuple[str, str], ...] = ()

    def has_column(self, column: str) -> bool:
        return column in self.columns

    def key_of(self, row: Dict) -> Tuple:
        return tuple(row.get(col) for col in self.primary_key)


BLOCK = TableDef(
    name="block",
    columns=(
        'bnum', 'bhash', 'phash', 'type', 'size', 'difficulty', 'created',
        'started', 'mroot', 'nonce', 'maddr', 'mreward', 'mfee', 'amount', 'count',
    ),
    primary_key=('bnum', 'bhash'),
    default_order=(('bnum', 'DESC'),),
)

TRANSACTION = TableDef(
    name="transaction",
    columns=(
        'txid', 'bhash', 'bnum', 'txhash', 'txsig', 'created', 'confirmed',
        'srcaddr', 'srctag', 'dstaddr', 'dsttag', 'chgaddr', 'chgtag',
        'sendtotal', 'changetotal', 'txfee',
    ),
    primary_key=('txid', 'bhash'),
    upsert=('confirmed', 'bnum'),
    default_order=(('created', 'DESC'),),
)

BALANCE = TableDef(
    name="balance",
    columns=('bnum', 'bhash', 'id', 'created', 'address', 'address_hash', 'tag', 'balance', 'delta'),
    primary_key=('bnum', 'bhash', 'id'),
    upsert=('balance', 'delta'),
    default_order=(('bnum', 'DESC'),),
)

RICHLIST = TableDef(
    name="richlist",
    columns=('id', 'rank', 'bnum', 'address', 'address_hash', 'tag', 'balance'),
    primary_key=('id',),
    upsert=('rank', 'bnum', 'address', 'address_hash', 'tag', 'balance'),
    default_order=(('rank', 'ASC'),),
)

TABLES: Dict[str, TableDef] = {t.name: t for t in (BLOCK, TRANSACTION, BALANCE, RICHLIST)}

# Marks an unconfirmed (mempool) transaction row
UNCONFIRMED = ''


def get_table(name: str) -> TableDef:
    try:
        return TABLES[name]
    except KeyError:
        raise ValueError(f"Unknown table: {name}")


DDL = """
CREATE TABLE IF NOT EXISTS block (
    bnum NUMERIC(20, 0) NOT NULL,
    bhash CHAR(64) NOT NULL,
    phash CHAR(64) NOT NULL,
    type VARCHAR(16) NOT NULL,
    size INTEGER NOT NULL,
    difficulty INTEGER NOT NULL,
    created TIMESTAMP NOT NULL,
    started TIMESTAMP NOT NULL,
    mroot CHAR(64) NOT NULL,
    nonce CHAR(64) NOT NULL,
    maddr CHAR(64),
    mreward NUMERIC(20, 0) NOT NULL,
    mfee NUMERIC(20, 0) NOT NULL,
    amount NUMERIC(20, 0) NOT NULL,
    count INTEGER NOT NULL,
    PRIMARY KEY (bnum, bhash)
);

CREATE INDEX IF NOT EXISTS idx_block_created ON block(created);

CREATE TABLE IF NOT EXISTS "transaction" (
    txid CHAR(64) NOT NULL,
    bhash VARCHAR(64) NOT NULL DEFAULT '',
    bnum NUMERIC(20, 0),
    txhash CHAR(64) NOT NULL,
    txsig CHAR(64) NOT NULL,
    created TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
    confirmed TIMESTAMP,
    srcaddr CHAR(64) NOT NULL,
    srctag CHAR(24),
    dstaddr CHAR(64) NOT NULL,
    dsttag CHAR(24),
    chgaddr CHAR(64) NOT NULL,
    chgtag CHAR(24),
    sendtotal NUMERIC(20, 0) NOT NULL,
    changetotal NUMERIC(20, 0) NOT NULL,
    txfee NUMERIC(20, 0) NOT NULL,
    PRIMARY KEY (txid, bhash)
);

CREATE INDEX IF NOT EXISTS idx_transaction_txhash ON "transaction"(txhash);
CREATE INDEX IF NOT EXISTS idx_transaction_bnum ON "transaction"(bnum);
CREATE INDEX IF NOT EXISTS idx_transaction_srctag ON "transaction"(srctag);
CREATE INDEX IF NOT EXISTS idx_transaction_dsttag ON "transaction"(dsttag);

CREATE TABLE IF NOT EXISTS balance (
    bnum NUMERIC(20, 0) NOT NULL,
    bhash CHAR(64) NOT NULL,
    id VARCHAR(64) NOT NULL,
    created TIMESTAMP NOT NULL,
    address CHAR(64) NOT NULL,
    address_hash CHAR(64) NOT NULL,
    tag CHAR(24),
    balance NUMERIC(20, 0) NOT NULL,
    delta NUMERIC(21, 0) NOT NULL,
    PRIMARY KEY (bnum, bhash, id)
);

CREATE INDEX IF NOT EXISTS idx_balance_id ON balance(id);
CREATE INDEX IF NOT EXISTS idx_balance_address ON balance(address);

CREATE TABLE IF NOT EXISTS richlist (
    id VARCHAR(64) PRIMARY KEY,
    rank INTEGER NOT NULL,
    bnum NUMERIC(20, 0) NOT NULL,
    address CHAR(64) NOT NULL,
    address_hash CHAR(64) NOT NULL,
    tag CHAR(24),
    balance NUMERIC(20, 0) NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_richlist_rank ON richlist(rank);
"""
