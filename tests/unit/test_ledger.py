"""
Unit tests for ledger projections.

Tests:
- Rich list ranking, ties and zero balances
- Balance deltas against a baseline (new, changed, emptied identities)
- Identity by tag vs. by address hash
- Baseline lookup through archived trailers
"""

import os

import pytest

from mochimap.node_adapter.codec import decode_block
from mochimap.node_adapter.ledger import BaselineNotFound, build_richlist, compute_deltas, find_baseline
from mochimap.types import LedgerEntry

from tests.synthetic import chain, ledger_block, make_address, write_block


def entry(key, balance, tag=None):
    return LedgerEntry(address=key * 2, address_hash=key * 4, tag=tag, balance=balance)


class TestRichList:
    """Test rich list construction."""

    def test_ranked_by_descending_balance(self):
        richlist = build_richlist([entry('a', 5), entry('b', 50), entry('c', 20)], bnum=256)
        assert [(r.rank, r.balance) for r in richlist] == [(1, 50), (2, 20), (3, 5)]
        assert all(r.bnum == 256 for r in richlist)

    def test_zero_balances_excluded(self):
        richlist = build_richlist([entry('a', 0), entry('b', 7)], bnum=0)
        assert [r.id for r in richlist] == ['bbbb']

    def test_ties_ordered_by_identity(self):
        richlist = build_richlist([entry('b', 10), entry('a', 10)], bnum=0)
        assert [r.id for r in richlist] == ['aaaa', 'bbbb']
        assert [r.rank for r in richlist] == [1, 2]

    def test_tagged_entries_keyed_by_tag(self):
        richlist = build_richlist([entry('a', 10, tag='t' * 24)], bnum=0)
        assert richlist[0].id == 't' * 24

    def test_identity_by_hash(self):
        richlist = build_richlist([entry('a', 10, tag='t' * 24)], bnum=0, by_tag=False)
        assert richlist[0].id == 'aaaa'

    def test_repeated_identity_summed(self):
        richlist = build_richlist([entry('a', 10), entry('a', 5)], bnum=0)
        assert len(richlist) == 1
        assert richlist[0].balance == 15


class TestDeltas:
    """Test balance deltas between ledgers."""

    def test_without_baseline_everything_is_new(self):
        deltas = compute_deltas([entry('a', 100), entry('b', 50), entry('c', 0)])
        assert [(d.id, d.delta) for d in deltas] == [('aaaa', 100), ('bbbb', 50)]

    def test_changed_and_unchanged(self):
        deltas = compute_deltas(
            [entry('a', 80), entry('b', 50), entry('c', 20)],
            [entry('a', 100), entry('b', 50)],
        )
        assert {(d.id, d.balance, d.delta) for d in deltas} == {('aaaa', 80, -20), ('cccc', 20, 20)}

    def test_emptied_identity(self):
        """Identity missing from the current ledger reports balance 0."""
        deltas = compute_deltas([entry('a', 100)], [entry('a', 100), entry('b', 30)])
        assert [(d.id, d.balance, d.delta) for d in deltas] == [('bbbb', 0, -30)]

    def test_delta_row(self):
        delta = compute_deltas([entry('a', 1)])[0]
        row = delta.to_row(256, 'ff' * 32, 'when')
        assert row['bnum'] == 256
        assert row['id'] == 'aaaa'
        assert row['delta'] == 1


class TestFindBaseline:
    """Test the archive walk to the previous neogenesis block."""

    @pytest.fixture
    def archive(self, tmp_path):
        """Archive holding genesis and pseudo blocks 1..255, plus neogenesis 256."""
        a, b = make_address("a"), make_address("b")
        genesis = ledger_block(0, [(a, 100), (b, 50)])
        write_block(str(tmp_path), genesis)
        pseudos = chain(1, 255, genesis[-32:])
        for data in pseudos:
            write_block(str(tmp_path), data)
        neogenesis = ledger_block(256, [(a, 80), (b, 70)], phash=pseudos[-1][-32:])
        return str(tmp_path), decode_block(genesis), decode_block(neogenesis), pseudos

    def test_finds_genesis(self, archive):
        directory, genesis, neogenesis, _ = archive
        baseline = find_baseline(directory, neogenesis)
        assert baseline.bhash == genesis.bhash
        assert baseline.ledger == genesis.ledger

    def test_missing_link(self, archive):
        directory, _, neogenesis, pseudos = archive
        removed = decode_block(pseudos[100])
        os.remove(os.path.join(directory, removed.archive_name))
        with pytest.raises(BaselineNotFound, match="Missing"):
            find_baseline(directory, neogenesis)

    def test_invalid_baseline(self, archive):
        directory, genesis, neogenesis, _ = archive
        path = os.path.join(directory, genesis.archive_name)
        with open(path, 'r+b') as f:
            f.seek(10)
            f.write(b"\xff")
        with pytest.raises(BaselineNotFound):
            find_baseline(directory, neogenesis)

    def test_first_epoch_has_no_baseline(self, archive):
        directory, genesis, _, _ = archive
        with pytest.raises(BaselineNotFound):
            find_baseline(directory, genesis)
