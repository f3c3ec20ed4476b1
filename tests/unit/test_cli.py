"""
Unit tests for the command line.

Tests:
- Argument parsing for every sub-command
- Protocol selection
- import of a directory into a MemoryStore
"""

import pytest

from mochimap.cli import _protocol, build_parser, main
from mochimap.config import ServiceConfig, WatcherConfig
from mochimap.network import MockPeerProtocol
from mochimap.service import import_archive
from mochimap.storage import MemoryStore

from tests.synthetic import chain, ledger_block, make_address, write_block


class TestParser:
    """Test argument parsing."""

    def test_serve_flags(self):
        args = build_parser().parse_args(['--log-level', 'debug', 'serve', '--memory-store', '--mock-network'])
        assert args.command == 'serve'
        assert args.memory_store and args.mock_network and not args.no_api
        assert args.log_level == 'debug'

    def test_import_requires_directory(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['import'])

    def test_report_defaults(self):
        args = build_parser().parse_args(['report'])
        assert args.output == 'report.txt'
        assert args.archive is None

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_import_missing_directory(self, tmp_path):
        assert main(['--env-file', str(tmp_path / 'none.env'), 'import', str(tmp_path / 'nope')]) == 2


class TestProtocolSelection:
    """Test which PeerProtocol the service gets."""

    def test_mock_network(self):
        assert isinstance(_protocol(ServiceConfig(), mock=True), MockPeerProtocol)

    def test_none_configured(self):
        assert _protocol(ServiceConfig(), mock=False) is None

    def test_dotted_path(self):
        config = ServiceConfig()
        config.scanner.protocol = 'mochimap.network.mock:MockPeerProtocol'
        assert isinstance(_protocol(config, mock=False), MockPeerProtocol)


class TestImport:
    """Test archive replay."""

    @pytest.mark.asyncio
    async def test_import_directory(self, tmp_path):
        source = tmp_path / "source"
        genesis = ledger_block(0, [(make_address("a"), 10)])
        write_block(str(source), genesis)
        for data in chain(1, 3, genesis[-32:]):
            write_block(str(source), data)

        config = ServiceConfig(watcher=WatcherConfig(scan_interval=0.05))
        config.ingestor.archive_dir = str(tmp_path / "archive")
        config.ingestor.backup_dir = str(tmp_path / "backup")
        store = MemoryStore()

        ingestor = await import_archive(config, str(source), store=store)

        assert ingestor.metrics.blocks_processed == 4
        assert sorted(r['bnum'] for r in store.rows('block')) == [0, 1, 2, 3]
        assert len(store.rows('richlist')) == 1
