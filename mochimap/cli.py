"""
MochiMap command line

    mochimap serve [--memory-store] [--mock-network] [--no-api]
    mochimap import <directory>
    mochimap report [--output report.txt]
    mochimap init-db

Every command accepts --env-file, --log-level and --log-file.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import List, Optional

from . import __version__
from .config import ServiceConfig
from .network import MockPeerProtocol, PeerProtocol, load_protocol
from .report import build_report
from .service import MochiMapService, import_archive
from .storage import MemoryStore, PostgresStore, Store

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(level: str, log_file: Optional[str] = None) -> None:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT, handlers=handlers)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='mochimap', description='Mochimo node state ingestion service')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    parser.add_argument('--env-file', default=None, help='.env file to load (default: ./.env)')
    parser.add_argument('--log-level', default=None, help='Override LOG_LEVEL')
    parser.add_argument('--log-file', default=None, help='Also write logs to this file')

    sub = parser.add_subparsers(dest='command', required=True)

    serve = sub.add_parser('serve', help='Run ingestors, peer scanner and query API')
    serve.add_argument('--memory-store', action='store_true', help='Keep data in memory instead of PostgreSQL')
    serve.add_argument('--mock-network', action='store_true', help='Scan a simulated peer network')
    serve.add_argument('--no-api', action='store_true', help='Do not start the HTTP API')

    imp = sub.add_parser('import', help='Replay archived block files into the database')
    imp.add_argument('directory', help='Directory of .bc block files')

    report = sub.add_parser('report', help='Compare the block archive with the database')
    report.add_argument('--archive', default=None, help='Archive directory (default: ARCHIVE_DIR)')
    report.add_argument('--output', default='report.txt', help='Report file')

    sub.add_parser('init-db', help='Create tables and indexes')
    return parser


def _protocol(config: ServiceConfig, mock: bool) -> Optional[PeerProtocol]:
    if mock:
        return MockPeerProtocol()
    if config.scanner.protocol:
        return load_protocol(config.scanner.protocol)
    return None


async def _serve(config: ServiceConfig, args: argparse.Namespace) -> int:
    store: Optional[Store] = MemoryStore() if args.memory_store else None
    service = MochiMapService(
        config,
        store=store,
        protocol=_protocol(config, args.mock_network),
        enable_api=not args.no_api,
    )
    await service.run_forever()
    return 0


async def _import(config: ServiceConfig, args: argparse.Namespace) -> int:
    if not os.path.isdir(args.directory):
        logging.getLogger("ArchiveImport").error(f"{args.directory} is not a directory")
        return 2
    ingestor = await import_archive(config, args.directory)
    return 1 if ingestor.metrics.persist_errors else 0


async def _report(config: ServiceConfig, args: argparse.Namespace) -> int:
    logger = logging.getLogger("IntegrityReport")
    archive = args.archive or config.ingestor.archive_dir
    store = PostgresStore(config.database)
    try:
        report = await build_report(store, archive)
    finally:
        await store.close()
    report.write(args.output)
    logger.info(f"Wrote {len(report.lines())} findings to {args.output}")
    return 0 if report.ok else 1


async def _init_db(config: ServiceConfig, args: argparse.Namespace) -> int:
    store = PostgresStore(config.database)
    try:
        await store.create_schema()
    finally:
        await store.close()
    logging.getLogger("MochiMapService").info(f"Schema ready in database {config.database.name}")
    return 0


COMMANDS = {
    'serve': _serve,
    'import': _import,
    'report': _report,
    'init-db': _init_db,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    config = ServiceConfig.from_env(args.env_file)
    setup_logging(args.log_level or config.log_level, args.log_file)

    try:
        return asyncio.run(COMMANDS[args.command](config, args))
    except KeyboardInterrupt:
        return 130


if __name__ == '__main__':
    sys.exit(main())
