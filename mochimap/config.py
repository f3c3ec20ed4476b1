"""
MochiMap Configuration

All configurable parameters for the ingestion service, grouped per component.
Values come from the environment (optionally a .env file) with dataclass
defaults as fallback.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

from dotenv import load_dotenv


@dataclass
class DatabaseConfig:
    """PostgreSQL connection settings."""

    host: str = "localhost"
    port: int = 5432
    name: str = "mochimo"
    user: str = "mochimo"
    password: str = ""

    # Connection pool bounds
    pool_min: int = 1
    pool_max: int = 10

    def dsn_kwargs(self) -> dict:
        return {
            'host': self.host,
            'port': self.port,
            'database': self.name,
            'user': self.user,
            'password': self.password,
        }


@dataclass
class WatcherConfig:
    """Timing for FileWatcher."""

    # Retry delay when the target does not exist yet (seconds)
    retry_delay: float = 5.0

    # Delay before re-initialising after the target was renamed away
    rename_delay: float = 1.0

    # Re-stat interval in scan-only mode and when inotify is unavailable
    scan_interval: float = 1.0


@dataclass
class IngestorConfig:
    """Configuration for the block and mempool ingestors."""

    # ========== Node Paths ==========
    block_dir: str = "/home/mochimo-node/mochimo/bin/d/bc"
    txclean_path: str = "/home/mochimo-node/mochimo/bin/d/txclean.dat"

    # ========== Local Storage ==========
    archive_dir: str = "./archive"
    backup_dir: str = "./backup"

    # Block file suffix accepted from the watcher
    block_suffix: str = ".bc"

    # Ledger identity key: "tag" (tag when tagged, else address hash) or "hash"
    ledger_identity: str = "tag"

    @property
    def identity_by_tag(self) -> bool:
        return self.ledger_identity.lower() != "hash"

    @property
    def rejected_dir(self) -> str:
        return os.path.join(self.archive_dir, "rejected")


@dataclass
class ScannerConfig:
    """Configuration for PeerScanner."""

    # Bootstrap peer
    node_ip: str = "127.0.0.1"

    # Cache capacity and TTL (seconds)
    max_ip_num: int = 5000
    max_node_age: float = 3 * 24 * 60 * 60

    # Concurrent scans
    max_scan: int = 128

    # ========== Timing (seconds) ==========
    run_interval: float = 1.0
    rescan_age: float = 30.0
    idle_threshold: float = 30.0
    defer_delay: float = 1.0

    # Consensus
    quorum: int = 3
    consensus_sample: int = 16

    # Optional ipinfo.io token for geolocation
    ipinfo_token: Optional[str] = None

    # Dotted path "module:attribute" of the PeerProtocol implementation
    protocol: Optional[str] = None


@dataclass
class ApiConfig:
    """HTTP query API."""

    host: str = "0.0.0.0"
    port: int = 8080

    # Search limits
    default_limit: int = 10
    max_limit: int = 100

    # SSE
    heartbeat_interval: float = 30.0
    subscriber_queue_size: int = 256
    replay_events: int = 5


@dataclass
class ServiceConfig:
    """Top level configuration for the MochiMap service."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    ingestor: IngestorConfig = field(default_factory=IngestorConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    log_level: str = "INFO"

    # Log metrics every N seconds (0 = no logging)
    log_metrics_interval: float = 60.0

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ServiceConfig":
        """Build configuration from the environment, after loading .env."""
        load_dotenv(env_file)

        database = DatabaseConfig(
            host=os.getenv('DB_HOST', 'localhost'),
            port=int(os.getenv('DB_PORT', '5432')),
            name=os.getenv('DB_NAME', 'mochimo'),
            user=os.getenv('DB_USER', 'mochimo'),
            password=os.getenv('DB_PASSWORD', ''),
            pool_min=int(os.getenv('DB_POOL_MIN', '1')),
            pool_max=int(os.getenv('DB_POOL_MAX', '10')),
        )

        ingestor = IngestorConfig(
            block_dir=os.getenv('BLOCK_DIR', IngestorConfig.block_dir),
            txclean_path=os.getenv('TXCLEAN', IngestorConfig.txclean_path),
            archive_dir=os.getenv('ARCHIVE_DIR', './archive'),
            backup_dir=os.getenv('BACKUP_DIR', './backup'),
            ledger_identity=os.getenv('LEDGER_IDENTITY', 'tag'),
        )

        scanner = ScannerConfig(
            node_ip=os.getenv('NODEIP', '127.0.0.1'),
            max_ip_num=int(os.getenv('MAXIPNUM', '5000')),
            max_node_age=float(os.getenv('MAXNODEAGE', str(3 * 24 * 60 * 60))),
            max_scan=int(os.getenv('MAXSCAN', '128')),
            ipinfo_token=os.getenv('IPINFOTOKEN') or None,
            protocol=os.getenv('PEER_PROTOCOL') or None,
        )

        api = ApiConfig(
            host=os.getenv('API_HOST', '0.0.0.0'),
            port=int(os.getenv('API_PORT', '8080')),
        )

        return cls(
            database=database,
            ingestor=ingestor,
            scanner=scanner,
            api=api,
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
        )
