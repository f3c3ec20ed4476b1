"""
Unit tests for configuration loading.

Tests:
- Dataclass defaults
- Environment overrides (including a .env file)
- Derived ingestor settings
"""

import os

from mochimap.config import IngestorConfig, ServiceConfig

ENV_KEYS = ('DB_HOST', 'DB_PORT', 'DB_NAME', 'NODEIP', 'MAXIPNUM', 'MAXNODEAGE', 'MAXSCAN',
            'IPINFOTOKEN', 'ARCHIVE_DIR', 'BACKUP_DIR', 'LEDGER_IDENTITY', 'LOG_LEVEL', 'API_PORT',
            'PEER_PROTOCOL')


def clear_env(monkeypatch):
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


class TestDefaults:
    """Test values without any environment."""

    def test_defaults(self, monkeypatch, tmp_path):
        clear_env(monkeypatch)
        config = ServiceConfig.from_env(str(tmp_path / "missing.env"))
        assert config.database.port == 5432
        assert config.scanner.node_ip == "127.0.0.1"
        assert config.scanner.max_ip_num == 5000
        assert config.scanner.max_node_age == 3 * 24 * 60 * 60
        assert config.scanner.max_scan == 128
        assert config.scanner.ipinfo_token is None
        assert config.ingestor.identity_by_tag
        assert config.log_level == "INFO"


class TestEnvironment:
    """Test environment overrides."""

    def test_env_overrides(self, monkeypatch, tmp_path):
        clear_env(monkeypatch)
        monkeypatch.setenv('NODEIP', '45.1.2.3')
        monkeypatch.setenv('MAXSCAN', '16')
        monkeypatch.setenv('IPINFOTOKEN', 'tok')
        monkeypatch.setenv('LEDGER_IDENTITY', 'hash')
        monkeypatch.setenv('LOG_LEVEL', 'debug')

        config = ServiceConfig.from_env(str(tmp_path / "missing.env"))

        assert config.scanner.node_ip == '45.1.2.3'
        assert config.scanner.max_scan == 16
        assert config.scanner.ipinfo_token == 'tok'
        assert not config.ingestor.identity_by_tag
        assert config.log_level == 'DEBUG'

    def test_env_file(self, monkeypatch, tmp_path):
        clear_env(monkeypatch)
        env_file = tmp_path / ".env"
        env_file.write_text("DB_HOST=db.internal\nAPI_PORT=9000\nARCHIVE_DIR=/data/archive\n")

        config = ServiceConfig.from_env(str(env_file))

        assert config.database.host == 'db.internal'
        assert config.api.port == 9000
        assert config.ingestor.archive_dir == '/data/archive'
        # load_dotenv exported them to the process environment
        for key in ('DB_HOST', 'API_PORT', 'ARCHIVE_DIR'):
            os.environ.pop(key, None)

    def test_rejected_dir_under_archive(self):
        config = IngestorConfig(archive_dir='/a')
        assert config.rejected_dir == '/a/rejected'
