"""
Tests for YAML/env configuration.
"""
import pytest

from platto.config import Config, ConfigError
from platto.remote import RestDataService, SqliteDataService


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("PLATTO_DB", "SUPABASE_URL", "SUPABASE_ANON_KEY"):
        monkeypatch.delenv(name, raising=False)


def write(tmp_path, text):
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return str(path)


def test_defaults():
    """Test defaults resolve without a config file"""
    cfg = Config().resolve()
    assert cfg.backend == "sqlite"
    assert cfg.table == "programs"
    assert cfg.timezone == "Asia/Tokyo"
    assert cfg.confirm_timeout == 10.0
    assert "~" not in cfg.db_path


def test_load_yaml(tmp_path):
    """Test values are read from YAML and unknown keys ignored"""
    path = write(tmp_path, (
        "backend: sqlite\n"
        f"db_path: {tmp_path / 'board.db'}\n"
        "confirm_timeout: 2.5\n"
        "port: 8080\n"
        "unknown_key: ignored\n"
    ))
    cfg = Config.load(path)
    assert cfg.port == 8080
    assert cfg.confirm_timeout == 2.5
    assert cfg.db_path == str(tmp_path / "board.db")


def test_null_confirm_timeout_disables_watchdog(tmp_path):
    """Test confirm_timeout: null turns the reload timer off"""
    cfg = Config.load(write(tmp_path, "confirm_timeout: null\n"))
    assert cfg.confirm_timeout is None


def test_env_overrides_db_path(tmp_path, monkeypatch):
    """Test PLATTO_DB wins over the file"""
    monkeypatch.setenv("PLATTO_DB", str(tmp_path / "env.db"))
    cfg = Config.load(write(tmp_path, "db_path: /somewhere/else.db\n"))
    assert cfg.db_path == str(tmp_path / "env.db")


def test_missing_explicit_path(tmp_path):
    """Test an explicit path that does not exist is an error"""
    with pytest.raises(ConfigError):
        Config.load(str(tmp_path / "nope.yaml"))


def test_invalid_yaml(tmp_path):
    """Test broken YAML raises ConfigError"""
    with pytest.raises(ConfigError):
        Config.load(write(tmp_path, "backend: [sqlite\n"))


def test_non_mapping(tmp_path):
    """Test a YAML list is rejected"""
    with pytest.raises(ConfigError):
        Config.load(write(tmp_path, "- sqlite\n- rest\n"))


class TestValidation:

    def test_unknown_backend(self):
        """Test only sqlite and rest are accepted"""
        with pytest.raises(ConfigError):
            Config(backend="postgres").validate()

    def test_rest_requires_url(self, monkeypatch):
        """Test rest backend without a URL"""
        monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
        with pytest.raises(ConfigError):
            Config(backend="rest").validate()

    def test_rest_requires_key(self):
        """Test rest backend without the key variable"""
        with pytest.raises(ConfigError) as exc:
            Config(backend="rest", supabase_url="https://x.supabase.co").validate()
        assert "SUPABASE_ANON_KEY" in str(exc.value)

    def test_non_positive_confirm_timeout(self):
        """Test a zero timeout is rejected"""
        with pytest.raises(ConfigError):
            Config(confirm_timeout=0).validate()

    def test_unknown_timezone(self):
        """Test an unknown zone name is rejected"""
        with pytest.raises(ConfigError):
            Config(timezone="Mars/Olympus").validate()


class TestBuildService:

    def test_sqlite(self, tmp_path):
        """Test the default backend builds a SQLite service"""
        cfg = Config(db_path=str(tmp_path / "b.db")).resolve()
        assert isinstance(cfg.build_service(), SqliteDataService)

    def test_rest(self, monkeypatch):
        """Test the rest backend picks up URL and key from the environment"""
        monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
        monkeypatch.setenv("SUPABASE_URL", "https://x.supabase.co")
        service = Config(backend="rest").resolve().build_service()
        assert isinstance(service, RestDataService)
        assert service.api_key == "anon"
        assert service.base_url == "https://x.supabase.co"
