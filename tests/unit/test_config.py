"""Tests for configuration loading."""

from wisely.config import load_config
from wisely.persistence import SQLiteStore
from wisely.services import build_services


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
log_level: DEBUG
rate_limit:
  capacity: 20
  refill_rate: 2.5
tools:
  base_url: http://gateway:9000
  rate_limits:
    clo: 10
worker:
  batch_size: 3
  concurrency: 4
"""
    )
    monkeypatch.setenv("WISELY_CONFIG", str(config_path))
    monkeypatch.delenv("WISELY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("WISELY_TOOLS_BASE_URL", raising=False)

    config = load_config()
    assert config.log_level == "DEBUG"
    assert config.rate_limit.capacity == 20
    assert config.rate_limit.refill_rate == 2.5
    assert config.tools.base_url == "http://gateway:9000"
    assert config.tools.rate_limits == {"clo": 10}
    assert config.worker.batch_size == 3
    assert config.worker.lease_seconds == 30
    assert config.database_url is None


def test_env_overrides_file(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text("database_url: sqlite:///ignored.db\n")
    monkeypatch.setenv("WISELY_DATABASE_URL", f"sqlite://{tmp_path / 'env.db'}")
    monkeypatch.setenv("WISELY_TOOLS_BASE_URL", "http://override")
    monkeypatch.setenv("WISELY_SERVICE_TOKEN", "secret")
    monkeypatch.setenv("WISELY_WORKFLOWS_DIR", str(tmp_path))

    config = load_config(str(config_path))
    assert config.database_url == f"sqlite://{tmp_path / 'env.db'}"
    assert config.tools.base_url == "http://override"
    assert config.tools.service_token == "secret"
    assert config.workflows.directory == str(tmp_path)


def test_missing_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.delenv("WISELY_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    config = load_config(str(tmp_path / "absent.yaml"))
    assert config.rate_limit.capacity == 100
    assert config.rate_limit.refill_rate == 10.0
    assert config.worker.batch_size == 10


def test_build_services_uses_configured_store(tmp_path, monkeypatch):
    monkeypatch.setenv("WISELY_DATABASE_URL", f"sqlite://{tmp_path / 'svc.db'}")
    config = load_config(str(tmp_path / "absent.yaml"))

    services = build_services(config)

    assert isinstance(services.store, SQLiteStore)
    assert services.registry.rate_limit_for("clo").capacity == 4
    assert len(services.worker_pool(3).workers) == 3
