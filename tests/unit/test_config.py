"""Tests for configuration loading."""

from chainflow.config import load_config
from chainflow.nonce import RedisNonceCache, get_nonce_cache
from chainflow.transports import get_transport
from chainflow.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: testhost
    port: 1234
chains:
  - chain_id: 3
    kind: origin
    rpc_providers: ["http://node-1", "http://node-2"]
    signers:
      granter: "0xaa"
    contracts:
      simpleToken: "0xbb"
  - chain_id: 1409
    kind: aux
worker:
  topics: ["auxWorkflow.#"]
  prefetch_count: 5
"""
    )
    monkeypatch.setenv("CHAINFLOW_CONFIG", str(config_path))

    config = load_config()
    assert config.transport.backend == "redis"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert [c.chain_id for c in config.chains] == [3, 1409]
    assert config.chains[0].signers == {"granter": "0xaa"}
    assert config.chains[1].kind == "aux"
    assert config.worker.topics == ["auxWorkflow.#"]
    assert config.worker.prefetch_count == 5


def test_defaults_without_file(tmp_path, monkeypatch):
    monkeypatch.setenv("CHAINFLOW_CONFIG", str(tmp_path / "missing.yaml"))

    config = load_config()
    assert config.transport.backend == "inmemory"
    assert config.cache.backend == "inmemory"
    assert config.database_url is None
    assert config.worker.topics == ["workflow.#"]
    assert config.log_level == "INFO"


def test_env_overrides_database_and_transport(tmp_path, monkeypatch):
    monkeypatch.setenv("CHAINFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("CHAINFLOW_DATABASE_URL", "sqlite://" + str(tmp_path / "wf.db"))
    monkeypatch.setenv("CHAINFLOW_TRANSPORT", "rabbitmq")

    config = load_config()
    assert config.database_url.endswith("wf.db")
    assert config.transport.backend == "rabbitmq"


def test_get_transport_uses_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: redis
  redis:
    host: confighost
    port: 6380
"""
    )
    monkeypatch.setenv("CHAINFLOW_CONFIG", str(config_path))

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_nonce_cache_backend_from_config(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
cache:
  backend: redis
  redis:
    host: cachehost
"""
    )
    monkeypatch.setenv("CHAINFLOW_CONFIG", str(config_path))

    assert isinstance(get_nonce_cache(load_config().cache), RedisNonceCache)
