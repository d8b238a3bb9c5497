"""Tests for configuration loading."""

import pytest

from durastep.config import DurastepConfig, load_config
from durastep.security import SignatureReceiver
from durastep.transports import InMemoryTransport, get_transport
from durastep.transports.redis import RedisTransport


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
base_url: https://tunnel.example
retries: 5
transport:
  backend: redis
  topic: resumes
  redis:
    host: testhost
    port: 1234
call:
  retries: 2
  timeout: 5
"""
    )
    monkeypatch.setenv("DURASTEP_CONFIG", str(config_path))

    config = load_config()
    assert config.base_url == "https://tunnel.example"
    assert config.retries == 5
    assert config.transport.backend == "redis"
    assert config.transport.topic == "resumes"
    assert config.transport.redis.host == "testhost"
    assert config.transport.redis.port == 1234
    assert config.call.retries == 2
    assert config.call.timeout == 5
    assert config.signing.enabled is False


def test_defaults_without_config_file(tmp_path, monkeypatch):
    monkeypatch.setenv("DURASTEP_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("DURASTEP_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.retries == 3
    assert config.call.retries == 0
    assert config.transport.backend == "inmemory"
    assert config.database_url is None


def test_environment_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("DURASTEP_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DURASTEP_DATABASE_URL", "sqlite:///tmp/wf.db")
    monkeypatch.setenv("DURASTEP_BASE_URL", "https://override.example")
    monkeypatch.setenv("DURASTEP_CURRENT_SIGNING_KEY", "current")
    monkeypatch.setenv("DURASTEP_NEXT_SIGNING_KEY", "next")

    config = load_config()
    assert config.database_url == "sqlite:///tmp/wf.db"
    assert config.base_url == "https://override.example"
    assert config.signing.enabled
    receiver = SignatureReceiver.from_config(config.signing)
    assert receiver.current_key == "current"
    assert receiver.next_key == "next"


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
    monkeypatch.setenv("DURASTEP_CONFIG", str(config_path))
    monkeypatch.delenv("DURASTEP_TRANSPORT", raising=False)

    transport = get_transport()
    assert isinstance(transport, RedisTransport)
    assert transport.host == "confighost"
    assert transport.port == 6380


def test_transport_env_overrides_config(tmp_path, monkeypatch):
    monkeypatch.setenv("DURASTEP_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DURASTEP_TRANSPORT", "inmemory")

    assert isinstance(get_transport(), InMemoryTransport)


def test_transport_factory_passes_poll_interval_and_clock(tmp_path, monkeypatch, clock):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
transport:
  backend: inmemory
  poll_interval: 0.5
"""
    )
    monkeypatch.setenv("DURASTEP_CONFIG", str(config_path))
    monkeypatch.delenv("DURASTEP_TRANSPORT", raising=False)

    transport = get_transport(clock=clock)
    assert transport.poll_interval == 0.5
    assert transport._clock is clock

    redis_transport = get_transport("redis", clock=clock)
    assert redis_transport.poll_interval == 0.5
    assert redis_transport._clock is clock


def test_transport_poll_interval_must_be_positive():
    with pytest.raises(ValueError):
        DurastepConfig(transport={"poll_interval": 0})
