import json

import pytest
import toml
import yaml

from zlink_node.config.config_manager import ConfigManager
from zlink_node.core.exceptions import ConfigurationError
from zlink_node.utils.helpers import Backoff, PIDManager, RetryManager


def test_defaults_without_file():
    manager = ConfigManager(None, environ={})
    assert manager.config.poller.interval == 5.0
    assert manager.config.poller.failure_threshold == 3
    assert manager.config.relay.allow_internet is False
    assert manager.config.transactions.allow_custom_fees is False


def test_missing_file_is_created_with_defaults(tmp_path):
    path = tmp_path / "zlink" / "config.yaml"
    ConfigManager(str(path), environ={})
    assert path.exists()
    data = yaml.safe_load(path.read_text())
    assert data["daemon"]["binary"] == "hushd"


def test_yaml_values_override_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"rpc": {"user": "alice", "port": 9999},
                                    "poller": {"interval": 2.5}}))
    manager = ConfigManager(str(path), environ={})
    assert manager.config.rpc.user == "alice"
    assert manager.config.rpc.port == 9999
    assert manager.config.poller.interval == 2.5


def test_json_and_toml_formats(tmp_path):
    json_path = tmp_path / "config.json"
    json_path.write_text(json.dumps({"relay": {"listen_port": 9000}}))
    assert ConfigManager(str(json_path), environ={}).config.relay.listen_port == 9000

    toml_path = tmp_path / "config.toml"
    toml_path.write_text(toml.dumps({"transactions": {"minconf": 3}}))
    assert ConfigManager(str(toml_path), environ={}).config.transactions.minconf == 3


def test_environment_overrides_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"rpc": {"user": "alice"}}))
    manager = ConfigManager(str(path), environ={
        "ZLINK_RPC_USER": "bob",
        "ZLINK_POLLER_FAILURE_THRESHOLD": "5",
        "ZLINK_RELAY_ALLOW_INTERNET": "true",
        "ZLINK_DAEMON_EXTRA_ARGS": "-printtoconsole, -debug=rpc",
        "UNRELATED": "x",
    })
    assert manager.config.rpc.user == "bob"
    assert manager.config.poller.failure_threshold == 5
    assert manager.config.relay.allow_internet is True
    assert manager.config.daemon.extra_args == ["-printtoconsole", "-debug=rpc"]


def test_bad_environment_value_is_configuration_error():
    with pytest.raises(ConfigurationError):
        ConfigManager(None, environ={"ZLINK_POLLER_FAILURE_THRESHOLD": "many"})


def test_unreadable_file_is_configuration_error(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("rpc: [unclosed")
    with pytest.raises(ConfigurationError):
        ConfigManager(str(path), environ={})


def test_dot_notation_get_and_set():
    manager = ConfigManager(None, environ={})
    assert manager.get("rpc.host") == "127.0.0.1"
    assert manager.get("rpc.missing", "fallback") == "fallback"
    assert manager.set("rpc.port", 1234)
    assert manager.config.rpc.port == 1234
    assert not manager.set("nosuch.key", 1)


def test_backoff_is_capped():
    backoff = Backoff(base_delay=1.0, max_delay=5.0)
    assert [backoff.delay(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.asyncio
async def test_retry_manager_retries_then_raises():
    attempts = []
    delays = []

    async def sleep(delay):
        delays.append(delay)

    async def flaky():
        attempts.append(1)
        raise ConnectionError("down")

    retry = RetryManager(max_retries=2, backoff=Backoff(0.5, 10.0),
                         retry_on=(ConnectionError,), sleep=sleep)
    with pytest.raises(ConnectionError):
        await retry.execute(flaky)

    assert len(attempts) == 3
    assert delays == [0.5, 1.0]


@pytest.mark.asyncio
async def test_retry_manager_does_not_retry_other_errors():
    attempts = []

    async def broken():
        attempts.append(1)
        raise ValueError("bad")

    retry = RetryManager(max_retries=5, retry_on=(ConnectionError,))
    with pytest.raises(ValueError):
        await retry.execute(broken)
    assert len(attempts) == 1


def test_pid_file_round_trip(tmp_path):
    pidfile = tmp_path / "run" / "daemon.pid"
    PIDManager.write_pid_file(pidfile, 4242)
    assert PIDManager.read_pid_file(pidfile) == 4242
    assert PIDManager.remove_pid_file(pidfile)
    assert PIDManager.read_pid_file(pidfile) is None
