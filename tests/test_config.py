"""Tests for regtest.config: load_config, from_dict, defaults."""

import tempfile

from regtest.config import AgentConfig, Config, ExecutionConfig, load_config


# -- Defaults ------------------------------------------------------------------

def test_default_config():
    cfg = Config()
    assert cfg.agent.accept_timeout == 60
    assert cfg.agent.keepalive_interval == 60
    assert cfg.agent.close_timeout == 60
    assert cfg.execution.mode == "agentvm"
    assert cfg.execution.timeout_factor == 1.0
    assert cfg.execution.default_timeout == 120
    assert cfg.execution.timeout_handler == "regtest.timeout_handler.DefaultTimeoutHandler"
    assert cfg.execution.cleanup_rounds == 4
    assert cfg.execution.security_policy is None


def test_read_timeout_is_twice_keepalive():
    assert AgentConfig().read_timeout == 120
    assert AgentConfig(keepalive_interval=5).read_timeout == 10


# -- from_dict -----------------------------------------------------------------

def test_from_dict_full():
    d = {
        "agent": {"accept_timeout": 5, "keepalive_interval": 2, "close_timeout": 3},
        "execution": {"mode": "othervm", "timeout_factor": 2.5, "default_timeout": 30,
                      "timeout_handler": "my.Handler", "timeout_handler_timeout": 10,
                      "cleanup_rounds": 2, "max_cleanup_time": 8, "security_policy": "policy.yaml"},
    }
    cfg = Config.from_dict(d)
    assert cfg.agent.accept_timeout == 5
    assert cfg.agent.read_timeout == 4
    assert cfg.execution.mode == "othervm"
    assert cfg.execution.timeout_factor == 2.5
    assert cfg.execution.security_policy == "policy.yaml"


def test_from_dict_partial():
    """Missing keys should fall back to dataclass defaults."""
    d = {"execution": {"mode": "samevm"}}
    cfg = Config.from_dict(d)
    assert cfg.execution.mode == "samevm"
    assert cfg.execution.timeout_factor == 1.0  # default
    assert cfg.agent.accept_timeout == 60  # default


def test_from_dict_empty():
    cfg = Config.from_dict({})
    assert cfg.execution.mode == "agentvm"
    assert cfg.agent.close_timeout == 60


# -- to_dict / from_dict roundtrip ---------------------------------------------

def test_roundtrip():
    original = Config(
        agent=AgentConfig(accept_timeout=7, keepalive_interval=3),
        execution=ExecutionConfig(mode="othervm", cleanup_rounds=1),
    )
    d = original.to_dict()
    restored = Config.from_dict(d)
    assert restored.agent.accept_timeout == 7
    assert restored.agent.keepalive_interval == 3
    assert restored.execution.mode == "othervm"
    assert restored.execution.cleanup_rounds == 1


# -- load_config ---------------------------------------------------------------

def test_load_config_none():
    cfg = load_config(None)
    assert cfg.execution.mode == "agentvm"


def test_load_config_missing_file():
    cfg = load_config("/nonexistent/path/config.yaml")
    assert cfg.execution.mode == "agentvm"


def test_load_config_valid_yaml():
    content = """\
agent:
  keepalive_interval: 15
execution:
  mode: "samevm"
  timeout_factor: 4
"""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write(content)
        f.flush()
        cfg = load_config(f.name)

    assert cfg.agent.keepalive_interval == 15
    assert cfg.execution.mode == "samevm"
    assert cfg.execution.timeout_factor == 4
    assert cfg.agent.accept_timeout == 60  # default


def test_load_config_empty_yaml():
    """An empty YAML file should return defaults."""
    with tempfile.NamedTemporaryFile(mode="w", suffix=".yaml", delete=False) as f:
        f.write("")
        f.flush()
        cfg = load_config(f.name)

    assert cfg.execution.mode == "agentvm"
