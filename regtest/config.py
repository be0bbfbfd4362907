"""Configuration dataclasses and loader for the regtest execution core."""

from dataclasses import dataclass, field, asdict
from pathlib import Path

import yaml


@dataclass
class AgentConfig:
    """Agent process lifecycle timing, in seconds."""
    accept_timeout: float = 60.0
    keepalive_interval: float = 60.0
    close_timeout: float = 60.0

    @property
    def read_timeout(self) -> float:
        """How long either end waits for any frame before declaring the peer dead."""
        return 2 * self.keepalive_interval


@dataclass
class ExecutionConfig:
    """Action execution settings."""
    mode: str = "agentvm"
    timeout_factor: float = 1.0
    default_timeout: float = 120.0
    timeout_handler: str = "regtest.timeout_handler.DefaultTimeoutHandler"
    timeout_handler_timeout: float = 300.0
    cleanup_rounds: int = 4
    max_cleanup_time: float = 120.0
    security_policy: str | None = None


@dataclass
class Config:
    """Top-level configuration container."""
    agent: AgentConfig = field(default_factory=AgentConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    def to_dict(self) -> dict:
        """Serialize to a plain dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "Config":
        """Deserialize from a plain dict."""
        agent = AgentConfig(**d.get("agent", {}))
        execution = ExecutionConfig(**d.get("execution", {}))
        return cls(agent=agent, execution=execution)


def load_config(path: str | None = None) -> Config:
    """Load configuration from a YAML file.

    Falls back to defaults if *path* is None or the file does not exist.
    """
    if path is None:
        return Config()
    p = Path(path)
    if not p.exists():
        return Config()
    with open(p, "r") as f:
        data = yaml.safe_load(f) or {}
    return Config.from_dict(data)
