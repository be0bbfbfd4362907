"""A reusable collection of agents, keyed by scratch dir, interpreter and options."""

import logging
import os
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Mapping

from regtest.agent import Agent
from regtest.config import AgentConfig
from regtest.interpreter import Interpreter

logger = logging.getLogger(__name__)

PoolKey = tuple[str, str, tuple[str, ...]]


def pool_key(scratch_dir: str | Path, interpreter: Interpreter, vm_opts: list[str]) -> PoolKey:
    return (os.path.abspath(scratch_dir), str(interpreter.executable), tuple(vm_opts))


class AgentPool:
    """Idle agents waiting to be reused.

    An agent is either checked out (between ``get_agent`` and ``save``) or
    idle in exactly one deque. The pool does not check that an idle agent is
    still alive; a dead one fails on its next request, and the caller must
    not save it back.
    """

    _instance: "AgentPool | None" = None
    _instance_lock = threading.Lock()

    def __init__(self, config: AgentConfig | None = None,
                 agent_factory: Callable[..., Agent] | None = None):
        self._config = config or AgentConfig()
        self._factory = agent_factory or Agent.new_agent
        self._lock = threading.Lock()
        self._idle: dict[PoolKey, deque[Agent]] = {}
        self._policy_file: str | None = None

    @classmethod
    def instance(cls) -> "AgentPool":
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def set_security_policy(self, policy_file: str | Path | None) -> None:
        """Use *policy_file* for agents created from now on."""
        with self._lock:
            self._policy_file = None if policy_file is None else str(policy_file)

    def get_agent(self, scratch_dir: str | Path, interpreter: Interpreter, vm_opts: list[str],
                  env_vars: Mapping[str, str]) -> Agent:
        """Check out an idle matching agent, or start a new one."""
        key = pool_key(scratch_dir, interpreter, vm_opts)
        with self._lock:
            agents = self._idle.get(key)
            if agents:
                agent = agents.pop()
                if not agents:
                    del self._idle[key]
                logger.debug("Reusing %r for %s", agent, key)
                return agent
            policy_file = self._policy_file
        # starting a process is slow; other callers may use the pool meanwhile
        return self._factory(scratch_dir, interpreter, vm_opts, env_vars,
                             policy_file=policy_file, config=self._config)

    def save(self, agent: Agent) -> None:
        """Return a healthy checked-out agent for reuse."""
        key = pool_key(agent.scratch_dir, agent.interpreter, agent.vm_opts)
        with self._lock:
            agents = self._idle.setdefault(key, deque())
            if any(a is agent for a in agents):
                raise ValueError(f"{agent!r} is already in the pool")
            agents.append(agent)

    def close(self, scratch_dir: str | Path) -> None:
        """Close every idle agent that uses *scratch_dir*."""
        target = os.path.abspath(scratch_dir)
        with self._lock:
            doomed = []
            for key in [k for k in self._idle if k[0] == target]:
                doomed.extend(self._idle.pop(key))
        for agent in doomed:
            agent.close()

    def flush(self) -> None:
        """Close all idle agents."""
        with self._lock:
            doomed = [a for agents in self._idle.values() for a in agents]
            self._idle.clear()
        for agent in doomed:
            agent.close()

    def idle_count(self) -> int:
        with self._lock:
            return sum(len(agents) for agents in self._idle.values())
