"""Tests for regtest.pool: keyed reuse, close per scratch dir, flush."""

import os
import threading
from pathlib import Path

import pytest

from regtest.interpreter import Interpreter
from regtest.pool import AgentPool, pool_key


class _FakeAgent:
    def __init__(self, scratch_dir, interpreter, vm_opts):
        self.scratch_dir = Path(os.path.abspath(scratch_dir))
        self.interpreter = interpreter
        self.vm_opts = list(vm_opts)
        self.closed = False

    def close(self):
        self.closed = True


class _Factory:
    def __init__(self):
        self.created = []
        self.calls = []

    def __call__(self, scratch_dir, interpreter, vm_opts, env_vars, policy_file=None, config=None):
        self.calls.append({"policy_file": policy_file, "env_vars": env_vars})
        agent = _FakeAgent(scratch_dir, interpreter, vm_opts)
        self.created.append(agent)
        return agent


PY = Interpreter.current()


def _pool():
    factory = _Factory()
    return AgentPool(agent_factory=factory), factory


# -- Reuse ---------------------------------------------------------------------

def test_same_key_returns_same_agent(tmp_path):
    pool, factory = _pool()
    a = pool.get_agent(tmp_path, PY, ["-X", "dev"], {})
    pool.save(a)
    b = pool.get_agent(tmp_path, PY, ["-X", "dev"], {})
    assert b is a
    assert len(factory.created) == 1


def test_checked_out_agent_is_not_shared(tmp_path):
    pool, factory = _pool()
    a = pool.get_agent(tmp_path, PY, [], {})
    b = pool.get_agent(tmp_path, PY, [], {})
    assert a is not b
    assert len(factory.created) == 2


def test_different_vm_opts_build_new_agent(tmp_path):
    pool, factory = _pool()
    a = pool.get_agent(tmp_path, PY, ["-X", "dev"], {})
    pool.save(a)
    b = pool.get_agent(tmp_path, PY, ["-X dev"], {})
    assert b is not a
    assert pool.idle_count() == 1


def test_different_interpreter_builds_new_agent(tmp_path):
    pool, factory = _pool()
    pool.save(pool.get_agent(tmp_path, PY, [], {}))
    b = pool.get_agent(tmp_path, Interpreter("/opt/other/bin/python"), [], {})
    assert len(factory.created) == 2
    assert b.interpreter != PY


def test_relative_and_absolute_scratch_share_key(tmp_path):
    cwd = os.getcwd()
    os.chdir(tmp_path.parent)
    try:
        assert pool_key(tmp_path.name, PY, []) == pool_key(tmp_path, PY, [])
    finally:
        os.chdir(cwd)


def test_save_twice_is_an_error(tmp_path):
    pool, factory = _pool()
    a = pool.get_agent(tmp_path, PY, [], {})
    pool.save(a)
    with pytest.raises(ValueError):
        pool.save(a)


def test_security_policy_applies_to_new_agents(tmp_path):
    pool, factory = _pool()
    pool.get_agent(tmp_path, PY, [], {})
    pool.set_security_policy(tmp_path / "policy.yaml")
    pool.get_agent(tmp_path, PY, [], {"A": "1"})
    assert factory.calls[0]["policy_file"] is None
    assert factory.calls[1]["policy_file"] == str(tmp_path / "policy.yaml")
    assert factory.calls[1]["env_vars"] == {"A": "1"}


# -- close / flush -------------------------------------------------------------

def test_close_scratch_dir(tmp_path):
    pool, factory = _pool()
    d1, d2 = tmp_path / "one", tmp_path / "two"
    a1 = pool.get_agent(d1, PY, [], {})
    a2 = pool.get_agent(d1, PY, ["-O"], {})
    b = pool.get_agent(d2, PY, [], {})
    for agent in (a1, a2, b):
        pool.save(agent)

    pool.close(d1)

    assert a1.closed and a2.closed
    assert not b.closed
    assert pool.idle_count() == 1
    assert pool.get_agent(d2, PY, [], {}) is b
    assert pool.get_agent(d1, PY, [], {}) is not a1


def test_flush(tmp_path):
    pool, factory = _pool()
    agents = [pool.get_agent(tmp_path / str(i), PY, [], {}) for i in range(3)]
    for a in agents:
        pool.save(a)
    pool.flush()
    assert all(a.closed for a in agents)
    assert pool.idle_count() == 0


def test_concurrent_get_and_save(tmp_path):
    pool, factory = _pool()
    errors = []

    def worker():
        try:
            for _ in range(50):
                a = pool.get_agent(tmp_path, PY, [], {})
                pool.save(a)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    assert pool.idle_count() == len(factory.created)
    assert len(factory.created) <= 8


def test_instance_is_singleton():
    assert AgentPool.instance() is AgentPool.instance()
