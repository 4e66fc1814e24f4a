"""Shared fixtures for sandgate tests."""

import time

import pytest

from sandgate.audit import AuditLogger, MemoryAuditSink
from sandgate.engine import DecisionEngine
from sandgate.models import ToolInvocationRequest
from sandgate.policy import load


class StubFileSystem:
    """In-memory filesystem for the symlink and size checks.

    symlinks: path -> resolved target
    files: path -> size in bytes
    delay: seconds every call sleeps (to exercise timeouts)
    error: OSError raised by every call, if set
    """

    def __init__(self, symlinks=None, files=None, delay=0.0, error=None):
        self.symlinks = dict(symlinks or {})
        self.files = dict(files or {})
        self.delay = delay
        self.error = error
        self.calls = 0

    def _touch(self):
        self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error

    def is_symlink(self, path):
        self._touch()
        return path in self.symlinks

    def resolve(self, path):
        self._touch()
        return self.symlinks.get(path, path)

    def is_file(self, path):
        self._touch()
        return path in self.files

    def size(self, path):
        self._touch()
        return self.files[path]


@pytest.fixture
def stub_fs():
    """Factory for StubFileSystem objects."""
    def _create(**kwargs):
        return StubFileSystem(**kwargs)
    return _create


@pytest.fixture
def make_request():
    """Factory for ToolInvocationRequest objects."""
    def _create(tool="Bash", session_id="session-1", cwd="", **parameters):
        return ToolInvocationRequest.build(
            tool,
            parameters,
            timestamp="2026-10-19T12:00:00Z",
            session_id=session_id,
            cwd=cwd,
        )
    return _create


@pytest.fixture
def make_engine(stub_fs):
    """Factory for DecisionEngine objects over a policy document and a stub filesystem."""
    def _create(document=None, fs=None):
        policy = load(document or {})
        return DecisionEngine(policy, fs=fs if fs is not None else stub_fs())
    return _create


@pytest.fixture
def memory_audit():
    """AuditLogger writing to in-memory sinks."""
    return AuditLogger(MemoryAuditSink(), MemoryAuditSink())
