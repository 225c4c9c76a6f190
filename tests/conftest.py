"""Pytest configuration and shared fixtures for torbox-rules test suite."""

import os
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

import pytest

from torbox_rules.actions import ActionExecutor
from torbox_rules.models import Condition, Rule, RuleAction, RuleScope
from torbox_rules.notifications import NotificationCenter
from torbox_rules.scheduler import Scheduler
from torbox_rules.snapshot import SnapshotBuilder
from torbox_rules.storage import MemoryRuleStorage
from torbox_rules.store import RuleStore

NOW = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def clean_environment_variables():
    """Clean up environment variables before and after each test."""
    names = ('LOG_LEVEL', 'TRACE_MODE', 'CONFIG_DIR')
    original = {name: os.environ.get(name) for name in names}

    for name in names:
        os.environ.pop(name, None)

    yield

    for name in names:
        os.environ.pop(name, None)
        if original[name] is not None:
            os.environ[name] = original[name]


# ============================================================================
# Fake clock
# ============================================================================

class FakeClock:
    """Deterministic replacement for utc_now"""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, minutes: float = 0):
        self.now = self.now + timedelta(seconds=seconds, minutes=minutes)


@pytest.fixture
def fake_clock():
    return FakeClock()


# ============================================================================
# Mock TorBox API
# ============================================================================

class MockTorBoxAPI:
    """Mock TorBoxAPI client for testing without the real service."""

    def __init__(self):
        self.torrents: List[Dict[str, Any]] = []
        self.usenet: List[Dict[str, Any]] = []
        self.web: List[Dict[str, Any]] = []

        # Raised by the list calls when set
        self.list_error = None
        # (source, id) pairs whose action calls raise
        self.failing_ids = set()

        # Track API calls for verification
        self.calls = {
            'get_torrents': 0,
            'get_usenet': 0,
            'get_web_downloads': 0,
            'control_torrent': [],
            'control_usenet': [],
            'control_web_download': [],
            'delete_item': [],
            'get_download_link': [],
            'get_stream_link': [],
        }

    @property
    def action_call_count(self) -> int:
        return sum(len(v) for v in self.calls.values() if isinstance(v, list))

    def _list(self, name, records):
        self.calls[name] += 1
        if self.list_error is not None:
            raise self.list_error
        return [dict(record) for record in records]

    def _check(self, source, source_id):
        if (source, source_id) in self.failing_ids:
            raise RuntimeError(f"{source} {source_id} rejected")

    def get_torrents(self):
        return self._list('get_torrents', self.torrents)

    def get_usenet(self):
        return self._list('get_usenet', self.usenet)

    def get_web_downloads(self):
        return self._list('get_web_downloads', self.web)

    def control_torrent(self, torrent_id, operation):
        self._check('torrent', torrent_id)
        self.calls['control_torrent'].append((torrent_id, operation))

    def control_usenet(self, usenet_id, operation):
        self._check('usenet', usenet_id)
        self.calls['control_usenet'].append((usenet_id, operation))

    def control_web_download(self, web_id, operation):
        self._check('web', web_id)
        self.calls['control_web_download'].append((web_id, operation))

    def delete_item(self, source, source_id):
        self._check(source, source_id)
        self.calls['delete_item'].append((source, source_id))

    def get_download_link(self, source, source_id, file_id):
        self._check(source, source_id)
        self.calls['get_download_link'].append((source, source_id, file_id))
        return f"https://dl.example/{source}/{source_id}/{file_id}"

    def get_stream_link(self, source, source_id, file_id):
        self._check(source, source_id)
        self.calls['get_stream_link'].append((source, source_id, file_id))
        return f"https://stream.example/{source}/{source_id}/{file_id}"


@pytest.fixture
def mock_api():
    """Create a mock TorBoxAPI instance."""
    return MockTorBoxAPI()


# ============================================================================
# Remote record fixtures
# ============================================================================

@pytest.fixture
def completed_torrent() -> Dict[str, Any]:
    """Finished torrent, seeding."""
    return {
        'id': 101,
        'name': 'Ubuntu.24.04.Desktop.iso',
        'size': 6114656256,
        'progress': 1.0,
        'eta': 0,
        'download_speed': 0,
        'download_state': 'seeding',
        'peers': 12,
        'ratio': 1.4,
        'availability': 1.0,
        'tracker': 'udp://tracker.example.org:1337',
        'created_at': '2026-01-10T08:00:00Z',
        'updated_at': '2026-01-15T11:55:00Z',
        'files': [{'id': 0, 'name': 'ubuntu.iso'}],
    }


@pytest.fixture
def stalled_torrent() -> Dict[str, Any]:
    """Torrent stuck at 40% with no peers."""
    return {
        'id': 102,
        'name': 'Rare.Documentary.1080p',
        'size': 2147483648,
        'progress': 0.4,
        'eta': 86400,
        'download_speed': 0,
        'download_state': 'stalled',
        'peers': 0,
        'ratio': 0.0,
        'availability': 0.2,
        'tracker': None,
        'created_at': '2026-01-14T12:00:00Z',
        'updated_at': '2026-01-15T11:00:00Z',
        'files': [],
    }


@pytest.fixture
def usenet_download() -> Dict[str, Any]:
    """Usenet item still downloading."""
    return {
        'id': 201,
        'name': 'Linux.Weekly.Podcast.Archive',
        'size': 524288000,
        'progress': 0.4,
        'eta': 600,
        'download_speed': 1048576,
        'download_state': 'downloading',
        'created_at': '2026-01-15T10:00:00Z',
        'updated_at': '2026-01-15T11:59:00Z',
        'files': [{'id': 7}],
    }


@pytest.fixture
def web_download() -> Dict[str, Any]:
    """Finished web download using webdownload_id."""
    return {
        'webdownload_id': 301,
        'name': 'dataset.tar.gz',
        'size': 104857600,
        'progress': 1.0,
        'eta': 0,
        'download_speed': 0,
        'download_state': 'completed',
        'created_at': '2025-12-01T00:00:00Z',
        'updated_at': '2025-12-01T01:00:00Z',
        'files': [{'id': 3}],
    }


@pytest.fixture
def populated_api(mock_api, completed_torrent, stalled_torrent, usenet_download, web_download):
    """Mock API holding one of each kind plus a stalled torrent."""
    mock_api.torrents = [completed_torrent, stalled_torrent]
    mock_api.usenet = [usenet_download]
    mock_api.web = [web_download]
    return mock_api


# ============================================================================
# Engine fixtures
# ============================================================================

@pytest.fixture
def memory_storage():
    return MemoryRuleStorage()


@pytest.fixture
def rule_store(memory_storage, fake_clock):
    return RuleStore(memory_storage, clock=fake_clock)


@pytest.fixture
def notifier():
    return NotificationCenter()


@pytest.fixture
def executor(mock_api, notifier):
    return ActionExecutor(mock_api, notifier)


@pytest.fixture
def builder(mock_api, fake_clock):
    return SnapshotBuilder(mock_api, clock=fake_clock)


@pytest.fixture
def scheduler(rule_store, builder, executor, fake_clock):
    return Scheduler(rule_store, builder, executor, clock=fake_clock)


def make_rule(**overrides) -> Rule:
    """Build a rule with sensible defaults for tests"""
    values = {
        'id': 'rule_test_1',
        'name': 'Test rule',
        'action': RuleAction.NOTIFY_USER,
        'enabled': True,
        'check_interval_minutes': 10,
        'conditions': [],
        'scope': RuleScope.ALL,
        'created_at': NOW,
    }
    values.update(overrides)
    return Rule(**values)


def when(field: str, operator: str, value: str) -> Condition:
    return Condition.from_dict({'field': field, 'operator': operator, 'value': value})


@pytest.fixture
def rule_factory():
    """Factory building Rule objects with test defaults."""
    return make_rule


@pytest.fixture
def condition():
    """Factory building a Condition from plain strings."""
    return when
