# tests/conftest.py
"""
Shared fixtures for the Topside Tracker API tests
"""
import os
import tempfile
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# Point logs and the default database at a scratch directory BEFORE importing the app
_scratch = tempfile.mkdtemp(prefix='topside-tests-')
os.environ['LOG_DIR'] = _scratch
os.environ['DB_FILE'] = os.path.join(_scratch, 'default.db')
os.environ['FRONTEND_DIR'] = os.path.join(_scratch, 'frontend')

import TopsideTracker_API
from TopsideTracker_API import create_app, limiter
from report_store import ReportStore


EMBARK_ID = 'Player_1#1234'
REPORTER_ID = '3fa85f64-5717-4562-b3fc-2c963f66afa6'
OTHER_REPORTER_ID = '9b2f6c1e-4d7a-4c3b-8e5f-1a2b3c4d5e6f'


class FakeClock:
    """Controllable UTC clock"""

    def __init__(self, start=None):
        self.current = start or datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture
def log_dir(tmp_path, monkeypatch):
    """Per-test log directory"""
    monkeypatch.setattr(TopsideTracker_API, 'LOG_DIR', str(tmp_path))
    return tmp_path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    """ReportStore on a temporary SQLite file"""
    report_store = ReportStore(str(tmp_path / 'reports.db'), clock=clock)
    report_store.init_db()
    return report_store


@pytest.fixture
def mock_store():
    """Store double with no reports"""
    fake = MagicMock(spec=ReportStore)
    fake.find_recent_reports.return_value = []
    fake.get_report_summary.return_value = []
    fake.get_report_history.return_value = []
    return fake


def _make_app(store, clock, **config):
    settings = {'TESTING': True, 'RATELIMIT_ENABLED': False}
    settings.update(config)
    app = create_app(store=store, clock=clock, config=settings)
    if settings['RATELIMIT_ENABLED']:
        # Limiter storage is shared across apps in the same process
        limiter.reset()
    return app


@pytest.fixture
def app(store, clock, log_dir):
    """Flask app on a real temporary store"""
    return _make_app(store, clock)


@pytest.fixture
def client(app):
    """HTTP test client"""
    return app.test_client()


@pytest.fixture
def mock_client(mock_store, clock, log_dir):
    """HTTP test client backed by the mock store"""
    return _make_app(mock_store, clock).test_client()


@pytest.fixture
def make_app(clock, log_dir):
    """Factory for apps with custom store/config"""
    def factory(store, **config):
        return _make_app(store, clock, **config)
    return factory
