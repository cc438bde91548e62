"""Shared pytest fixtures for the study tracker test suite."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the project root is on the path so the top-level modules resolve.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))
TESTS_DIR = Path(__file__).resolve().parent
if str(TESTS_DIR) not in sys.path:
    sys.path.insert(0, str(TESTS_DIR))

from auth_rest import Identity  # noqa: E402
from config import Settings  # noqa: E402
from fakes import FakeAuth, MemorySubjectStore  # noqa: E402
from tracker import StudyDashboard  # noqa: E402


@pytest.fixture
def settings():
    return Settings(
        supabase_url="https://demo.supabase.co",
        supabase_key="anon-key",
        poll_interval=0.01,
        http_timeout=5,
    )


@pytest.fixture
def identity():
    return Identity(
        id="user-1",
        email="ada@example.com",
        display_name="Ada",
        access_token="access-1",
        refresh_token="refresh-1",
    )


@pytest.fixture
def store():
    return MemorySubjectStore()


@pytest.fixture
def fake_auth():
    return FakeAuth()


@pytest.fixture
def dashboard(identity, store):
    """A started dashboard that has already applied the feed's first push."""
    dash = StudyDashboard(identity, store)
    dash.start()
    dash.process_events()
    yield dash
    dash.close()
