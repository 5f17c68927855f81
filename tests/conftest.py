"""
Pytest fixtures for ouroboros tests.
"""

import os
import tempfile
from pathlib import Path

import pytest

from fakes import RecordingExecutor, make_registry
from ouroboros.core.credentials import CredentialResolver
from ouroboros.core.session import ConversationSession
from ouroboros.personas import default_catalog


@pytest.fixture(autouse=True)
def _clean_env():
    """Prevent environment variable pollution between tests.

    ConfigManager.load_into_environment() and the credential tests write
    provider keys into os.environ; without this fixture they would leak into
    tests that expect a missing credential.
    """
    original_env = os.environ.copy()
    yield
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def registry():
    """Registry of fake openai / anthropic connectors."""
    return make_registry()


@pytest.fixture
def credentials():
    """Resolver with keys for both fake providers."""
    os.environ["OPENAI_API_KEY"] = "sk-test"
    os.environ["ANTHROPIC_API_KEY"] = "sk-ant-test"
    return CredentialResolver()


@pytest.fixture
def session(registry, credentials):
    """An openai session backed by a FakeHandle."""
    return ConversationSession(registry, credentials, "openai", system_instruction="You are a test assistant.")


@pytest.fixture
def handle(session):
    """The FakeHandle behind the session fixture."""
    return session.handle


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def catalog():
    return default_catalog()
