"""Shared test fixtures for playbook-memory."""

import sys
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from cli.config_models import AppConfig  # noqa: E402

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def app_config(tmp_path):
    """Config with every path under tmp_path and fast lock timings."""
    return AppConfig.from_dict(
        {
            "paths": {
                "playbook": str(tmp_path / "home" / "playbook.yaml"),
                "repo_dir": str(tmp_path / "repo" / ".playbook"),
                "sessions_dir": str(tmp_path / "sessions"),
                "reflections_dir": str(tmp_path / "home" / "reflections"),
                "log_file": str(tmp_path / "home" / "playbook.log"),
            },
            "lock": {"retries": 5, "retry_delay": 0.01, "stale_threshold": 5.0},
            "reflection": {"validation_enabled": False},
        }
    )


@pytest.fixture
def mock_anthropic(monkeypatch):
    """Mock Claude API responses."""
    mock_client = MagicMock()
    mock_response = MagicMock()
    mock_response.content = [MagicMock(type="text", text='{"deltas": []}')]
    mock_client.messages.create.return_value = mock_response

    monkeypatch.setattr("anthropic.Anthropic", lambda **kwargs: mock_client)
    return mock_client
