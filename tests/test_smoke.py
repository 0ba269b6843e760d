import os
import pytest
from typer.testing import CliRunner
from mnemos.config import Settings
from mnemos.cli import app

runner = CliRunner()

def test_settings_load():
    """Verify settings can be instantiated with dummy values."""
    os.environ["OPENAI_API_KEY"] = "sk-test-dummy-key"
    try:
        settings = Settings()
        assert settings.OPENAI_API_KEY.get_secret_value() == "sk-test-dummy-key"
        assert settings.OPENAI_EMBEDDING_MODEL == "text-embedding-3-small"
        assert settings.DEDUP_DISTANCE_THRESHOLD == 0.15
        assert settings.BUDGET_TOTAL_TOKENS == 15000
        assert settings.RETRIEVAL_MAX_RESULTS == 15
    finally:
        del os.environ["OPENAI_API_KEY"]

def test_settings_env_override():
    os.environ["BUDGET_MEMORY_TOKENS"] = "1234"
    try:
        assert Settings().BUDGET_MEMORY_TOKENS == 1234
    finally:
        del os.environ["BUDGET_MEMORY_TOKENS"]

from unittest.mock import patch

def test_cli_doctor():
    """Verify the doctor command runs without error."""
    with patch("mnemos.cli.settings") as mock_settings:
        mock_settings.OPENAI_API_KEY.get_secret_value.return_value = "sk-test-dummy-key"
        mock_settings.OPENAI_MODEL_STRUCTURED = "gpt-4o-mini"
        mock_settings.TOKEN_COUNTER = "chars"

        result = runner.invoke(app, ["doctor"])
        assert result.exit_code == 0
        assert "Mnemos Doctor" in result.stdout
        assert "OPENAI_API_KEY:           ✅ Set" in result.stdout

def test_cli_memory_roundtrip():
    """remember, list and stats against the configured database."""
    result = runner.invoke(app, ["memory", "remember", "cli-user", "My favorite color is teal and always has been."])
    assert result.exit_code == 0
    assert "created: memory" in result.stdout
    assert "user_favorite_color" in result.stdout

    result = runner.invoke(app, ["memory", "list", "cli-user"])
    assert result.exit_code == 0
    assert "teal" in result.stdout

    result = runner.invoke(app, ["memory", "stats", "cli-user"])
    assert result.exit_code == 0
    assert "Current:    1" in result.stdout

def test_cli_backfill_without_provider():
    result = runner.invoke(app, ["embeddings", "backfill"])
    assert result.exit_code == 1
    assert "No embedding provider" in result.stdout
