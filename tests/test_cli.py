"""Tests for CLI entrypoint."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from cliengineer.cli import app

runner = CliRunner()

ENV_VARS = (
    "OPENAI_API_KEY",
    "ANTHROPIC_API_KEY",
    "OPENROUTER_API_KEY",
    "GEMINI_API_KEY",
    "CLI_ENGINEER_MAX_ITERATIONS",
    "CLI_ENGINEER_LOG_LEVEL",
    "CLI_ENGINEER_MOCK_MODE",
)


@pytest.fixture
def workdir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    """Run from an empty directory with no provider keys set."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    root = tmp_path / "project"
    root.mkdir()
    monkeypatch.chdir(root)
    return root


class TestCLI:
    """Tests for CLI commands."""

    def test_version(self) -> None:
        """Test --version flag."""
        result = runner.invoke(app, ["--version"])

        assert result.exit_code == 0
        assert "cli-engineer version" in result.stdout

    def test_help(self) -> None:
        """Test --help flag."""
        result = runner.invoke(app, ["--help"])

        assert result.exit_code == 0
        assert "Autonomous coding agent" in result.stdout
        for command in ("code", "refactor", "review", "docs", "security"):
            assert command in result.stdout

    def test_code_help(self) -> None:
        """Test code command help."""
        result = runner.invoke(app, ["code", "--help"])

        assert result.exit_code == 0
        assert "--mock" in result.stdout
        assert "--config" in result.stdout
        assert "--max-iterations" in result.stdout

    def test_code_requires_prompt(self, workdir: Path) -> None:
        """Test that code without a prompt fails."""
        result = runner.invoke(app, ["code", "--mock"])

        assert result.exit_code != 0

    def test_missing_api_key(self, workdir: Path) -> None:
        """Test that the default provider needs its key outside mock mode."""
        result = runner.invoke(app, ["code", "create", "a", "script"])

        assert result.exit_code == 1
        assert "OPENAI_API_KEY" in result.stdout

    def test_code_mock_run(self, workdir: Path) -> None:
        """Test a full mock run writing artifacts and a session log."""
        result = runner.invoke(app, ["code", "--mock", "create a greeting script"])

        assert result.exit_code == 0
        assert "Task completed successfully" in result.stdout
        assert (workdir / "artifacts" / "hello.py").read_text() == 'print("Hello, world!")\n'
        logs = list((workdir / ".cli_engineer" / "logs").glob("*_code.json"))
        assert len(logs) == 1
        assert json.loads(logs[0].read_text())["session"]["outcome"] == "Deployed"

    def test_review_mock_scans_codebase(self, workdir: Path) -> None:
        """Test that review loads the working directory first."""
        (workdir / "main.py").write_text("print('hi')\n")

        result = runner.invoke(app, ["review", "--mock"])

        assert result.exit_code == 0
        cached = list((workdir / ".cli_engineer" / "context_cache").glob("*.json"))
        assert len(cached) == 1
        assert "File: main.py" in cached[0].read_text()

    def test_bad_config_file(self, workdir: Path) -> None:
        """Test that a malformed config file is reported."""
        config_file = workdir / "broken.yaml"
        config_file.write_text("execution: [unclosed\n")

        result = runner.invoke(app, ["code", "--mock", "--config", str(config_file), "make it"])

        assert result.exit_code == 1
        assert "Error" in result.stdout

    def test_metrics_table_disabled(self, workdir: Path) -> None:
        """Test that ui.metrics hides the summary tables."""
        config_file = workdir / "quiet.yaml"
        config_file.write_text("ui:\n  metrics: false\n  colorful: false\n")

        result = runner.invoke(app, ["code", "--mock", "--config", str(config_file), "make it"])

        assert result.exit_code == 0
        assert "Task completed successfully" in result.stdout
        assert "Run Summary" not in result.stdout
