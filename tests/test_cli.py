"""
Tests for the CLI interface.
"""
import os
import shutil
import tempfile
from unittest.mock import patch

import yaml
from typer.testing import CliRunner

from coin_gate.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from coin_gate.core.errors import ProviderUnavailable
from coin_gate.core.orchestrator import build_orchestrator
from coin_gate.core.rate_limiter import TokenBucket

from conftest import FakeProvider

runner = CliRunner()


def _artifact_ids(output):
    """Artifact ids are printed one per indented line."""
    return [line.strip() for line in output.splitlines() if line.startswith("  ") and line.strip()]


class TestCLI:
    """Test CLI commands against a temporary database."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "cli.db")
        self.config_path = os.path.join(self.temp_dir, "coin_gate.yaml")
        with open(self.config_path, "w", encoding="utf-8") as f:
            yaml.dump({
                "provider": {"name": "stability", "api_key_env": "TEST_STABILITY_KEY"},
                "storage": {
                    "db_path": self.db_path,
                    "artifact_dir": os.path.join(self.temp_dir, "artifacts"),
                },
                "retry": {"max_attempts": 2, "base_delay": 0.0, "max_delay": 0.0},
            }, f)
        self.provider = FakeProvider()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def invoke(self, *args):
        return runner.invoke(app, ["--config", self.config_path, *args])

    def fake_orchestrator(self, config):
        return build_orchestrator(config, provider=self.provider, rate_limiter=TokenBucket(5, 10.0))

    def test_no_command_prints_hint(self):
        result = self.invoke()
        assert result.exit_code == EXIT_CODE_PASS
        assert "Use --help" in result.output

    def test_init(self):
        result = self.invoke("init")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_open_account_and_balance(self):
        result = self.invoke("open-account", "alice", "--balance", "25")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Opened alice with 25 coins" in result.output

        result = self.invoke("balance", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "alice: 25 coins" in result.output

    def test_duplicate_account_fails(self):
        self.invoke("open-account", "alice")
        result = self.invoke("open-account", "alice")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "already exists" in result.output

    def test_unknown_account_fails(self):
        result = self.invoke("balance", "ghost")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "not_found" in result.output

    def test_buy_and_earn(self):
        self.invoke("open-account", "alice")

        result = self.invoke("buy", "alice", "50")
        assert result.exit_code == EXIT_CODE_PASS
        assert "Purchased 50 coins; balance is now 50" in result.output

        result = self.invoke("earn", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "balance is now 51" in result.output

        result = self.invoke("history", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "+50" in result.output
        assert "2 entries" in result.output

    def test_generate_download_once(self):
        self.invoke("open-account", "alice", "--balance", "10")

        with patch("coin_gate.cli.main.build_orchestrator", side_effect=self.fake_orchestrator):
            result = self.invoke("generate", "alice", "a lighthouse")

        assert result.exit_code == EXIT_CODE_PASS
        assert "Generated 1 image(s) for 10 coins" in result.output
        assert "Remaining balance: 0" in result.output

        assert self.invoke("artifacts", "alice").exit_code == EXIT_CODE_PASS

        [artifact_id] = _artifact_ids(result.output)
        destination = os.path.join(self.temp_dir, "out.png")
        result = self.invoke("download", artifact_id, "--output", destination)
        assert result.exit_code == EXIT_CODE_PASS
        with open(destination, "rb") as f:
            assert f.read() == b"\x89PNG fake image 0"

        result = self.invoke("download", artifact_id, "--output", destination)
        assert result.exit_code == EXIT_CODE_FAIL
        assert "gone" in result.output
        # A refused repeat leaves the earlier download in place
        with open(destination, "rb") as f:
            assert f.read() == b"\x89PNG fake image 0"

    def test_unwritable_destination_keeps_artifact_available(self):
        self.invoke("open-account", "alice", "--balance", "10")
        with patch("coin_gate.cli.main.build_orchestrator", side_effect=self.fake_orchestrator):
            result = self.invoke("generate", "alice", "a lighthouse")
        [artifact_id] = _artifact_ids(result.output)

        missing_dir = os.path.join(self.temp_dir, "no-such-dir", "out.png")
        result = self.invoke("download", artifact_id, "--output", missing_dir)
        assert result.exit_code == EXIT_CODE_FAIL

        result = self.invoke("download", artifact_id, "--output", self.temp_dir)
        assert result.exit_code == EXIT_CODE_FAIL

        destination = os.path.join(self.temp_dir, "out.png")
        result = self.invoke("download", artifact_id, "--output", destination)
        assert result.exit_code == EXIT_CODE_PASS
        with open(destination, "rb") as f:
            assert f.read() == b"\x89PNG fake image 0"
        assert not [name for name in os.listdir(self.temp_dir) if name.startswith(".download-")]

    def test_verify(self):
        self.invoke("open-account", "alice", "--balance", "10")
        self.invoke("buy", "alice", "5")

        result = self.invoke("verify", "alice")
        assert result.exit_code == EXIT_CODE_PASS
        assert "matches its ledger" in result.output

        result = self.invoke("verify", "ghost")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "not_found" in result.output

    def test_generate_with_insufficient_balance(self):
        self.invoke("open-account", "alice", "--balance", "5")

        with patch("coin_gate.cli.main.build_orchestrator", side_effect=self.fake_orchestrator):
            result = self.invoke("generate", "alice", "a lighthouse")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "insufficient_funds" in result.output
        assert self.provider.calls == []

    def test_retryable_failure_is_flagged(self):
        self.invoke("open-account", "alice", "--balance", "10")
        self.provider.script = [ProviderUnavailable("down")] * 2

        with patch("coin_gate.cli.main.build_orchestrator", side_effect=self.fake_orchestrator):
            result = self.invoke("generate", "alice", "a lighthouse")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "provider_unavailable" in result.output
        assert "safe to retry" in result.output

    def test_invalid_generation_parameters(self):
        self.invoke("open-account", "alice", "--balance", "10")
        result = self.invoke("generate", "alice", "a lighthouse", "--steps", "500")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "steps must be between" in result.output

    def test_discard(self):
        self.invoke("open-account", "alice", "--balance", "10")
        with patch("coin_gate.cli.main.build_orchestrator", side_effect=self.fake_orchestrator):
            result = self.invoke("generate", "alice", "a lighthouse")
        [artifact_id] = _artifact_ids(result.output)

        result = self.invoke("discard", "alice", artifact_id)
        assert result.exit_code == EXIT_CODE_PASS
        assert "No artifacts found." in self.invoke("artifacts", "alice").output

    def test_invalid_config_fails(self):
        with open(self.config_path, "w", encoding="utf-8") as f:
            f.write("unknown_section: {}\n")
        result = self.invoke("balance", "alice")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "Unknown configuration keys" in result.output
