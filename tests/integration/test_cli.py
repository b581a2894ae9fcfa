"""
CLI tests - scripted rounds, key files and audit replay through click.
"""

import json

import pytest
from click.testing import CliRunner

from fairalloc.cli.main import cli, decrypt_key_file


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    return CliRunner()


@pytest.fixture
def round_file(tmp_path):
    definition = {
        "tier_id": 3,
        "strategy": "lottery",
        "total_allocations": 2,
        "finalization_sequence": 100,
        "reveal_start_sequence": 50,
        "reveal_end_sequence": 80,
        "minimum_lock_period": 2,
        "entries": [
            {"participant_id": "alice", "registered_at_sequence": 10},
            {"participant_id": "bob", "registered_at_sequence": 20},
            {"participant_id": "carol", "registered_at_sequence": 30,
             "seed": "0x" + "11" * 32, "nonce": "22" * 16},
            {"participant_id": "dave", "registered_at_sequence": 40,
             "seed": "33" * 32, "nonce": "44" * 16, "reveal": False},
            {"participant_id": "erin", "registered_at_sequence": 120},
        ],
    }
    path = tmp_path / "round.json"
    path.write_text(json.dumps(definition))
    return path


def invoke(runner, tmp_path, *args):
    return runner.invoke(cli, ["--data-dir", str(tmp_path / "data"), *args])


class TestKeys:
    """Tests for organizer key files."""

    def test_create(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "keys", "create", "--name", "org", "--password", "pw")
        assert result.exit_code == 0, result.output
        assert "Organizer key created: org" in result.output

        key_data = json.loads((tmp_path / "data" / "keys" / "org.json").read_text())
        assert decrypt_key_file(key_data, "org", "pw") is not None
        assert decrypt_key_file(key_data, "org", "wrong") is None

    def test_no_overwrite(self, runner, tmp_path):
        invoke(runner, tmp_path, "keys", "create", "--name", "org", "--password", "pw")
        result = invoke(runner, tmp_path, "keys", "create", "--name", "org", "--password", "pw")
        assert result.exit_code != 0
        assert "already exists" in result.output


class TestCommit:
    """Tests for the commitment helper."""

    def test_fixed_inputs(self, runner, tmp_path):
        from fairalloc.core.commit_reveal import compute_commitment

        result = invoke(runner, tmp_path, "commit", "--seed", "aa", "--nonce", "bb")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output[result.output.index("{"):])
        assert data["commitment"] == compute_commitment(b"\xaa", b"\xbb").hex()

    def test_bad_hex(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "commit", "--seed", "zz")
        assert result.exit_code != 0


class TestRoundSimulate:
    """Tests for scripted rounds and audit replay."""

    def test_simulate_and_verify(self, runner, tmp_path, round_file):
        audit_path = tmp_path / "audit.json"
        result = invoke(runner, tmp_path, "round", "simulate", str(round_file), "--out", str(audit_path))
        assert result.exit_code == 0, result.output
        assert "2 winners" in result.output
        assert "erin rejected" in result.output
        assert "dave" not in [line.split()[1] for line in result.output.splitlines() if line.strip().startswith("#")]

        record = json.loads(audit_path.read_text())
        eligible = {e["participant_id"] for e in record["eligible_entries"]}
        assert eligible == {"alice", "bob", "carol"}
        assert [r["participant_id"] for r in record["reveals"]] == ["carol"]

        result = invoke(runner, tmp_path, "audit", "verify", str(audit_path))
        assert result.exit_code == 0, result.output
        assert "Tier 3 verified" in result.output

    def test_tampered_audit_fails(self, runner, tmp_path, round_file):
        audit_path = tmp_path / "audit.json"
        invoke(runner, tmp_path, "round", "simulate", str(round_file), "--out", str(audit_path))

        record = json.loads(audit_path.read_text())
        record["entropy"] = "00" * 32
        audit_path.write_text(json.dumps(record))

        result = invoke(runner, tmp_path, "audit", "verify", str(audit_path))
        assert result.exit_code == 1
        assert "Audit failed" in result.output

    def test_with_stored_key_and_persistence(self, runner, tmp_path, round_file):
        invoke(runner, tmp_path, "keys", "create", "--name", "org", "--password", "pw")
        result = invoke(runner, tmp_path, "round", "simulate", str(round_file),
                        "--key", "org", "--password", "pw", "--persist")
        assert result.exit_code == 0, result.output

        exported = tmp_path / "exported.json"
        result = invoke(runner, tmp_path, "audit", "export", "3", "--out", str(exported))
        assert result.exit_code == 0, result.output

        result = invoke(runner, tmp_path, "audit", "verify", str(exported))
        assert result.exit_code == 0, result.output

    def test_wrong_password(self, runner, tmp_path, round_file):
        invoke(runner, tmp_path, "keys", "create", "--name", "org", "--password", "pw")
        result = invoke(runner, tmp_path, "round", "simulate", str(round_file),
                        "--key", "org", "--password", "nope")
        assert result.exit_code != 0
        assert "Wrong password" in result.output

    def test_invalid_round_file(self, runner, tmp_path):
        bad = tmp_path / "bad.json"
        bad.write_text(json.dumps({"tier_id": 1, "strategy": "auction"}))
        result = invoke(runner, tmp_path, "round", "simulate", str(bad))
        assert result.exit_code != 0
        assert "Invalid round file" in result.output

    def test_export_missing_tier(self, runner, tmp_path):
        result = invoke(runner, tmp_path, "audit", "export", "9")
        assert result.exit_code != 0
        assert "No stored audit" in result.output


class TestLogging:
    """Tests for the log directory wiring."""

    def test_log_file(self, runner, tmp_path, round_file):
        result = invoke(runner, tmp_path, "--log-file", "round", "simulate", str(round_file))
        assert result.exit_code == 0, result.output

        log_file = tmp_path / "logs" / "fairalloc.log"
        assert log_file.is_file()
        assert "Tier 3 allocated" in log_file.read_text()

    def test_no_log_dir_by_default(self, runner, tmp_path, round_file):
        result = invoke(runner, tmp_path, "round", "simulate", str(round_file))
        assert result.exit_code == 0, result.output
        assert (tmp_path / "data").is_dir()
        assert not (tmp_path / "logs").exists()

    def test_log_dir_from_environment(self, runner, tmp_path, round_file, monkeypatch):
        monkeypatch.setenv("FAIRALLOC_LOG_TO_FILE", "1")
        monkeypatch.setenv("FAIRALLOC_LOG_DIR", str(tmp_path / "custom"))
        result = invoke(runner, tmp_path, "round", "simulate", str(round_file))
        assert result.exit_code == 0, result.output
        assert (tmp_path / "custom" / "fairalloc.log").is_file()
