"""Tests for the command line interface."""

import json
from base64 import b64decode

import pytest
import yaml

from tabular_deidentification.cli import main
from tabular_deidentification.correspondence.encryption import KEY_SIZE


def _write_jsonl(path, records):
    path.write_text("".join(json.dumps(r) + "\n" for r in records), encoding="utf-8")


def _read_jsonl(path):
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


@pytest.fixture
def workspace(tmp_path, monkeypatch, example_policy_set, example_record):
    monkeypatch.delenv("DEID_ENGINE_STORE_KEY", raising=False)

    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.safe_dump({
        'deidentification': {'reference_date': '2024-01-01'},
        'risk': {'enabled': False},
    }))
    example_policy_set.to_yaml(tmp_path / "policy.yaml")
    _write_jsonl(tmp_path / "records.jsonl", [example_record, dict(example_record, id="u2")])
    return tmp_path


class TestCLI:
    """Test cases for the deid-engine command."""

    def test_generate_key(self, capsys):
        assert main(["generate-key"]) == 0
        key = capsys.readouterr().out.strip()
        assert len(b64decode(key)) == KEY_SIZE

    def test_deidentify(self, workspace, capsys):
        exit_code = main([
            "--config", str(workspace / "config.yaml"),
            "deidentify",
            "--input", str(workspace / "records.jsonl"),
            "--policy", str(workspace / "policy.yaml"),
            "--output", str(workspace / "out" / "records.jsonl"),
            "--summary", str(workspace / "out" / "summary.json"),
        ])

        assert exit_code == 0
        records = _read_jsonl(workspace / "out" / "records.jsonl")
        assert [r['id'] for r in records] == ["u1", "u2"]
        assert records[0]['email'] == "j****@corp.com"
        assert records[0]['zip'] == "280**"

        summary = json.loads((workspace / "out" / "summary.json").read_text(encoding="utf-8"))
        assert summary['transformed'] == 2
        assert "finalized" in capsys.readouterr().out

    def test_strict_failure_exit_code(self, workspace):
        (workspace / "schema.yaml").write_text(yaml.safe_dump({'email': 'email'}))
        _write_jsonl(workspace / "records.jsonl", [{'email': "not-an-email"}])

        exit_code = main([
            "--config", str(workspace / "config.yaml"),
            "deidentify",
            "--input", str(workspace / "records.jsonl"),
            "--policy", str(workspace / "policy.yaml"),
            "--schema", str(workspace / "schema.yaml"),
            "--output", str(workspace / "out.jsonl"),
            "--strict",
        ])

        assert exit_code == 1
        assert _read_jsonl(workspace / "out.jsonl") == []

    def test_risk(self, workspace):
        records = [{'zip': "280", 'age': "30-34"}] * 9 + [{'zip': "281", 'age': "30-34"}]
        _write_jsonl(workspace / "dataset.jsonl", records)

        exit_code = main([
            "--config", str(workspace / "config.yaml"),
            "risk",
            "--input", str(workspace / "dataset.jsonl"),
            "--qi", "zip,age",
            "--k-min", "5",
            "--output", str(workspace / "risk.json"),
        ])

        assert exit_code == 0
        report = json.loads((workspace / "risk.json").read_text(encoding="utf-8"))
        assert report['records_to_suppress'] == [9]
        assert report['quasi_identifier_sets'] == [["zip", "age"]]

    def test_rejects_non_object_lines(self, workspace):
        (workspace / "bad.jsonl").write_text("[1, 2]\n", encoding="utf-8")
        with pytest.raises(ValueError):
            main([
                "--config", str(workspace / "config.yaml"),
                "risk",
                "--input", str(workspace / "bad.jsonl"),
                "--qi", "zip",
            ])
