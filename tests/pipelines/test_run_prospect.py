from __future__ import annotations

import json
from pathlib import Path

import pytest

from app.config import Settings
from pipelines.prospect import run_prospect

TARGET_KEY = "acme-plumbing-denver-co"


def _write(root: Path, source_id: str, payload: object) -> None:
    path = root / source_id / f"{TARGET_KEY}.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


@pytest.fixture
def fixture_dir(tmp_path: Path) -> Path:
    root = tmp_path / "fixtures"
    _write(root, "google_maps", {"place_id": "ChIJ-acme", "phone": "(303) 555-0100", "address": "1 Main St"})
    _write(root, "web_search", {"success": False, "errors": ["source_unavailable: invalid credentials"]})
    _write(root, "google_reviews", {"rating": 4.7, "review_count": 31})
    _write(root, "registry", {"success": True, "fields": {"industry": "plumbing"}})
    return root


def _invoke(tmp_path: Path, fixture_dir: Path, *extra: str) -> tuple[int, dict]:
    output = tmp_path / "summary.json"
    exit_code = run_prospect.main(
        [
            "--name",
            "Acme Plumbing LLC",
            "--location",
            "Denver, CO",
            "--fixture-dir",
            str(fixture_dir),
            "--attempt-log-dir",
            str(tmp_path / "attempts"),
            "--out",
            str(output),
            *extra,
        ]
    )
    summary = json.loads(output.read_text(encoding="utf-8")) if output.exists() else {}
    return exit_code, summary


def test_process_writes_summary_and_attempt_log(tmp_path, fixture_dir):
    exit_code, summary = _invoke(tmp_path, fixture_dir)

    assert exit_code == 0
    assert summary["command"] == "process"
    assert summary["target_key"] == TARGET_KEY
    assert summary["successful_passes"] == [1, 3, 4]
    assert summary["failed_passes"] == [2]
    assert summary["not_attempted_passes"] == [5]
    assert summary["next_retry_passes"] == [2]
    assert summary["errors"] == {"2": ["source_unavailable: invalid credentials"]}
    assert summary["fields"]["industry"] == "plumbing"
    assert (tmp_path / "attempts" / f"{TARGET_KEY}.jsonl").exists()


def test_status_then_retry_after_source_recovers(tmp_path, fixture_dir):
    _invoke(tmp_path, fixture_dir)

    _, status = _invoke(tmp_path, fixture_dir, "--status")
    assert status["status"]["next_retry_passes"] == [2]
    assert status["status"]["failure_counts"] == {"2": 1}

    _write(fixture_dir, "web_search", {"website": "https://acme-plumbing.example"})
    _, retried = _invoke(tmp_path, fixture_dir, "--retry")
    assert retried["result"]["successful_passes"] == [1, 2, 3, 4]
    assert retried["result"]["fields"]["website"] == "https://acme-plumbing.example"

    _, nothing_due = _invoke(tmp_path, fixture_dir, "--retry")
    assert nothing_due["result"] is None


def test_default_attempt_log_persists_between_invocations(tmp_path, fixture_dir, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ATTEMPT_LOG_DIR", raising=False)
    defaults = Settings(_env_file=None, database_url=None)
    monkeypatch.setattr(run_prospect, "settings", defaults)
    argv = ["--name", "Acme Plumbing LLC", "--location", "Denver, CO", "--fixture-dir", str(fixture_dir)]

    assert run_prospect.main([*argv, "--out", str(tmp_path / "process.json")]) == 0
    assert run_prospect.main([*argv, "--status", "--out", str(tmp_path / "status.json")]) == 0

    status = json.loads((tmp_path / "status.json").read_text(encoding="utf-8"))
    assert status["status"]["next_retry_passes"] == [2]
    assert (tmp_path / "data" / "attempts" / f"{TARGET_KEY}.jsonl").exists()


def test_list_retry_and_retry_all(tmp_path, fixture_dir):
    _invoke(tmp_path, fixture_dir)

    _, listed = _invoke(tmp_path, fixture_dir, "--list-retry")
    assert [status["target_key"] for status in listed["targets"]] == [TARGET_KEY]

    _write(fixture_dir, "web_search", {"website": "acme-plumbing.example"})
    _, retried = _invoke(tmp_path, fixture_dir, "--retry-all")
    assert [item["target_key"] for item in retried["retried"]] == [TARGET_KEY]

    _, listed_again = _invoke(tmp_path, fixture_dir, "--list-retry")
    assert listed_again["targets"] == []


def test_force_runs_every_pass(tmp_path, fixture_dir):
    _invoke(tmp_path, fixture_dir)

    _, forced = _invoke(tmp_path, fixture_dir, "--force")

    assert forced["command"] == "force"
    assert forced["not_attempted_passes"] == []
    assert forced["errors"]["5"] == ["no_data_found"]


def test_passes_runs_exact_subset(tmp_path, fixture_dir):
    exit_code, summary = _invoke(tmp_path, fixture_dir, "--passes", "4,1")

    assert exit_code == 0
    assert summary["successful_passes"] == [1, 4]
    assert summary["next_retry_passes"] == [2, 3, 5]


def test_unknown_pass_exits_with_error(tmp_path, fixture_dir):
    exit_code, summary = _invoke(tmp_path, fixture_dir, "--passes", "9")

    assert exit_code == 1
    assert summary == {}


@pytest.mark.parametrize(
    "argv",
    [
        ["--location", "Denver, CO"],
        ["--name", "Acme", "--retry", "--passes", "1"],
        ["--name", "Acme", "--passes", "one,two"],
        ["--name", "Acme", "--retry", "--force"],
    ],
)
def test_parse_args_rejects_invalid_combinations(argv):
    with pytest.raises(SystemExit):
        run_prospect.parse_args(argv)


def test_build_settings_overrides_paths(tmp_path):
    config = run_prospect.build_settings(attempt_log_dir=tmp_path / "log", fixture_dir=tmp_path / "fx")

    assert config.attempt_log_dir == str(tmp_path / "log")
    assert config.prospect_fixture_dir == str(tmp_path / "fx")
