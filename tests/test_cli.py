from __future__ import annotations

import json
from pathlib import Path

from sunny_baby import cli


def base_args(tmp_path: Path) -> list[str]:
    return ["--settings", str(tmp_path / "settings.json"), "--database", str(tmp_path / "sunny.db")]


def test_export_writes_local_snapshot(tmp_path: Path) -> None:
    output = tmp_path / "export.json"

    assert cli.main([*base_args(tmp_path), "export", "--output", str(output)]) == 0

    payload = json.loads(output.read_text(encoding="utf-8"))
    assert [child["name"] for child in payload["children"]] == ["Leo"]
    assert payload["logs"] == []


def test_status_prints_diagnostics(tmp_path: Path, capsys) -> None:
    assert cli.main([*base_args(tmp_path), "status"]) == 0

    report = json.loads(capsys.readouterr().out)
    assert report["linked"] is False
    assert report["status"] == "idle"
    assert report["records"]["children"] == 0


def test_sync_without_token_fails(tmp_path: Path) -> None:
    assert cli.main([*base_args(tmp_path), "sync"]) == 1


def test_invalid_settings_exit_code(tmp_path: Path) -> None:
    (tmp_path / "settings.json").write_text(json.dumps({"startup_timeout_seconds": 0}), encoding="utf-8")
    assert cli.main([*base_args(tmp_path), "status"]) == 2
