from __future__ import annotations

import json

import yaml
from typer.testing import CliRunner

from stagegate.cli import app
from stagegate.config import get_settings
from stagegate.context import build_context

from conftest import DIRECTORY_DATA, make_payload


def _seed(tmp_path, db_url: str) -> str:
    (tmp_path / "config").mkdir(exist_ok=True)
    (tmp_path / "config" / "workstreams.yaml").write_text(yaml.safe_dump(DIRECTORY_DATA), encoding="utf-8")
    ctx = build_context(get_settings().model_copy(update={"database_url_override": db_url}))
    try:
        created = ctx.service.create_initiative(make_payload())
        ctx.workflow.submit_stage(created.id, created.version)
        return created.id
    finally:
        ctx.close()


def test_show_and_approvals_commands(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("STAGEGATE_HOME", str(tmp_path))
    get_settings.cache_clear()
    db_url = f"sqlite:///{tmp_path / 'cli.db'}"
    initiative_id = _seed(tmp_path, db_url)

    runner = CliRunner()
    result = runner.invoke(app, ["--json", "show", initiative_id, "--db-url", db_url])
    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["id"] == initiative_id
    assert payload["stage_state"]["l1"]["status"] == "pending"

    result = runner.invoke(app, ["--json", "approvals", "--status", "pending", "--db-url", db_url])
    assert result.exit_code == 0
    tasks = json.loads(result.stdout)
    assert sorted(t["role"] for t in tasks) == ["A", "B", "C"]
    get_settings.cache_clear()


def test_show_missing_initiative_exits_nonzero(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("STAGEGATE_HOME", str(tmp_path))
    get_settings.cache_clear()
    db_url = f"sqlite:///{tmp_path / 'empty.db'}"

    result = CliRunner().invoke(app, ["--json", "show", "ghost", "--db-url", db_url])
    assert result.exit_code == 1
    assert json.loads(result.stdout)["error_code"] == "not-found"
    get_settings.cache_clear()
