"""Shared fixtures: in-memory database, directory config, and a recording notifier."""
from __future__ import annotations

import pytest
from sqlalchemy.pool import StaticPool

from stagegate.config import Settings
from stagegate.context import AppContext, build_context
from stagegate.directory import YamlDirectory

DIRECTORY_DATA = {
    "workstreams": [
        {
            "id": "ws-1",
            "name": "Operations",
            "gates": {
                "l1": [{"rule": "all", "approvers": [{"role": "A"}, {"role": "B"}, {"role": "C"}]}],
                "l2": ["finance"],
                "l3": ["finance"],
                "l4": ["finance"],
                "l5": ["finance"],
            },
        },
        {"id": "ws-empty", "name": "No approvers", "gates": {}},
    ],
    "accounts": [
        {"id": "acc-a", "name": "Avery"},
        {"id": "acc-b", "name": "Blair"},
        {"id": "acc-c", "name": "Casey"},
        {"id": "acc-finance", "name": "Finley"},
        {"id": "acc-outsider", "name": "Olive"},
    ],
    "role_assignments": [
        {"account_id": "acc-a", "workstream_id": "ws-1", "role": "A"},
        {"account_id": "acc-b", "workstream_id": "ws-1", "role": "B"},
        {"account_id": "acc-c", "workstream_id": "ws-1", "role": "C"},
        {"account_id": "acc-finance", "workstream_id": "ws-1", "role": "finance"},
        {"account_id": "acc-outsider", "workstream_id": "ws-empty", "role": "A"},
    ],
}


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls: list[tuple[str, str, str]] = []

    def notify_approver(self, role: str, initiative_id: str, stage_key: str) -> None:
        self.calls.append((role, initiative_id, stage_key))
        if self.fail:
            raise ConnectionError("mail relay unreachable")


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "project_root": tmp_path,
        "data_dir": tmp_path / "data",
        "database_path": tmp_path / "data" / "stagegate.db",
        "workstreams_file": tmp_path / "config" / "workstreams.yaml",
        "database_url_override": "sqlite:///:memory:",
    }
    values.update(overrides)
    return Settings(**values)


def make_payload(**overrides) -> dict:
    payload = {"workstream_id": "ws-1", "name": "Efficiency Program"}
    payload.update(overrides)
    return payload


@pytest.fixture()
def directory() -> YamlDirectory:
    return YamlDirectory(DIRECTORY_DATA)


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def context(tmp_path, directory, notifier) -> AppContext:
    ctx = build_context(make_settings(tmp_path), directory=directory, notifier=notifier, poolclass=StaticPool)
    yield ctx
    ctx.close()


@pytest.fixture()
def initiative(context):
    """A freshly created initiative in workstream ws-1 (version 1, stage l0)."""
    return context.service.create_initiative(make_payload())
