"""Collaborator interfaces: accounts, workstream approver configuration, notifications.

``YamlDirectory`` serves the first two from ``config/workstreams.yaml``::

    workstreams:
      - id: ops
        name: Operations
        gates:
          l1:
            - rule: all
              approvers:
                - role: sponsor
                - role: finance-team-member
          l2: [sponsor]              # shorthand: a plain list of roles
    accounts:
      - id: acc-1
        name: Dana Ruiz
        email: dana@example.com
    role_assignments:
      - account_id: acc-1
        workstream_id: ops
        role: sponsor
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from stagegate.errors import WorkstreamNotFound
from stagegate.schemas import normalize_stage_key

log = logging.getLogger(__name__)


@dataclass
class Account:
    id: str
    name: str = ""
    email: str = ""
    roles: dict[str, list[str]] = field(default_factory=dict)

    def holds_role(self, workstream_id: str, role: str) -> bool:
        return role in self.roles.get(workstream_id, [])


@dataclass
class Workstream:
    id: str
    name: str = ""
    description: str = ""
    gates: dict[str, list[str]] = field(default_factory=dict)


class AccountDirectory(Protocol):
    def find_by_id(self, account_id: str) -> Account | None: ...


class WorkstreamDirectory(Protocol):
    def get_approver_roles(self, workstream_id: str, stage_key: str) -> list[str]: ...

    def list_workstreams(self) -> list[Workstream]: ...


class Notifier(Protocol):
    def notify_approver(self, role: str, initiative_id: str, stage_key: str) -> None: ...


# ---------------------------------------------------------------------------
# YAML-backed directory
# ---------------------------------------------------------------------------


def _gate_roles(value: Any) -> list[str]:
    """Flatten a gate definition to its distinct approver roles, in order."""
    roles: list[str] = []
    entries = value if isinstance(value, list) else []
    for entry in entries:
        if isinstance(entry, str):
            candidates = [entry]
        elif isinstance(entry, dict):
            approvers = entry.get("approvers") if isinstance(entry.get("approvers"), list) else []
            candidates = [a.get("role") for a in approvers if isinstance(a, dict)]
        else:
            candidates = []
        for role in candidates:
            if isinstance(role, str) and role.strip() and role.strip() not in roles:
                roles.append(role.strip())
    return roles


class YamlDirectory:
    """Account and workstream directory loaded from a parsed YAML mapping."""

    def __init__(self, data: dict[str, Any] | None = None):
        data = data or {}
        self._workstreams: dict[str, Workstream] = {}
        for raw in data.get("workstreams") or []:
            if not isinstance(raw, dict) or not str(raw.get("id") or "").strip():
                continue
            gates: dict[str, list[str]] = {}
            raw_gates = raw.get("gates") if isinstance(raw.get("gates"), dict) else {}
            for key, value in raw_gates.items():
                stage_key = normalize_stage_key(key)
                if stage_key and stage_key != "l0":
                    gates[stage_key] = _gate_roles(value)
            ws = Workstream(
                id=str(raw["id"]).strip(),
                name=str(raw.get("name") or ""),
                description=str(raw.get("description") or ""),
                gates=gates,
            )
            self._workstreams[ws.id] = ws

        self._accounts: dict[str, Account] = {}
        for raw in data.get("accounts") or []:
            if not isinstance(raw, dict) or not str(raw.get("id") or "").strip():
                continue
            account = Account(
                id=str(raw["id"]).strip(),
                name=str(raw.get("name") or ""),
                email=str(raw.get("email") or ""),
            )
            self._accounts[account.id] = account

        for raw in data.get("role_assignments") or []:
            if not isinstance(raw, dict):
                continue
            account = self._accounts.get(str(raw.get("account_id") or ""))
            workstream_id = str(raw.get("workstream_id") or "")
            role = str(raw.get("role") or "").strip()
            if account is None or not workstream_id or not role:
                log.warning("skipping invalid role assignment: %s", raw)
                continue
            held = account.roles.setdefault(workstream_id, [])
            if role not in held:
                held.append(role)

    def find_by_id(self, account_id: str) -> Account | None:
        return self._accounts.get(account_id)

    def get_approver_roles(self, workstream_id: str, stage_key: str) -> list[str]:
        workstream = self._workstreams.get(workstream_id)
        if workstream is None:
            raise WorkstreamNotFound()
        return list(workstream.gates.get(stage_key, []))

    def list_workstreams(self) -> list[Workstream]:
        return sorted(self._workstreams.values(), key=lambda w: w.id)


class LoggingNotifier:
    """Notifier that only writes a log line per approver role."""

    def notify_approver(self, role: str, initiative_id: str, stage_key: str) -> None:
        log.info("approval requested from %s for initiative %s gate %s", role, initiative_id, stage_key)
