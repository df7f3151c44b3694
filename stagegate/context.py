"""Wiring of the store, service and workflow objects shared by every surface."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import Engine

from stagegate.config import Settings, get_settings
from stagegate.db import create_db_engine, init_db, make_session_factory
from stagegate.directory import AccountDirectory, LoggingNotifier, Notifier, WorkstreamDirectory, YamlDirectory
from stagegate.services import InitiativeService
from stagegate.store import InitiativeStore
from stagegate.workflow import ApprovalCoordinator, StageWorkflowEngine

log = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    store: InitiativeStore
    accounts: AccountDirectory
    workstreams: WorkstreamDirectory
    notifier: Notifier
    service: InitiativeService
    workflow: StageWorkflowEngine
    approvals: ApprovalCoordinator

    def close(self) -> None:
        self.engine.dispose()


def build_context(
    settings: Settings | None = None,
    *,
    directory: YamlDirectory | None = None,
    notifier: Notifier | None = None,
    poolclass=None,
) -> AppContext:
    """Build the object graph once per process.

    *directory* defaults to the YAML file named in the settings and serves both
    the account and the workstream lookups.
    """
    settings = settings or get_settings()
    engine = create_db_engine(settings.database_url, settings.statement_timeout_seconds, poolclass=poolclass)
    init_db(engine)
    store = InitiativeStore(make_session_factory(engine))
    directory = directory if directory is not None else YamlDirectory(settings.load_workstreams())
    notifier = notifier if notifier is not None else LoggingNotifier()
    log.debug("context ready (database %s)", engine.url.render_as_string(hide_password=True))
    return AppContext(
        settings=settings,
        engine=engine,
        store=store,
        accounts=directory,
        workstreams=directory,
        notifier=notifier,
        service=InitiativeService(store),
        workflow=StageWorkflowEngine(
            store, directory, notifier, require_gate_approval=settings.require_gate_approval,
        ),
        approvals=ApprovalCoordinator(store, directory, directory),
    )
