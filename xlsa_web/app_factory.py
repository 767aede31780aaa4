from __future__ import annotations

import logging
from typing import Optional

from flask import Flask

from xlsa_web.adapters.ai_backend import OpenRouterClient
from xlsa_web.adapters.memory_store import InMemoryAnalysisStore, InMemoryCreditLedger, InMemoryFileStore
from xlsa_web.config.ini_config import AppSettings, IniConfig
from xlsa_web.domain.models import SPEED
from xlsa_web.repositories.upload_repository import UploadRepository
from xlsa_web.services.admission import AdmissionController
from xlsa_web.services.ai_assist import AnalysisEnhancer, ConversationDesigner, ModificationPlanner
from xlsa_web.services.analyzers import DEFAULT_ANALYZERS, AnalyzerDeps
from xlsa_web.services.background import QueueNotificationChannel, TaskRunner
from xlsa_web.services.generators import DEFAULT_GENERATORS
from xlsa_web.services.orchestrator import (
    AdmissionGate,
    AnalyzeSpreadsheetCommand,
    GenerateSpreadsheetCommand,
    ModifySpreadsheetCommand,
    Orchestrator,
)
from xlsa_web.services.provider_router import ProviderRouter
from xlsa_web.services.registry import StrategyRegistry
from xlsa_web.services.templates import TemplateCatalog
from xlsa_web.web.routes import create_blueprint


def _stores(settings: AppSettings):
    if settings.sqlserver is None:
        return InMemoryFileStore(), InMemoryAnalysisStore(), InMemoryCreditLedger()

    # imported here so a deployment without an ODBC driver can still run on the in-memory stores
    from xlsa_web.adapters.sqlserver_store import (
        SqlServerAnalysisStore,
        SqlServerConnector,
        SqlServerCreditLedger,
        SqlServerFileStore,
    )
    connector = SqlServerConnector(settings.sqlserver)
    return SqlServerFileStore(connector), SqlServerAnalysisStore(connector), SqlServerCreditLedger(connector)


def create_app(settings: Optional[AppSettings] = None, ai_backend=None) -> Flask:
    if settings is None:
        settings = IniConfig.from_env_or_default().load_settings()

    files, analyses, ledger = _stores(settings)
    uploads = UploadRepository(storage_dir=settings.storage_dir)

    backend = ai_backend or OpenRouterClient(settings.ai)
    router = ProviderRouter(settings.tiers, settings.tier_policy)
    admission = AdmissionController(costs=settings.costs, ledger=ledger)
    gate = AdmissionGate(ledger=ledger, router=router, admission=admission)

    default_profile = router.resolve(SPEED).unwrap_or(settings.tiers[0])
    analyzer_deps = AnalyzerDeps(
        ai_enhancer=AnalysisEnhancer(backend=backend, default_profile=default_profile),
        complexity_threshold=settings.complexity_threshold,
    )

    orchestrator = Orchestrator(
        analyze=AnalyzeSpreadsheetCommand(
            files=files,
            analyses=analyses,
            gate=gate,
            analyzers=StrategyRegistry("analyze", DEFAULT_ANALYZERS),
            analyzer_deps=analyzer_deps,
        ),
        modify=ModifySpreadsheetCommand(
            files=files,
            uploads=uploads,
            gate=gate,
            planner=ModificationPlanner(backend=backend),
        ),
        generate=GenerateSpreadsheetCommand(
            files=files,
            uploads=uploads,
            gate=gate,
            generators=StrategyRegistry("generate", DEFAULT_GENERATORS),
            templates=TemplateCatalog(),
            designer=ConversationDesigner(backend=backend),
            thresholds=settings.generation,
        ),
    )

    channel = QueueNotificationChannel(mailbox_size=settings.mailbox_size)
    runner = TaskRunner(
        channel,
        max_workers=settings.max_workers,
        retention_seconds=settings.task_retention_seconds,
    )

    app = Flask(__name__)
    app.register_blueprint(create_blueprint(orchestrator, files, analyses, uploads, runner, channel))

    app.config["HOST"] = settings.flask_host
    app.config["PORT"] = settings.flask_port
    app.config["DEBUG"] = settings.flask_debug

    # handles for operators and tests (crediting accounts, registering strategies)
    app.extensions["xlsa"] = {
        "settings": settings,
        "orchestrator": orchestrator,
        "files": files,
        "analyses": analyses,
        "ledger": ledger,
        "uploads": uploads,
        "runner": runner,
        "channel": channel,
    }

    logging.getLogger(__name__).info(
        "xlsa-web ready: storage=%s tiers=%s store=%s",
        settings.storage_dir, ",".join(router.tiers), "sqlserver" if settings.sqlserver else "memory",
    )
    return app
