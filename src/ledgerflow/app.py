import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ledgerflow.api.routes import (
    accounts,
    bank_connections,
    bank_mappings,
    categorization,
    planning,
    reconciliation,
    rules,
    transactions,
)
from ledgerflow.categorization.bank_category import BankCategoryHandler
from ledgerflow.categorization.base import CategorizationHandler
from ledgerflow.categorization.gate import ConfidenceGate
from ledgerflow.categorization.llm import LLMHandler
from ledgerflow.categorization.ml import MLHandler
from ledgerflow.categorization.pipeline import CategorizationPipeline
from ledgerflow.categorization.rules import RulesHandler
from ledgerflow.core import settings
from ledgerflow.errors import LedgerError
from ledgerflow.integration.akahu import AkahuClient
from ledgerflow.integration.llm import LlmProvider
from ledgerflow.logger import get_logger, setup_logging
from ledgerflow.manager import CategoryLearner
from ledgerflow.services.access import AccountAccess
from ledgerflow.services.bank_mapping import BankCategoryMappingService
from ledgerflow.services.bank_sync import BankSyncService
from ledgerflow.services.candidates import CandidatesService
from ledgerflow.services.planning import PlanningService
from ledgerflow.services.reconciliation import ReconciliationService
from ledgerflow.services.rules import RulesService
from ledgerflow.services.transactions import TransactionService
from ledgerflow.storage.memory import InMemoryStore
from ledgerflow.storage.repositories import Store

logger = get_logger(__name__)


def build_services(
    store: Store,
    *,
    data_dir: str = ".",
    llm: LlmProvider | None = None,
    bank_client: AkahuClient | None = None,
    gate: ConfidenceGate | None = None,
) -> dict[str, Any]:
    """Wire services around a store; the result is installed on ``app.state``."""
    gate = gate or ConfidenceGate()
    bank_client = bank_client or AkahuClient()
    learner = CategoryLearner(data_dir=data_dir)
    access = AccountAccess(store)
    mappings = BankCategoryMappingService(store, llm=llm)
    candidates = CandidatesService(store, learner=learner)

    handlers: list[CategorizationHandler] = [
        RulesHandler(store, gate),
        BankCategoryHandler(mappings, gate),
        MLHandler(learner, gate),
    ]
    if llm is not None:
        handlers.append(LLMHandler(llm, gate))
    pipeline = CategorizationPipeline(store, handlers, candidates, learner=learner)

    return {
        "store": store,
        "learner": learner,
        "pipeline": pipeline,
        "candidates": candidates,
        "mappings": mappings,
        "rules": RulesService(store, access),
        "transactions": TransactionService(store, access, mappings=mappings, learner=learner),
        "reconciliation": ReconciliationService(store, access, mappings, bank_client=bank_client),
        "bank_sync": BankSyncService(store, access, bank_client, pipeline),
        "planning": PlanningService(store, access),
    }


async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("[API] %s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        llm = None
        if os.getenv("OPENAI_API_KEY"):
            llm = LlmProvider()
            logger.info(f"LLM categorization enabled: model={llm.model}")
        else:
            logger.info("OPENAI_API_KEY not set. LLM categorization and AI bank mapping disabled.")

        bank_client = AkahuClient()
        if not bank_client.is_configured:
            logger.warning("AKAHU_APP_TOKEN not set. Bank sync will fail until it is configured.")
        if not settings.get_api_tokens():
            logger.warning("API_TOKENS not set. Every API request will be rejected.")

        services = build_services(
            InMemoryStore(),
            data_dir=settings.DATA_DIR,
            llm=llm,
            bank_client=bank_client,
        )
        for name, service in services.items():
            setattr(app.state, name, service)

        logger.info("Services initialized.")
        yield
        await bank_client.aclose()
        logger.info("Service shutting down.")

    app = FastAPI(title="Ledgerflow", lifespan=lifespan)
    app.add_exception_handler(LedgerError, ledger_error_handler)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    app.include_router(accounts.router)
    app.include_router(transactions.router)
    app.include_router(rules.router)
    app.include_router(categorization.router)
    app.include_router(bank_mappings.router)
    app.include_router(reconciliation.router)
    app.include_router(bank_connections.router)
    app.include_router(planning.router)

    return app
