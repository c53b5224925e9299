import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from budgetbuddy.api.errors import install_error_handlers
from budgetbuddy.api.routes import rules, sync
from budgetbuddy.core import settings
from budgetbuddy.integration.comdirect import ComdirectClient
from budgetbuddy.integration.ynab import YnabClient
from budgetbuddy.logger import get_logger, setup_logging
from budgetbuddy.manager import CategorizerService
from budgetbuddy.persistence.stores import JsonRuleStore, JsonSessionHistoryStore
from budgetbuddy.services.rules import RuleService
from budgetbuddy.services.sessions import SyncSessionManager

logger = get_logger(__name__)


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        if not os.getenv("YNAB_TOKEN"):
            logger.warning("YNAB_TOKEN not set. Import to YNAB will fail until configured.")

        config = settings.load_sync_config()
        rule_store = JsonRuleStore(data_path=os.path.join(settings.DATA_DIR, "rules.json"))
        history = JsonSessionHistoryStore(data_path=os.path.join(settings.DATA_DIR, "sessions.json"))
        budget = YnabClient()
        bank = ComdirectClient()
        categorizer = CategorizerService(rule_store)

        app.state.budget = budget
        app.state.bank = bank
        app.state.rule_service = RuleService(rule_store, categorizer, budget=budget, budget_id=config.budget_id)
        app.state.session_manager = SyncSessionManager(
            bank=bank,
            budget=budget,
            history=history,
            categorizer=categorizer,
            config=config,
        )

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")
        await bank.aclose()
        await budget.aclose()

    app = FastAPI(title="BudgetBuddy", lifespan=lifespan)
    install_error_handlers(app)

    app.include_router(sync.router)
    app.include_router(rules.router)

    return app


app = create_app()
