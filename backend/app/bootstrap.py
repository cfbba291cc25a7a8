"""Engine wiring.

Builds a ready-to-use WorkflowEngine from settings: structured logging,
the SQLAlchemy run store, the table gateway for storage steps, the
default executor registry and the step retry schedule.

Usage:
    runtime = await build_runtime()
    await runtime.recovery.recover_interrupted()
    run = await runtime.engine.trigger_workflow("new-order-flow", {"order_id": "o-1"})
    await runtime.close()
"""

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine

from app.config import Settings, get_settings
from core.logging_config import setup_logging
from db.database import close_db, create_db_engine, create_session_factory, init_db
from db.run_store import SqlRunStore
from db.tables import SqlTableGateway
from tasks.registry import build_default_registry
from workflow.engine import WorkflowEngine
from workflow.recovery import RecoveryService
from workflow.retry_strategies import RetryStrategy

logger = structlog.get_logger(__name__)


@dataclass
class EngineRuntime:
    """A wired engine plus the resources it owns."""
    engine: WorkflowEngine
    recovery: RecoveryService
    db_engine: AsyncEngine

    async def close(self) -> None:
        await close_db(self.db_engine)
        logger.info("Engine runtime closed")


async def build_runtime(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    configure_logging: bool = True,
) -> EngineRuntime:
    """Create tables if needed and wire every engine component."""
    settings = settings or get_settings()
    if configure_logging:
        setup_logging(settings)
    settings.validate_secrets()

    db_engine = create_db_engine(settings)
    await init_db(db_engine)

    store = SqlRunStore(create_session_factory(db_engine))
    registry = build_default_registry(
        settings,
        tables=SqlTableGateway(db_engine),
        transport=transport,
    )
    engine = WorkflowEngine(
        store,
        registry,
        retry_strategy=RetryStrategy.from_settings(settings),
        settings=settings,
    )

    logger.info(
        "Workflow engine ready",
        environment=settings.ENVIRONMENT,
        step_types=registry.available_types,
    )
    return EngineRuntime(engine=engine, recovery=RecoveryService(engine), db_engine=db_engine)


async def build_engine(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> WorkflowEngine:
    """Shortcut for callers that let the process own the database engine."""
    runtime = await build_runtime(settings, transport)
    return runtime.engine
