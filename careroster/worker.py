"""arq worker: rolling-horizon schedule materialization."""

import logging
import os
from datetime import date
from typing import Any
from uuid import UUID

from arq.connections import RedisSettings
from arq.cron import cron

from careroster.core.logging import configure_logging
from careroster.db.connection import close_db, get_session_factory
from careroster.scheduling.materializer import ScheduleMaterializer, horizon_end

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    configure_logging()
    ctx["session_maker"] = get_session_factory()
    logger.info("Worker started. Database connection initialized.")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await close_db()
    logger.info("Worker stopped. Database connection closed.")


async def generate_rolling_horizon(
    ctx: dict[str, Any], horizon_days: int | None = None
) -> dict[str, Any]:
    """Materialize every active template through today + horizon.

    Args:
        ctx: ARQ context
        horizon_days: Override for GENERATION_HORIZON_DAYS

    Returns:
        Totals across all patients
    """
    end_date = horizon_end(date.today(), horizon_days)
    logger.info(f"Starting rolling horizon generation through {end_date}")

    session_maker = ctx["session_maker"]
    async with session_maker() as session:
        summaries = await ScheduleMaterializer(session).generate_all(end_date)
        await session.commit()

    result = {
        "end_date": end_date.isoformat(),
        "patients": len(summaries),
        "created": sum(s.created for s in summaries),
        "failures": sum(len(s.failures) for s in summaries),
    }
    logger.info(f"Rolling horizon generation completed: {result}")
    return result


async def generate_patient_schedule(
    ctx: dict[str, Any], patient_id: str, end_date: str
) -> dict[str, Any]:
    """Materialize one patient's template through an ISO ``end_date``."""
    session_maker = ctx["session_maker"]
    async with session_maker() as session:
        summary = await ScheduleMaterializer(session).generate(
            UUID(patient_id), date.fromisoformat(end_date)
        )
        await session.commit()
    return summary.model_dump(mode="json")


class WorkerSettings:
    functions = [generate_rolling_horizon, generate_patient_schedule]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(os.environ.get("REDIS_URL", "redis://localhost:6379"))
    # Nightly at 02:00
    cron_jobs = [cron(generate_rolling_horizon, hour=2, minute=0)]
