"""ARQ worker for analysis and fix jobs.

Run:
  `arq roomfix.core.worker.WorkerSettings`

Messages only carry IDs; the pipelines re-read job state from the durable
store, so redelivered or stale messages finish as no-ops.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict

from arq.connections import RedisSettings

from roomfix.core.config import get_settings
from roomfix.core.container import Services, build_services
from roomfix.core.models import QueueMessage
from roomfix.utils.logging import setup_logging

logger = logging.getLogger(__name__)


async def _services(ctx: Dict[str, Any]) -> Services:
    services = ctx.get("services")
    if services is None:
        services = await build_services(get_settings())
        ctx["services"] = services
    return services


async def run_analysis_job(
    ctx: Dict[str, Any], job_id: str, resource_id: str, owner_id: str
) -> Dict[str, Any]:
    message = QueueMessage(job_id=job_id, resource_id=resource_id, owner_id=owner_id)
    try:
        services = await _services(ctx)
        status = await services.analysis.process(message)
        return {"status": status.value}
    except Exception as e:
        logger.exception("analysis_job_crashed", extra={"resource_id": resource_id, "error": str(e)})
        return {"status": "failed"}


async def run_fix_job(
    ctx: Dict[str, Any], job_id: str, resource_id: str, owner_id: str
) -> Dict[str, Any]:
    message = QueueMessage(job_id=job_id, resource_id=resource_id, owner_id=owner_id)
    try:
        services = await _services(ctx)
        status = await services.fix_pipeline.process(message)
        return {"status": status.value}
    except Exception as e:
        logger.exception("fix_job_crashed", extra={"fix_id": job_id, "error": str(e)})
        return {"status": "failed"}


async def startup(ctx: Dict[str, Any]) -> None:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL, json_output=settings.LOG_JSON)
    ctx["services"] = await build_services(settings)
    logger.info("worker_started", extra={"status": settings.QUEUE_NAME})


async def shutdown(ctx: Dict[str, Any]) -> None:
    services = ctx.pop("services", None)
    if services is not None:
        await services.close()
    logger.info("worker_stopped")


_settings = get_settings()


class WorkerSettings:
    functions = [run_analysis_job, run_fix_job]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = RedisSettings.from_dsn(_settings.REDIS_URL)
    queue_name = _settings.QUEUE_NAME
    max_jobs = _settings.WORKER_MAX_JOBS
    job_timeout = timedelta(seconds=_settings.WORKER_JOB_TIMEOUT_SECONDS)
