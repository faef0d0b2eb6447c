"""HTTP surface: provider webhook, operator diagnostics, and health."""

from __future__ import annotations

import json
import logging
from contextlib import closing
from typing import Any, Callable

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from sqlalchemy.orm import Session

from config import settings
from delivery.dead_letter import resolve_dead_letter
from delivery.webhooks import apply_provider_events
from diagnostics.operator_report import dead_letter_summary, stale_job_summary
from logging_config import configure_logging
from services.database import check_connection, get_sync_session
from time_utils import utc_now

logger = logging.getLogger(__name__)


def create_app(
    *,
    session_factory: Callable[[], Session] | None = None,
    health_check: Callable[[], bool] | None = None,
    title: str = "alerting",
    version: str = "0.1.0",
) -> FastAPI:
    """Create the FastAPI app with project defaults."""
    session_factory = session_factory or get_sync_session
    health_check = health_check or check_connection
    app = FastAPI(title=title, version=version)

    @app.post("/webhooks/email")
    async def email_webhook(request: Request) -> dict[str, Any]:
        body = await request.body()
        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            logger.warning("Rejected webhook with invalid JSON body")
            raise HTTPException(status_code=400, detail="Body is not valid JSON") from exc
        with closing(session_factory()) as session:
            result = apply_provider_events(session, payload, utc_now())
        return {
            "received": result.received,
            "applied": result.applied,
            "unknown_message": result.unknown_message,
            "ignored": result.ignored,
        }

    @app.get("/diagnostics/dead-letters")
    def dead_letters(limit: int = 100) -> dict[str, Any]:
        with closing(session_factory()) as session:
            entries = dead_letter_summary(session, limit=limit)
        return {"count": len(entries), "entries": entries}

    @app.post("/diagnostics/dead-letters/{entry_id}/resolve")
    def resolve_dead_letter_entry(entry_id: int) -> dict[str, Any]:
        with closing(session_factory()) as session:
            resolved = resolve_dead_letter(session, entry_id, utc_now())
            session.commit()
        if not resolved:
            raise HTTPException(status_code=404, detail="No unresolved dead letter with that id")
        logger.info("Dead letter resolved by operator: id=%s", entry_id)
        return {"id": entry_id, "resolved": True}

    @app.get("/diagnostics/stale-jobs")
    def stale_jobs(threshold_minutes: int | None = None) -> dict[str, Any]:
        with closing(session_factory()) as session:
            entries = stale_job_summary(session, utc_now(), threshold_minutes)
        return {"count": len(entries), "entries": entries}

    @app.get("/health")
    def health() -> dict[str, Any]:
        database_ready = health_check()
        return {"ready": database_ready, "database": database_ready}

    return app


def run_app(
    app: FastAPI,
    *,
    host: str = "127.0.0.1",
    port: int = 8000,
    log_level: str = "info",
) -> None:
    """Run one FastAPI app through uvicorn."""
    uvicorn.run(app, host=host, port=port, log_level=log_level)


def main() -> None:
    configure_logging(settings.log_level)
    run_app(create_app(), host="0.0.0.0", log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
