"""Calendar API: FastAPI application factory.

The factory wires a ready ``CalendarService`` and the host application's
user-identity dependency into the calendar router. Session handling belongs to
the host application.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import FastAPI

from calendar_hub.api.middleware import register_error_handlers
from calendar_hub.api.routers.calendars import (
    get_calendar_service,
    get_current_user_id,
)
from calendar_hub.api.routers.calendars import (
    router as calendars_router,
)
from calendar_hub.service import CalendarService

logger = logging.getLogger(__name__)


def create_app(
    service: CalendarService | None = None,
    user_id_dependency: Callable[..., str] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    service:
        The calendar service backing every route. When omitted the routes
        fail until ``get_calendar_service`` is overridden.
    user_id_dependency:
        FastAPI dependency returning the authenticated user id.
    """
    app = FastAPI(title="calendar-hub API", version="0.1.0")
    app.router.redirect_slashes = False

    register_error_handlers(app)
    app.include_router(calendars_router)

    if service is not None:
        app.dependency_overrides[get_calendar_service] = lambda: service
    if user_id_dependency is not None:
        app.dependency_overrides[get_current_user_id] = user_id_dependency

    @app.get("/api/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    logger.debug("calendar-hub API created")
    return app
