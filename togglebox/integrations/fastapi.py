"""
FastAPI Integration.

Runs a ToggleBoxClient for the lifetime of a FastAPI application and exposes
local evaluation over HTTP.

Startup/Shutdown:
    - Startup: build the client, run the initial fetch, start polling
    - Shutdown: stop polling, flush stats, close connections

Endpoints (router):
    POST /evaluate                           - Evaluate a single flag
    POST /evaluate/all                       - Evaluate all flags for a user
    POST /experiments/{experiment_key}/assign - Assign a user to an experiment
    POST /events                             - Record a conversion or custom event
    GET  /config                             - Remote config of the current snapshot
    GET  /health                             - Client health

Usage:
    from fastapi import FastAPI
    from togglebox.integrations.fastapi import create_lifespan, register_exception_handlers, router

    app = FastAPI(lifespan=create_lifespan(ClientSettings(environment="production")))
    app.include_router(router, prefix="/togglebox")
    register_exception_handlers(app)

    @app.get("/checkout")
    async def checkout(client: ToggleBoxClientDep):
        ...
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Any, AsyncGenerator, Callable

from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.responses import JSONResponse

from togglebox.client import ToggleBoxClient
from togglebox.core.config import ClientSettings
from togglebox.core.exceptions import ConfigurationError, ToggleBoxError
from togglebox.core.logging import configure_logging
from togglebox.schemas.evaluate import (
    AssignRequest,
    AssignResponse,
    ConfigResponse,
    EvaluateAllRequest,
    EvaluateAllResponse,
    EvaluateFlagRequest,
    EvaluateFlagResponse,
    HealthResponse,
    TrackEventRequest,
    TrackEventResponse,
)

logger = logging.getLogger(__name__)

STATE_ATTRIBUTE = "togglebox"


# =============================================================================
# Lifespan
# =============================================================================

def create_lifespan(
    settings: ClientSettings | None = None,
    **client_kwargs: Any,
) -> Callable[[FastAPI], Any]:
    """
    Build a lifespan handler that owns a ToggleBoxClient.

    Args:
        settings: Client options (TOGGLEBOX_* env vars when omitted).
        **client_kwargs: Extra ToggleBoxClient arguments (transport, persistence...).

    Returns:
        An async context manager factory for FastAPI(lifespan=...).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        client = ToggleBoxClient(settings, **client_kwargs)
        logger.info(
            f"Starting ToggleBox for {client.settings.platform}/{client.settings.environment}"
        )

        try:
            await client.start()
        except Exception as e:
            logger.error(f"Failed to start ToggleBox client: {e}")
            await client.stop()
            raise

        setattr(app.state, STATE_ATTRIBUTE, client)
        try:
            yield
        finally:
            logger.info("Shutting down ToggleBox client")
            await client.stop()

    return lifespan


def get_client(request: Request) -> ToggleBoxClient:
    """
    Dependency returning the application's ToggleBoxClient.

    Raises:
        ConfigurationError: If the app was not started with create_lifespan().
    """
    client = getattr(request.app.state, STATE_ATTRIBUTE, None)
    if client is None:
        raise ConfigurationError(
            "ToggleBox client is not running; pass create_lifespan() to FastAPI"
        )
    return client


ToggleBoxClientDep = Annotated[ToggleBoxClient, Depends(get_client)]


# =============================================================================
# Exception Handlers
# =============================================================================

async def togglebox_exception_handler(
    request: Request,
    exc: ToggleBoxError,
) -> JSONResponse:
    """Handle all ToggleBox exceptions."""
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Map ToggleBoxError subclasses to JSON error responses."""
    app.add_exception_handler(ToggleBoxError, togglebox_exception_handler)


# =============================================================================
# Routes
# =============================================================================

router = APIRouter(tags=["togglebox"])


@router.post(
    "/evaluate",
    response_model=EvaluateFlagResponse,
    summary="Evaluate a single feature flag",
)
async def evaluate_flag(
    request: EvaluateFlagRequest,
    client: ToggleBoxClientDep,
) -> EvaluateFlagResponse:
    """
    Evaluate a single feature flag against the local snapshot.

    - **flag_key**: The flag to evaluate
    - **context**: user_id and attributes
    - **default_value**: Value to return if the flag is not found (default: false)
    """
    result = client.evaluate_flag(
        request.flag_key,
        request.context,
        default_value=request.default_value,
    )
    return EvaluateFlagResponse(**result.to_dict())


@router.post(
    "/evaluate/all",
    response_model=EvaluateAllResponse,
    summary="Evaluate all flags for a user",
)
async def evaluate_all(
    request: EvaluateAllRequest,
    client: ToggleBoxClientDep,
) -> EvaluateAllResponse:
    """Evaluate every flag in the current snapshot."""
    return EvaluateAllResponse(
        flags=client.get_all_flags(request.context),
        environment=client.settings.environment,
        snapshot_version=client.snapshot_version,
        evaluated_at=datetime.now(timezone.utc),
    )


@router.post(
    "/experiments/{experiment_key}/assign",
    response_model=AssignResponse,
    summary="Assign a user to an experiment",
)
async def assign_experiment(
    experiment_key: str,
    request: AssignRequest,
    client: ToggleBoxClientDep,
) -> AssignResponse:
    """
    Assign the context's user to an experiment variation.

    Records an impression when the user is assigned. A context without
    user_id is rejected with 422.
    """
    assignment = client.evaluate_experiment(experiment_key, request.context)
    return AssignResponse(**assignment.to_dict())


@router.post(
    "/events",
    response_model=TrackEventResponse,
    status_code=202,
    summary="Record a conversion or custom event",
)
async def track_event(
    request: TrackEventRequest,
    client: ToggleBoxClientDep,
) -> TrackEventResponse:
    """Buffer an event; it is sent with the next stats flush."""
    if request.type == "conversion":
        client.track_conversion(
            request.experiment_key,
            request.metric_id,
            request.context,
            value=request.value,
            variation_key=request.variation_key,
        )
    else:
        client.track_event(
            request.event_name,
            request.context,
            properties=request.properties,
            value=request.value,
        )

    return TrackEventResponse(
        accepted=client.settings.stats_enabled,
        buffered=client.stats_metrics.buffered,
    )


@router.get(
    "/config",
    response_model=ConfigResponse,
    summary="Get remote config",
)
async def get_config(client: ToggleBoxClientDep) -> ConfigResponse:
    """Return the remote config of the current snapshot."""
    return ConfigResponse(
        config=client.get_config(),
        snapshot_version=client.snapshot_version,
        stale=client.is_stale(),
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Client health",
)
async def health_check(client: ToggleBoxClientDep) -> HealthResponse:
    """
    Health check endpoint.

    Reports whether the client has a snapshot and whether it is fresh.
    """
    if client.snapshot_version is None:
        status = "unhealthy"
    elif client.is_stale():
        status = "degraded"
    else:
        status = "healthy"

    metrics = client.stats_metrics
    return HealthResponse(
        status=status,
        platform=client.settings.platform,
        environment=client.settings.environment,
        sync_state=client.state.value,
        snapshot_version=client.snapshot_version,
        stats={
            "buffered": metrics.buffered,
            "sent": metrics.sent,
            "dropped": metrics.dropped,
            "failed": metrics.failed,
        },
    )


def create_app(
    settings: ClientSettings | None = None,
    prefix: str = "",
    debug: bool = False,
    **client_kwargs: Any,
) -> FastAPI:
    """
    Build a standalone FastAPI app serving the evaluation router.

    Args:
        settings: Client options.
        prefix: Path prefix for the router.
        debug: Log at DEBUG level.
        **client_kwargs: Extra ToggleBoxClient arguments.
    """
    configure_logging(debug)
    app = FastAPI(
        title="ToggleBox Evaluation",
        lifespan=create_lifespan(settings, **client_kwargs),
    )
    app.include_router(router, prefix=prefix)
    register_exception_handlers(app)
    return app
