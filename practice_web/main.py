"""
FastAPI application entry point.

Composes the host once, at startup, as a strict linear sequence:
configuring (telemetry first, then authentication, storage and the
remaining services), building the app, assembling the request pipeline,
then serving.
"""

import enum
import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from opentelemetry.sdk._logs.export import LogExporter

from practice_web.auth import AuthenticationOptions, configure_authentication
from practice_web.config import Settings, get_settings
from practice_web.database.mongodb import ClientFactory
from practice_web.database.sqlserver import Connector
from practice_web.database.storage import configure_storage
from practice_web.errors import StartupError, register_error_handlers
from practice_web.pipeline import OPENAPI_PATH, PipelineStage, apply_pipeline, build_pipeline
from practice_web.secret_provider import FileSecretProvider, SecretProvider
from practice_web.telemetry import TelemetryHandle, configure_telemetry, service_version

logger = logging.getLogger(__name__)


class HostState(str, enum.Enum):
    CONFIGURING = "configuring"
    BUILDING = "building"
    PIPELINE_ASSEMBLED = "pipeline_assembled"
    SERVING = "serving"


def _set_state(app: FastAPI, state: HostState) -> None:
    app.state.host_state = state
    logger.info("Host state: %s", state.value)


def _lifespan(telemetry: TelemetryHandle):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application startup and shutdown events."""
        _set_state(app, HostState.SERVING)
        logger.info("Application is ready.")

        yield

        logger.info("Shutting down …")
        telemetry.shutdown()

    return lifespan


def create_app(
    settings: Settings | None = None,
    secrets: SecretProvider | None = None,
    log_exporter: LogExporter | None = None,
    relational_connector: Connector | None = None,
    document_client_factory: ClientFactory | None = None,
) -> FastAPI:
    """
    Compose the web host.

    Raises:
        ConfigurationError: If a required configuration section is missing.
        SecretResolutionError: If a secret file cannot be read.
    """
    # Configuring
    if settings is None:
        settings = get_settings()
    if secrets is None:
        secrets = FileSecretProvider()

    # Replaces every logging handler, so it has to precede everything else.
    telemetry = configure_telemetry(settings, log_exporter=log_exporter)

    stages = build_pipeline(settings.environment)
    auth_options = AuthenticationOptions.from_config(settings.identity_provider, settings.startup)

    api_docs = PipelineStage.API_DOCS in stages
    app = FastAPI(
        title=settings.app_name,
        version=service_version(),
        lifespan=_lifespan(telemetry),
        openapi_url=OPENAPI_PATH if api_docs else None,
        docs_url=None,
        redoc_url=None,
    )
    app.state.settings = settings
    app.state.pipeline = stages
    app.state.telemetry = telemetry
    _set_state(app, HostState.CONFIGURING)

    try:
        configure_authentication(app, settings.identity_provider, secrets, auth_options)
        configure_storage(app, settings, secrets, relational_connector, document_client_factory)
    except StartupError:
        logger.exception("Startup aborted.")
        telemetry.shutdown()
        raise

    register_error_handlers(app)
    telemetry.instrument(app)

    # No further services are registered past this point.
    _set_state(app, HostState.BUILDING)

    # Pipeline
    apply_pipeline(app, stages, title=settings.app_name)
    _set_state(app, HostState.PIPELINE_ASSEMBLED)

    return app


def run(host: str = "0.0.0.0", port: int = 8000) -> None:
    """Create the host and serve until the process is stopped."""
    app = create_app()
    # Logging is already routed through OpenTelemetry.
    uvicorn.run(app, host=host, port=port, log_config=None)


if __name__ == "__main__":
    run()
