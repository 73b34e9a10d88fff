"""
Request pipeline assembly.

``build_pipeline`` is a pure function from the environment name to the
ordered list of stages; ``apply_pipeline`` maps that list onto the
FastAPI app so that the first stage is the outermost layer.

Development only adds stages (error page, HSTS, API docs); the shared
tail is identical in every environment.
"""

import enum
import logging
from pathlib import Path

from fastapi import Depends, FastAPI, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import HTMLResponse
from fastapi.staticfiles import StaticFiles
from starlette.middleware.authentication import AuthenticationMiddleware
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.middleware.httpsredirect import HTTPSRedirectMiddleware
from starlette.middleware.sessions import SessionMiddleware

from practice_web.auth import SESSION_COOKIE, SessionAuthBackend, require_user
from practice_web.auth import router as auth_router
from practice_web.correlation import CorrelationIdMiddleware
from practice_web.routes.health import router as health_router
from practice_web.routes.pages import error_router, render_error_page
from practice_web.routes.pages import router as pages_router
from practice_web.routes.storage import router as storage_router

logger = logging.getLogger(__name__)

DEVELOPMENT = "development"
HSTS_MAX_AGE = 30 * 24 * 60 * 60
STATIC_DIR = Path(__file__).parent / "static"
SWAGGER_PATH = "/swagger"
OPENAPI_PATH = "/swagger/v1/swagger.json"


class PipelineStage(str, enum.Enum):
    EXCEPTION_PAGE = "exception_page"
    HSTS = "hsts"
    API_DOCS = "api_docs"
    HTTPS_REDIRECT = "https_redirect"
    STATIC_FILES = "static_files"
    ROUTING = "routing"
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    CONTROLLERS = "controllers"
    PAGES = "pages"
    CORRELATION_ID = "correlation_id"


DEVELOPMENT_STAGES = (
    PipelineStage.EXCEPTION_PAGE,
    PipelineStage.HSTS,
    PipelineStage.API_DOCS,
)

COMMON_STAGES = (
    PipelineStage.HTTPS_REDIRECT,
    PipelineStage.STATIC_FILES,
    PipelineStage.ROUTING,
    PipelineStage.AUTHENTICATION,
    PipelineStage.AUTHORIZATION,
    PipelineStage.CONTROLLERS,
    PipelineStage.PAGES,
    PipelineStage.CORRELATION_ID,
)


def is_development(environment: str) -> bool:
    return environment.lower() == DEVELOPMENT


def build_pipeline(environment: str) -> tuple[PipelineStage, ...]:
    """Ordered request pipeline for *environment*."""
    if is_development(environment):
        return DEVELOPMENT_STAGES + COMMON_STAGES
    return COMMON_STAGES


class HSTSMiddleware(BaseHTTPMiddleware):
    """Sends ``Strict-Transport-Security`` on secure responses."""

    def __init__(self, app, max_age: int = HSTS_MAX_AGE):
        super().__init__(app)
        self.header_value = f"max-age={max_age}"

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = self.header_value
        return response


async def exception_page_handler(request: Request, exc: Exception) -> HTMLResponse:
    """Development error page for unhandled exceptions."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return render_error_page(request, status_code=500)


def _add_api_docs(app: FastAPI, title: str) -> None:
    @app.get(SWAGGER_PATH, include_in_schema=False)
    async def swagger_ui() -> HTMLResponse:
        return get_swagger_ui_html(openapi_url=OPENAPI_PATH, title=title)


def apply_pipeline(app: FastAPI, stages: tuple[PipelineStage, ...], title: str) -> None:
    """
    Install *stages* on *app*, first stage outermost.

    ``app`` must have been built with its OpenAPI schema at
    ``OPENAPI_PATH`` when ``API_DOCS`` is present.
    """
    middleware = []
    for stage in stages:
        if stage is PipelineStage.EXCEPTION_PAGE:
            app.add_exception_handler(Exception, exception_page_handler)
            app.include_router(error_router)
        elif stage is PipelineStage.HSTS:
            middleware.append((HSTSMiddleware, {}))
        elif stage is PipelineStage.API_DOCS:
            _add_api_docs(app, title)
        elif stage is PipelineStage.HTTPS_REDIRECT:
            middleware.append((HTTPSRedirectMiddleware, {}))
        elif stage is PipelineStage.STATIC_FILES:
            app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
        elif stage is PipelineStage.ROUTING:
            # Starlette's router; nothing to install.
            pass
        elif stage is PipelineStage.AUTHENTICATION:
            middleware.append((SessionMiddleware, {
                "secret_key": app.state.session_secret,
                "session_cookie": SESSION_COOKIE,
                "same_site": "lax",
                "https_only": True,
            }))
            middleware.append((AuthenticationMiddleware, {"backend": SessionAuthBackend()}))
            app.include_router(auth_router)
        elif stage is PipelineStage.AUTHORIZATION:
            # Enforced per router below: pages require a principal.
            pass
        elif stage is PipelineStage.CONTROLLERS:
            app.include_router(health_router)
            app.include_router(storage_router, prefix="/api/v1")
        elif stage is PipelineStage.PAGES:
            dependencies = []
            if PipelineStage.AUTHORIZATION in stages:
                dependencies.append(Depends(require_user))
            app.include_router(pages_router, dependencies=dependencies)
        elif stage is PipelineStage.CORRELATION_ID:
            middleware.append((CorrelationIdMiddleware, {}))

    # add_middleware makes its argument the outermost layer.
    for middleware_class, options in reversed(middleware):
        app.add_middleware(middleware_class, **options)

    logger.info("Pipeline assembled: %s", " -> ".join(stage.value for stage in stages))
