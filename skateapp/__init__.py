import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .database import init_db
from .notifications import BATCH_SIZE, Mailer, mailer_from_env
from .routes import router
from .storage import DatabaseRosterStore, RosterStore, roster_store_from_env
from .suggestions import Suggester, suggester_from_env

ADMIN_SECRET = os.getenv("ADMIN_SECRET")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):  # pragma: no cover
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = app.state.roster_store
    if isinstance(store, DatabaseRosterStore):
        init_db(store.engine)
    yield


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    return JSONResponse(status_code=400, content={"error": first.get("msg", "Invalid request")})


async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s", request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def create_app(
    *,
    store: RosterStore | None = None,
    mailer: Mailer | None = None,
    suggester: Suggester | None = None,
    admin_secret: str | None = None,
    email_batch_size: int = BATCH_SIZE,
) -> FastAPI:
    """Application factory for the roster service.

    Collaborators default to what the environment configures; tests pass
    their own.
    """
    app = FastAPI(title="SkateApp Roster", lifespan=lifespan)
    app.state.roster_store = store or roster_store_from_env()
    app.state.mailer = mailer if mailer is not None else mailer_from_env()
    app.state.suggester = suggester or suggester_from_env()
    app.state.admin_secret = admin_secret if admin_secret is not None else ADMIN_SECRET
    app.state.email_batch_size = email_batch_size
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)
    app.include_router(router)
    return app


app = create_app()
