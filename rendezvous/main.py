from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from dotenv import load_dotenv

load_dotenv()

from rendezvous.core.logging import setup_logging
from rendezvous.core.init_db import init_db
from rendezvous.core.errors import PersistenceFailure, RendezvousError
from rendezvous.modules.connections.routes import router as connections_router
from rendezvous.modules.conversations.routes import router as chat_router
from rendezvous.modules.notifications.router import router as notifications_router
from rendezvous.modules.realtime.router import router as realtime_router

setup_logging()
logger.info("Starting Rendezvous backend")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Init DB once the app is up
    init_db()
    yield


app = FastAPI(
    title="Rendezvous Backend",
    version="0.1.0",
    lifespan=lifespan,
)


# ---------------------------
# Error mapping
# ---------------------------

async def rendezvous_error_handler(request: Request, exc: RendezvousError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def persistence_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception(f"{request.method} {request.url.path} storage error")
    return JSONResponse(status_code=503, content=PersistenceFailure().to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "message": "Validation failed",
            "details": jsonable_errors(exc),
        },
    )


def jsonable_errors(exc: RequestValidationError) -> list:
    return [
        {"loc": list(err.get("loc", ())), "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]


app.add_exception_handler(RendezvousError, rendezvous_error_handler)
app.add_exception_handler(SQLAlchemyError, persistence_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)

# Connections module
app.include_router(connections_router)
app.include_router(chat_router)
app.include_router(notifications_router)
# Live channel (chat relay + call signaling)
app.include_router(realtime_router)


@app.get("/health")
def health():
    logger.debug("Health check hit")
    return {"status": "ok"}
