from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.api import collections, cycles, loans, members, savings
from app.core.config import settings
from app.core.errors import (
    ConflictError,
    InsufficientPoolError,
    LedgerError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from app.db.base import init_db
import logging

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

# Get logger for this module
logger = logging.getLogger(__name__)
logger.info("Starting ROSCA Ledger API")

# Most specific first; DuplicatePaymentError is a ConflictError
ERROR_STATUS_CODES = [
    (ValidationError, 400),
    (InsufficientPoolError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (PersistenceError, 503),
]


def status_code_for(exc: LedgerError) -> int:
    for kind, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, kind):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="ROSCA Ledger API",
    description="Rotating savings and credit association ledger",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=status_code, content={"detail": exc.message, **exc.payload})


# Include routers
app.include_router(members.router)
app.include_router(cycles.router)
app.include_router(collections.router)
app.include_router(loans.router)
app.include_router(savings.router)


@app.get("/")
def root():
    """Root endpoint."""
    return {"message": "ROSCA Ledger API", "version": "1.0.0"}


@app.get("/api/health")
def health():
    return {"status": "ok"}
