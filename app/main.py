from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from app.api.v1.fee_balances.router import router as fee_balances_router
from app.api.v1.fee_structures.router import router as fee_structures_router
from app.api.v1.payments.router import router as payments_router
from app.api.v1.reservations.router import router as reservations_router
from app.core.config import settings
from app.core.exceptions import ServiceError, service_error_handler, validation_exception_handler
from app.core.logging import ObservabilityMiddleware, configure_logging
from app.db.session import dispose_engine, init_models


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.auto_create_tables:
        await init_models()
    yield
    await dispose_engine()


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="Fee Ledger", lifespan=lifespan)

    # CORS: allow the admin console to call this API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(ObservabilityMiddleware)

    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)

    # Routers
    app.include_router(fee_structures_router)
    app.include_router(fee_balances_router)
    app.include_router(payments_router)
    app.include_router(reservations_router)

    return app


app = create_app()
