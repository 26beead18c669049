import sqlite3
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from config import get_settings
from contact_store import ContactStore, to_local_naive
from db_models import (
    AddContactRequest,
    AddContactResponse,
    FinalResponse,
    IdentifyRequest,
    LinkPrecedence,
)
from errors import InvariantViolationError, StoreUnavailableError, TransientStoreError
from identity_service import IdentityService
from logger import configure_logging, get_logger


def create_app(settings=None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings.log_level, settings.log_format)
    logger = get_logger()

    store = ContactStore(settings.database_path, settings.busy_timeout_seconds)
    service = IdentityService(
        store,
        max_retries=settings.identify_max_retries,
        base_delay=settings.retry_base_delay,
        max_delay=settings.retry_max_delay,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store.init_db()
        logger.info("Contact store ready", database=settings.database_path)
        yield
        logger.info("Shutting down")

    app = FastAPI(
        title="Bitespeed Contact Reconciliation API",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.store = store
    app.state.service = service

    @app.exception_handler(RequestValidationError)
    async def validation_error(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = "Invalid request body"
        if errors:
            error = errors[0]
            message = str(error.get("ctx", {}).get("error", error["msg"]))
        return JSONResponse(status_code=400, content={"error": "Bad Request", "message": message})

    @app.exception_handler(InvariantViolationError)
    async def invariant_error(request: Request, exc: InvariantViolationError):
        logger.critical("Contact invariant violated", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=500,
            content={"error": "Internal Server Error", "message": "Contact data is inconsistent"},
        )

    @app.exception_handler(StoreUnavailableError)
    @app.exception_handler(TransientStoreError)
    async def unavailable_error(request: Request, exc: Exception):
        logger.warning("Contact store unavailable", error=str(exc), path=request.url.path)
        return JSONResponse(
            status_code=503,
            content={"error": "Service Unavailable", "message": "Contact store is busy, try again"},
        )

    @app.get("/")
    async def root():
        return {"message": "Bitespeed API is up"}

    @app.get("/health")
    async def health():
        return {"status": "OK", "timestamp": datetime.now().isoformat()}

    @app.post("/identify", response_model=FinalResponse)
    def identify(request: IdentifyRequest):
        contact = service.identify(request.email, request.phoneNumber)
        return FinalResponse(contact=contact)

    @app.post("/add-contact", response_model=AddContactResponse)
    def add_contact(request: AddContactRequest):
        """Insert a contact with explicit fields, e.g. to seed or back-fill data."""
        with store.transaction() as session:
            if request.linkPrecedence == LinkPrecedence.SECONDARY:
                primary = session.get_contact(request.linkedId)
                if primary is None or primary.deletedAt is not None or not primary.is_primary:
                    raise HTTPException(
                        status_code=400,
                        detail="linkedId must reference a live primary contact",
                    )
                if request.createdAt is not None and to_local_naive(request.createdAt) < primary.createdAt:
                    raise HTTPException(
                        status_code=400,
                        detail="createdAt cannot precede the linked primary contact",
                    )
            try:
                contact = session.create_contact(
                    email=request.email,
                    phone=request.phoneNumber,
                    linked_id=request.linkedId,
                    precedence=request.linkPrecedence,
                    created_at=request.createdAt,
                    contact_id=request.id,
                )
            except sqlite3.IntegrityError:
                raise HTTPException(status_code=409, detail=f"Contact {request.id} already exists")

        logger.info("Added contact", contact_id=contact.id, precedence=contact.linkPrecedence.value)
        return AddContactResponse(message="Contact added successfully", contact_id=contact.id)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
