import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from app.core.logging import configure_logging
from app.core.settings import settings, validate_settings
from app.db.session import engine
from app.models import Base
from app.routers.audit import router as audit_router
from app.routers.invoices import patient_invoices_router, router as invoices_router
from app.routers.me import router as me_router
from app.routers.patients import router as patients_router
from app.routers.payment_methods import router as payment_methods_router
from app.routers.soap_notes import patient_notes_router, router as soap_notes_router
from app.routers.webhooks import router as webhooks_router

API_PREFIX = "/api/v1"

configure_logging(settings.log_level)

app = FastAPI(title="EONMeds API", version="0.1.0")
logger = logging.getLogger("eonmeds.startup")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.warning("Integrity error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=409, content={"detail": "Resource already exists"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)
    logger.info("API started (env=%s, auth_mode=%s)", settings.app_env, settings.auth_mode)


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(me_router, prefix=API_PREFIX)
app.include_router(patients_router, prefix=API_PREFIX)
app.include_router(patient_invoices_router, prefix=API_PREFIX)
app.include_router(patient_notes_router, prefix=API_PREFIX)
app.include_router(invoices_router, prefix=API_PREFIX)
app.include_router(payment_methods_router, prefix=API_PREFIX)
app.include_router(soap_notes_router, prefix=API_PREFIX)
app.include_router(webhooks_router, prefix=API_PREFIX)
app.include_router(audit_router, prefix=API_PREFIX)
