from fastapi import FastAPI, Depends, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from fastapi.openapi.utils import get_openapi
import time
import uuid
import logging

from sqlalchemy import text
from sqlalchemy.orm import Session

from lending.api.v1.dependencies import get_db
from lending.api.v1.endpoints import history, items, loans, maintenance, reservations
from lending.db.session import SessionLocal
from lending.services.reservation_service import expire_reservations
from lending.core.config import settings
from lending.core.errors import LendingError
from lending.core.logging import configure_logging, get_logger, request_id_ctx, user_id_ctx


# Configurar logging global al arrancar el módulo
configure_logging()
request_logger = get_logger("api.request")
error_logger = get_logger("api.errors")

app = FastAPI(
    title="Item Lending API",
    version="1.0.0",
)

# Routers de la API
app.include_router(items.router)
app.include_router(loans.router)
app.include_router(reservations.router)
app.include_router(history.router)
app.include_router(maintenance.router)


@app.on_event("startup")
def startup_event():
    if not settings.EXPIRE_RESERVATIONS_ON_STARTUP:
        return

    db = SessionLocal()
    try:
        expire_reservations(db)
    finally:
        db.close()


@app.exception_handler(LendingError)
async def lending_error_handler(request: Request, exc: LendingError):
    """
    Traduce los errores del dominio a JSON con `error`, `kind` y `details`
    (para conflictos, la lista de registros con los que choca).
    """
    error_logger.info(
        "request_rejected",
        extra={
            "method": request.method,
            "path": request.url.path,
            "status_code": exc.status_code,
            "kind": exc.kind,
            "reason": exc.message,
        },
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=jsonable_encoder(exc.to_dict()),
    )


def _request_fields(request: Request, request_id: str, status_code: int, started: float) -> dict:
    return {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status_code": status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        "client_host": request.client.host if request.client else None,
    }


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    """
    Propaga X-Request-ID (o genera uno), limpia el usuario del contexto
    y deja un `request_completed` por petición. Las lentas salen en WARNING.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    started = time.perf_counter()

    request.state.request_id = request_id
    request_id_ctx.set(request_id)
    user_id_ctx.set(None)

    try:
        response: Response = await call_next(request)
    except Exception:
        request_logger.error(
            "unhandled_exception",
            extra=_request_fields(request, request_id, 500, started),
            exc_info=True,
        )
        raise

    response.headers["X-Request-ID"] = request_id
    fields = _request_fields(request, request_id, response.status_code, started)

    level = logging.INFO
    if fields["duration_ms"] > settings.SLOW_REQUEST_THRESHOLD_MS:
        level = logging.WARNING
    request_logger.log(level, "request_completed", extra=fields)

    return response


@app.get("/")
def root():
    return {"message": "Lending API running"}


@app.get("/health/db")
def health_db(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


def custom_openapi():
    """
    Declara el esquema Bearer para que Swagger muestre 'Authorize'.

    No aplicamos seguridad global: cada endpoint que use get_current_user
    tendrá su propia sección de seguridad.
    """
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title="Item Lending API",
        version="1.0.0",
        routes=app.routes,
    )

    components = openapi_schema.setdefault("components", {})
    security_schemes = components.setdefault("securitySchemes", {})
    security_schemes["OAuth2PasswordBearer"] = {
        "type": "http",
        "scheme": "bearer",
        "bearerFormat": "JWT",
    }

    app.openapi_schema = openapi_schema
    return app.openapi_schema


app.openapi = custom_openapi
