"""Main FastAPI application entry point."""
import logging

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.database import engine, Base
from app.api.routes import router
from app.services.store import RequestLocks
# Import models to register them with SQLAlchemy Base
from app.models.domain import ActivationRequest, VerificationAttempt, EmergencyAccessToken, AccessLog
from app.models.audit import AuditEntry

settings = get_settings()

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger(__name__)


def warn_if_jwt_secret_generated(settings) -> None:
    """Warn when JWT_SECRET falls back to a per-process value."""
    if settings.jwt_secret_generated:
        logger.warning("Using auto-generated JWT secret. Set EMERGENCY_JWT_SECRET for production!")


warn_if_jwt_secret_generated(settings)

# Create database tables
Base.metadata.create_all(bind=engine)

# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    description="Emergency activation: verified, time-boxed, audited access to a user's protected information.",
    version=settings.APP_VERSION
)

# One lock registry per process, shared by every request handler
app.state.request_locks = RequestLocks()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Malformed bodies and query strings use the same error envelope as the handlers."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    logger.info("Rejected %s %s: %s", request.method, request.url.path, exc.errors())
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"success": False, "error": f"{location}: {message}" if location else message}
    )


# Include API routes
app.include_router(router, prefix="/api", tags=["Emergency Activation"])


# Health check
@app.get("/health")
def health_check():
    return {"status": "healthy", "service": settings.APP_NAME}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
