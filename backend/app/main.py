from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from app.api.routes import router as api_router
from app.core.config import Settings, get_settings
from app.core.errors import AuthRequired, ServiceError, StorageError
from app.core.logging_config import get_logger, setup_logging
from app.core.request_meta import extract_bearer_token, resolve_request_identity
from app.core.security import JwtAuthenticator
from app.db.base import Base
from app.db.datastore import SqlAlchemyDatastore
from app.db.session import SessionLocal, engine
from app.services.privilege_service import PrivilegeService
from app.services.rate_limit_service import (
    RateLimitService,
    RateLimitTier,
    build_rate_limit_service,
)

logger = get_logger(__name__)


class ApiRateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        *,
        rate_limit_service: RateLimitService,
        settings: Settings,
        privileges: PrivilegeService,
    ) -> None:
        super().__init__(app)
        self._rate_limit_service = rate_limit_service
        self._settings = settings
        self._privileges = privileges
        self._authenticator = JwtAuthenticator(settings)

    def _tier_for(self, request: Request) -> RateLimitTier:
        token = extract_bearer_token(request.headers)
        if not token:
            return RateLimitTier.STANDARD
        try:
            user = self._authenticator.verify(token)
            elevated = self._privileges.is_elevated(user.email)
        except (AuthRequired, StorageError):
            return RateLimitTier.STANDARD
        return RateLimitTier.ELEVATED if elevated else RateLimitTier.STANDARD

    async def dispatch(self, request, call_next):
        if not self._settings.rate_limit_enabled or request.method == "OPTIONS":
            return await call_next(request)

        if request.url.path.endswith("/health"):
            return await call_next(request)

        identity = resolve_request_identity(request)
        decision = self._rate_limit_service.check(identity, self._tier_for(request))
        headers = {
            "X-RateLimit-Limit": str(decision.limit),
            "X-RateLimit-Remaining": str(decision.remaining),
            "X-RateLimit-Reset": str(int(decision.reset_at)),
        }
        if not decision.allowed:
            headers["Retry-After"] = str(decision.retry_after_seconds)
            return JSONResponse(
                status_code=429,
                content={"detail": "Rate limit exceeded", "code": "rate_limited"},
                headers=headers,
            )

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    if isinstance(exc, StorageError):
        logger.error("storage_error", path=request.url.path, error=exc.message)
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": "Internal server error", "code": exc.code},
        )
    headers = {"WWW-Authenticate": "Bearer"} if isinstance(exc, AuthRequired) else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


def create_app(
    settings: Settings | None = None,
    *,
    rate_limit_service: RateLimitService | None = None,
    privileges: PrivilegeService | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    api_app = FastAPI(title=settings.app_name, debug=settings.debug)
    api_app.state.rate_limit_service = rate_limit_service or build_rate_limit_service(settings)

    api_app.add_exception_handler(ServiceError, service_error_handler)
    api_app.add_middleware(
        ApiRateLimitMiddleware,
        rate_limit_service=api_app.state.rate_limit_service,
        settings=settings,
        privileges=privileges or PrivilegeService(SqlAlchemyDatastore(SessionLocal)),
    )
    api_app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    api_app.include_router(api_router, prefix=settings.api_prefix)
    return api_app


setup_logging()
app = create_app()


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
