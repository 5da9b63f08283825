import logging
import sys

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from careloop.core.config import settings
from careloop.core.errors import CareLoopError

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)
from careloop.domains.episodes.router import router as episodes_router
from careloop.domains.escalations.router import router as escalations_router
from careloop.domains.jobs.router import router as operations_router
from careloop.domains.notifications.router import router as notifications_router
from careloop.domains.outreach.router import router as outreach_router
from careloop.domains.protocols.router import router as protocols_router
from careloop.domains.risk.router import router as checkins_router
from careloop.domains.users.router import router as users_router

app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(CareLoopError)
async def careloop_error_handler(request: Request, exc: CareLoopError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


# Health check endpoint
@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# Domain routers
app.include_router(
    episodes_router,
    prefix=f"{settings.API_V1_PREFIX}/episodes",
    tags=["episodes"],
)
app.include_router(
    outreach_router,
    prefix=f"{settings.API_V1_PREFIX}/outreach",
    tags=["outreach"],
)
app.include_router(
    escalations_router,
    prefix=f"{settings.API_V1_PREFIX}/escalations",
    tags=["escalations"],
)
app.include_router(
    protocols_router,
    prefix=f"{settings.API_V1_PREFIX}/protocols",
    tags=["protocols"],
)
app.include_router(
    notifications_router,
    prefix=f"{settings.API_V1_PREFIX}/notifications",
    tags=["notifications"],
)
app.include_router(
    checkins_router,
    prefix=f"{settings.API_V1_PREFIX}/checkins",
    tags=["checkins"],
)
app.include_router(
    users_router,
    prefix=f"{settings.API_V1_PREFIX}/users",
    tags=["users"],
)
app.include_router(
    operations_router,
    prefix=f"{settings.API_V1_PREFIX}/operations",
    tags=["operations"],
)
