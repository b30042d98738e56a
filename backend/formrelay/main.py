"""
Mach Five Wheels form relay.
FastAPI application that turns website form submissions into email.
"""

import logging
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from formrelay.config import MailConfigError, get_app_settings, get_mail_settings
from formrelay.routers import mail

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Mach Five Wheels Form Relay",
    description="Relays dealer applications and contact requests to the crew inbox",
    version="0.1.0",
)


def get_cors_origins() -> List[str]:
    """
    Build the list of allowed CORS origins.

    Always includes the local static-site dev servers; extra origins come
    from the CORS_ORIGINS environment variable (comma separated), e.g.:
        CORS_ORIGINS=https://machfivewheels.com,https://www.machfivewheels.com

    Duplicates are removed while preserving order.
    """
    always_included = [
        "http://localhost:3000",
        "http://localhost:8080",
    ]
    seen: set = set()
    origins: List[str] = []
    for origin in always_included + get_app_settings().cors_origins:
        if origin not in seen:
            seen.add(origin)
            origins.append(origin)
    return origins


app.add_middleware(
    CORSMiddleware,
    allow_origins=get_cors_origins(),
    allow_methods=["POST"],
    allow_headers=["*"],
)

app.include_router(mail.router, prefix="/api", tags=["mail"])
app.add_exception_handler(StarletteHTTPException, mail.method_not_allowed_handler)


@app.on_event("startup")
async def log_mail_transport() -> None:
    """Log which mail transport will be used, or warn that none is usable."""
    try:
        settings = get_mail_settings()
    except MailConfigError as exc:
        logger.warning(
            "Mail transport not configured (%s); submissions will be answered with 500",
            exc.message,
        )
        return
    logger.info(
        "Form relay sending via %s to %s", settings.provider, settings.to_email
    )


@app.get("/health")
async def health():
    return {"status": "ok"}
