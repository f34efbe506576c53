import logging

import air
from air.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from taskboard.csrf import csrf_guard
from taskboard.errors import register_error_handlers
from taskboard.logging_config import setup_logging
from taskboard.middleware import CsrfProtectMiddleware
from taskboard.routes.csrf import router as csrf_router
from taskboard.routes.tasks import router as task_router
from taskboard.settings import settings

setup_logging(settings.log_level)
logger = logging.getLogger(__name__)


app = air.Air()

register_error_handlers(app)
app.include_router(csrf_router)
app.include_router(task_router)

# Added first so it runs inside CORS; preflights never reach it
app.add_middleware(CsrfProtectMiddleware, guard=csrf_guard)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.trusted_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["content-type", settings.csrf_header_name],
)

logger.info(
    f"CSRF protection on for origins {settings.trusted_origins} "
    f"(cookie={settings.csrf_cookie_name}, secure={settings.cookie_secure})"
)


@app.get("/health")
def health():
    return JSONResponse({"status": "ok"})
