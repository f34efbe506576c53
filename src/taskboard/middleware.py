from starlette.middleware.base import BaseHTTPMiddleware

from taskboard.csrf import CsrfGuard

protected_prefixes = [
    "/api/tasks",
]


class CsrfProtectMiddleware(BaseHTTPMiddleware):
    """Runs every request under a protected prefix through ``CsrfGuard.validate``."""

    def __init__(self, app, guard: CsrfGuard, prefixes=None):
        super().__init__(app)
        self.guard = guard
        self.prefixes = tuple(prefixes if prefixes is not None else protected_prefixes)

    async def dispatch(self, request, call_next):
        if request.url.path.startswith(self.prefixes):
            decision = self.guard.validate(request)
            if not decision.allowed:
                return self.guard.rejection_response(decision)
        return await call_next(request)
