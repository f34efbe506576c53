import air
from fastapi import APIRouter
from fastapi import Depends
from fastapi import Response
from fastapi.responses import JSONResponse

from taskboard.csrf import CsrfGuard
from taskboard.csrf import get_csrf_guard
from taskboard.schemas import CsrfTokenRead

router = APIRouter(tags=["csrf"])


@router.get("/csrf-token", response_model=CsrfTokenRead, response_class=JSONResponse)
def csrf_token(
    request: air.Request, response: Response, guard: CsrfGuard = Depends(get_csrf_guard)
):
    """Current token (or a fresh one) plus the header it must be echoed in."""
    token, header = guard.refresh(request, response)
    response.headers["Cache-Control"] = "no-store"
    return CsrfTokenRead(token=token, header=header)
