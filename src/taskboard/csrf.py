"""
Double-submit CSRF protection.

The token lives in an HTTP-only cookie. Browser code never reads the cookie;
it learns the value from ``GET /csrf-token`` and echoes it back in the CSRF
header on every unsafe request. A request is legitimate when it comes from a
trusted origin and the header matches the cookie.
"""
import enum
import logging
import re
import secrets
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlsplit

from fastapi import Request
from fastapi import Response
from fastapi import status
from fastapi.responses import JSONResponse

from taskboard.schemas import CsrfRejection
from taskboard.settings import normalize_origin
from taskboard.settings import settings

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
TOKEN_BYTES = 32
_TOKEN_RE = re.compile(r"[A-Za-z0-9_-]{43}")


class CsrfReason(str, enum.Enum):
    INVALID_ORIGIN = "INVALID_ORIGIN"
    TOKEN_REQUIRED = "TOKEN_REQUIRED"
    HEADER_MISSING = "HEADER_MISSING"
    TOKEN_MISMATCH = "TOKEN_MISMATCH"

    @property
    def message(self) -> str:
        return _MESSAGES[self]

    @property
    def retry(self) -> bool:
        # A cross-site caller cannot fix anything by retrying
        return self is not CsrfReason.INVALID_ORIGIN


_MESSAGES = {
    CsrfReason.INVALID_ORIGIN: "Request origin is not trusted",
    CsrfReason.TOKEN_REQUIRED: "CSRF token missing",
    CsrfReason.HEADER_MISSING: "CSRF header missing",
    CsrfReason.TOKEN_MISMATCH: "Invalid CSRF token",
}


class TokenState(str, enum.Enum):
    UNISSUED = "unissued"
    ISSUED = "issued"
    VALID = "valid"
    INVALIDATED = "invalidated"


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[CsrfReason] = None
    new_token: Optional[str] = None
    clear_cookie: bool = False
    # where this request left the presented token; None when no token was looked at
    state: Optional[TokenState] = None

    @classmethod
    def allow(cls, state: Optional[TokenState] = None) -> "Decision":
        return cls(allowed=True, state=state)

    @classmethod
    def reject(
        cls,
        reason: CsrfReason,
        new_token: Optional[str] = None,
        clear_cookie: bool = False,
        state: Optional[TokenState] = None,
    ) -> "Decision":
        return cls(
            allowed=False,
            reason=reason,
            new_token=new_token,
            clear_cookie=clear_cookie,
            state=state,
        )


def is_safe_method(method: str) -> bool:
    return method.upper() in SAFE_METHODS


def request_origin(request: Request) -> Optional[str]:
    """The origin the request declares: ``Origin``, else the origin of ``Referer``."""
    raw = request.headers.get("origin")
    referer = request.headers.get("referer")
    if not raw and not referer:
        return None
    try:
        if not raw:
            parts = urlsplit(referer)
            raw = f"{parts.scheme}://{parts.netloc}"
        return normalize_origin(raw)
    except ValueError:
        # covers the opaque "null" origin and garbage
        return None


def tokens_match(cookie_token: str, header_token: str) -> bool:
    # compare_digest only accepts ASCII str, so compare the raw bytes
    return secrets.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8"))


def looks_like_token(value: Optional[str]) -> bool:
    return bool(value) and _TOKEN_RE.fullmatch(value) is not None


class CsrfGuard:
    """Issues tokens and decides whether an unsafe request may proceed."""

    def __init__(
        self,
        trusted_origins,
        cookie_name: str = "csrftoken",
        header_name: str = "x-csrf-token",
        max_age: int = 60 * 60 * 24 * 7,
        samesite: str = "lax",
        secure: bool = True,
    ):
        self.trusted_origins = frozenset(normalize_origin(origin) for origin in trusted_origins)
        self.cookie_name = cookie_name
        self.header_name = header_name.lower()
        self.max_age = max_age
        self.samesite = samesite
        self.secure = secure

    @classmethod
    def from_settings(cls, conf) -> "CsrfGuard":
        return cls(
            trusted_origins=conf.trusted_origins,
            cookie_name=conf.csrf_cookie_name,
            header_name=conf.csrf_header_name,
            max_age=conf.csrf_cookie_max_age,
            samesite=conf.csrf_cookie_samesite,
            secure=conf.cookie_secure,
        )

    @staticmethod
    def issue_token() -> str:
        # No fallback: if the OS randomness source fails the request must fail
        return secrets.token_urlsafe(TOKEN_BYTES)

    def attach_token(self, response: Response, token: str) -> None:
        response.set_cookie(
            key=self.cookie_name,
            value=token,
            max_age=self.max_age,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )

    def clear_token(self, response: Response) -> None:
        response.delete_cookie(
            key=self.cookie_name,
            path="/",
            secure=self.secure,
            httponly=True,
            samesite=self.samesite,
        )

    def is_trusted(self, origin: Optional[str]) -> bool:
        return origin is not None and origin in self.trusted_origins

    def validate(self, request: Request) -> Decision:
        if is_safe_method(request.method):
            return Decision.allow()

        # Origin first: nothing below may hand a token to a cross-site caller
        origin = request_origin(request)
        if not self.is_trusted(origin):
            logger.warning(
                f"CSRF: rejected {request.method} {request.url.path} from untrusted origin "
                f"{request.headers.get('origin') or request.headers.get('referer')!r}"
            )
            return Decision.reject(CsrfReason.INVALID_ORIGIN)

        cookie_token = request.cookies.get(self.cookie_name)
        if not cookie_token:
            new_token = self.issue_token()
            logger.info(f"CSRF: no token cookie on {request.method} {request.url.path}, issued one")
            return Decision.reject(
                CsrfReason.TOKEN_REQUIRED, new_token=new_token, state=TokenState.ISSUED
            )

        header_token = request.headers.get(self.header_name)
        if not header_token:
            return Decision.reject(CsrfReason.HEADER_MISSING, state=TokenState.ISSUED)

        if not tokens_match(cookie_token, header_token):
            logger.info(f"CSRF: token mismatch on {request.method} {request.url.path}")
            return Decision.reject(
                CsrfReason.TOKEN_MISMATCH, clear_cookie=True, state=TokenState.INVALIDATED
            )

        return Decision.allow(state=TokenState.VALID)

    def rejection_response(self, decision: Decision) -> JSONResponse:
        reason = decision.reason
        body = CsrfRejection(error=reason.message, code=reason.value, retry=reason.retry)
        response = JSONResponse(
            body.model_dump(),
            status_code=status.HTTP_403_FORBIDDEN,
        )
        if decision.new_token:
            self.attach_token(response, decision.new_token)
        elif decision.clear_cookie:
            self.clear_token(response)
        return response

    def refresh(self, request: Request, response: Response) -> tuple[str, str]:
        """Return ``(token, header_name)``, reusing the cookie token when it is well formed."""
        token = request.cookies.get(self.cookie_name)
        if not looks_like_token(token):
            token = self.issue_token()
            self.attach_token(response, token)
        return token, self.header_name


csrf_guard = CsrfGuard.from_settings(settings)


def get_csrf_guard() -> CsrfGuard:
    return csrf_guard
