import secrets

import pytest
from starlette.requests import Request
from starlette.responses import Response

from taskboard import csrf as csrf_module
from taskboard.csrf import CsrfGuard
from taskboard.csrf import CsrfReason
from taskboard.csrf import looks_like_token
from taskboard.csrf import request_origin
from taskboard.csrf import TokenState

TRUSTED = "https://app.example"


def make_request(method="POST", headers=None, cookies=None, path="/api/tasks"):
    raw = [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()]
    if cookies:
        cookie_header = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw.append((b"cookie", cookie_header.encode("latin-1")))
    scope = {
        "type": "http",
        "method": method,
        "path": path,
        "root_path": "",
        "scheme": "http",
        "server": ("testserver", 80),
        "query_string": b"",
        "headers": raw,
    }
    return Request(scope)


@pytest.fixture
def guard():
    return CsrfGuard(trusted_origins=[TRUSTED], secure=False)


@pytest.fixture
def token(guard):
    return guard.issue_token()


class TestSafeMethods:
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "TRACE", "get"])
    @pytest.mark.parametrize(
        "headers,cookies",
        [
            ({}, None),
            ({"Origin": "https://evil.example"}, None),
            ({"x-csrf-token": "a" * 43}, {"csrftoken": "b" * 43}),
        ],
    )
    def test_always_allowed(self, guard, method, headers, cookies):
        decision = guard.validate(make_request(method, headers, cookies))
        assert decision.allowed
        assert decision.new_token is None
        assert not decision.clear_cookie


class TestOrigin:
    def test_untrusted_origin_rejected_even_with_matching_tokens(self, guard, token):
        request = make_request(
            headers={"Origin": "https://evil.example", "x-csrf-token": token},
            cookies={"csrftoken": token},
        )
        decision = guard.validate(request)
        assert not decision.allowed
        assert decision.reason is CsrfReason.INVALID_ORIGIN
        assert decision.new_token is None

    @pytest.mark.parametrize(
        "origin",
        [
            "https://app.example.evil.com",
            "https://evilapp.example",
            "http://app.example",
            "https://app.example:8443",
            "null",
            "not a url",
        ],
    )
    def test_only_exact_origin_is_trusted(self, guard, token, origin):
        request = make_request(
            headers={"Origin": origin, "x-csrf-token": token}, cookies={"csrftoken": token}
        )
        assert guard.validate(request).reason is CsrfReason.INVALID_ORIGIN

    def test_missing_origin_and_referer_is_rejected(self, guard, token):
        request = make_request(headers={"x-csrf-token": token}, cookies={"csrftoken": token})
        assert guard.validate(request).reason is CsrfReason.INVALID_ORIGIN

    def test_referer_is_used_when_origin_is_absent(self, guard, token):
        request = make_request(
            headers={"Referer": "https://app.example/tasks?page=2", "x-csrf-token": token},
            cookies={"csrftoken": token},
        )
        assert guard.validate(request).allowed

    @pytest.mark.parametrize(
        "referer", ["https://[app.example/x", "https://app.example:99999/", "null"]
    )
    def test_unparsable_referer_is_rejected(self, guard, token, referer):
        request = make_request(
            headers={"Referer": referer, "x-csrf-token": token}, cookies={"csrftoken": token}
        )
        decision = guard.validate(request)
        assert decision.reason is CsrfReason.INVALID_ORIGIN
        assert decision.new_token is None

    def test_referer_with_trusted_host_in_path_is_rejected(self, guard, token):
        request = make_request(
            headers={"Referer": "https://evil.example/https://app.example", "x-csrf-token": token},
            cookies={"csrftoken": token},
        )
        assert guard.validate(request).reason is CsrfReason.INVALID_ORIGIN

    def test_origin_spelling_is_normalized(self, guard, token):
        request = make_request(
            headers={"Origin": "HTTPS://App.Example:443", "x-csrf-token": token},
            cookies={"csrftoken": token},
        )
        assert guard.validate(request).allowed

    def test_untrusted_origin_without_cookie_gets_no_token(self, guard):
        decision = guard.validate(make_request(headers={"Origin": "https://evil.example"}))
        assert decision.reason is CsrfReason.INVALID_ORIGIN
        assert decision.new_token is None

    def test_request_origin_prefers_origin_header(self):
        request = make_request(
            headers={"Origin": "https://app.example", "Referer": "https://other.example/x"}
        )
        assert request_origin(request) == "https://app.example"


class TestTokenChecks:
    def test_missing_cookie_issues_new_token(self, guard):
        decision = guard.validate(make_request(headers={"Origin": TRUSTED}))
        assert decision.reason is CsrfReason.TOKEN_REQUIRED
        assert looks_like_token(decision.new_token)
        assert decision.state is TokenState.ISSUED

    def test_missing_cookie_tokens_are_fresh_each_time(self, guard):
        seen = {guard.validate(make_request(headers={"Origin": TRUSTED})).new_token for _ in range(20)}
        assert len(seen) == 20

    def test_missing_header(self, guard, token):
        decision = guard.validate(make_request(headers={"Origin": TRUSTED}, cookies={"csrftoken": token}))
        assert decision.reason is CsrfReason.HEADER_MISSING
        assert decision.new_token is None
        assert not decision.clear_cookie

    def test_mismatch_clears_cookie_without_replacement(self, guard, token):
        other = guard.issue_token()
        request = make_request(
            headers={"Origin": TRUSTED, "x-csrf-token": other}, cookies={"csrftoken": token}
        )
        decision = guard.validate(request)
        assert decision.reason is CsrfReason.TOKEN_MISMATCH
        assert decision.clear_cookie
        assert decision.new_token is None
        assert decision.state is TokenState.INVALIDATED

    def test_different_length_header_is_a_mismatch(self, guard, token):
        request = make_request(
            headers={"Origin": TRUSTED, "x-csrf-token": token[:-1]}, cookies={"csrftoken": token}
        )
        assert guard.validate(request).reason is CsrfReason.TOKEN_MISMATCH

    def test_matching_tokens_allowed(self, guard, token):
        request = make_request(
            "DELETE", headers={"Origin": TRUSTED, "X-CSRF-Token": token}, cookies={"csrftoken": token}
        )
        decision = guard.validate(request)
        assert decision.allowed
        assert decision.state is TokenState.VALID

    def test_comparison_is_constant_time(self, guard, token, monkeypatch):
        calls = []
        real = secrets.compare_digest

        def spy(a, b):
            calls.append((a, b))
            return real(a, b)

        monkeypatch.setattr(csrf_module.secrets, "compare_digest", spy)
        request = make_request(
            headers={"Origin": TRUSTED, "x-csrf-token": "x" + token[1:]}, cookies={"csrftoken": token}
        )
        guard.validate(request)
        assert calls == [(token.encode(), ("x" + token[1:]).encode())]

    def test_custom_names(self, token):
        guard = CsrfGuard([TRUSTED], cookie_name="tb_csrf", header_name="X-Task-CSRF")
        request = make_request(
            headers={"Origin": TRUSTED, "x-task-csrf": token}, cookies={"tb_csrf": token}
        )
        assert guard.validate(request).allowed


class TestResponses:
    def test_token_required_response_sets_http_only_cookie(self, guard):
        decision = guard.validate(make_request(headers={"Origin": TRUSTED}))
        response = guard.rejection_response(decision)
        assert response.status_code == 403
        cookie = response.headers["set-cookie"]
        assert cookie.startswith(f"csrftoken={decision.new_token};")
        assert "HttpOnly" in cookie
        assert "Path=/" in cookie
        assert "SameSite=lax" in cookie
        assert "Secure" not in cookie

    def test_mismatch_response_expires_cookie(self, guard, token):
        request = make_request(
            headers={"Origin": TRUSTED, "x-csrf-token": guard.issue_token()},
            cookies={"csrftoken": token},
        )
        response = guard.rejection_response(guard.validate(request))
        assert "Max-Age=0" in response.headers["set-cookie"]
        assert b'"code":"TOKEN_MISMATCH"' in response.body

    def test_invalid_origin_response_sets_no_cookie(self, guard):
        decision = guard.validate(make_request(headers={"Origin": "https://evil.example"}))
        response = guard.rejection_response(decision)
        assert "set-cookie" not in response.headers
        assert b'"retry":false' in response.body

    def test_secure_guard_marks_cookie_secure(self, token):
        guard = CsrfGuard([TRUSTED], secure=True, samesite="none")
        response = Response()
        guard.attach_token(response, token)
        cookie = response.headers["set-cookie"]
        assert "Secure" in cookie
        assert "SameSite=none" in cookie


class TestRefresh:
    def test_reuses_well_formed_cookie(self, guard, token):
        response = Response()
        assert guard.refresh(make_request("GET", cookies={"csrftoken": token}), response) == (
            token,
            "x-csrf-token",
        )
        assert "set-cookie" not in response.headers

    @pytest.mark.parametrize("cookie", [None, "short", "!" * 43])
    def test_issues_when_missing_or_malformed(self, guard, cookie):
        response = Response()
        cookies = {"csrftoken": cookie} if cookie else None
        token, header = guard.refresh(make_request("GET", cookies=cookies), response)
        assert looks_like_token(token)
        assert token != cookie
        assert header == "x-csrf-token"
        assert response.headers["set-cookie"].startswith(f"csrftoken={token};")


def test_issued_tokens_carry_32_random_bytes(guard):
    assert len(guard.issue_token()) == 43


def test_randomness_failure_propagates(guard, monkeypatch):
    def boom(nbytes=None):
        raise OSError("entropy source unavailable")

    monkeypatch.setattr(csrf_module.secrets, "token_urlsafe", boom)
    with pytest.raises(OSError):
        guard.validate(make_request(headers={"Origin": TRUSTED}))
