"""
オリジン検証・Cookie属性・セキュリティヘッダー。
Origin checks, cookie attributes and security headers for the planner API.
"""

import os
from typing import Any, Dict, List
from urllib.parse import urlparse

from flask import Request, Response

from sagascout.constants import _env_bool, _env_int

DEFAULT_ALLOWED_ORIGINS = ("http://localhost:5173", "http://127.0.0.1:5173")
UNSAFE_METHODS = ("POST", "PUT", "PATCH", "DELETE")


def get_allowed_origins() -> List[str]:
    """
    許可されたオリジンのリストを取得する
    Allowed origins: `ALLOWED_ORIGINS` (or `FRONTEND_ORIGIN`) merged with local defaults.
    """
    frontend_origin = os.getenv("FRONTEND_ORIGIN", DEFAULT_ALLOWED_ORIGINS[0])
    raw_origins = os.getenv("ALLOWED_ORIGINS", frontend_origin).split(",")
    allowed = [origin.strip().rstrip("/") for origin in raw_origins if origin.strip()]
    for origin in DEFAULT_ALLOWED_ORIGINS:
        if origin not in allowed:
            allowed.append(origin)
    return allowed


def _origin_from_referer(referer: str) -> str:
    parsed = urlparse(referer)
    if parsed.scheme and parsed.netloc:
        return f"{parsed.scheme}://{parsed.netloc}"
    return ""


def is_csrf_valid(request: Request) -> bool:
    """
    状態を変更するリクエストの送信元オリジンを検証する
    Validate the source origin of state-changing requests.

    Origin、なければRefererを確認し、どちらもない場合は ALLOW_MISSING_ORIGIN に従います。
    Checks Origin, then Referer; with neither present, ALLOW_MISSING_ORIGIN decides.
    """
    if request.method not in UNSAFE_METHODS:
        return True

    allowed = get_allowed_origins()
    origin = request.headers.get("Origin")
    if origin:
        return origin.rstrip("/") in allowed

    referer = request.headers.get("Referer")
    if referer:
        referer_origin = _origin_from_referer(referer)
        return referer_origin in allowed if referer_origin else False

    return _env_bool("ALLOW_MISSING_ORIGIN", False)


def should_set_secure_cookie(request: Request) -> bool:
    env_value = os.getenv("COOKIE_SECURE", "").strip().lower()
    if env_value:
        return env_value in ("1", "true", "yes")

    if request.is_secure:
        return True

    host = request.headers.get("Host", "")
    return not ("localhost" in host or "127.0.0.1" in host)


def cookie_settings(request: Request) -> Dict[str, Any]:
    """
    計画セッションCookieの属性
    Attributes for the planning-session cookie.
    """
    return {
        "httponly": True,
        "samesite": os.getenv("COOKIE_SAMESITE", "Lax"),
        "secure": should_set_secure_cookie(request),
        "path": "/",
        "max_age": _env_int("SESSION_COOKIE_MAX_AGE", 604800),
    }


def build_csp() -> str:
    connect_sources = ["'self'"] + get_allowed_origins()
    img_sources = ["'self'", "data:", "https://source.unsplash.com", "https://images.unsplash.com"]
    return (
        "default-src 'self'; "
        f"connect-src {' '.join(connect_sources)}; "
        f"img-src {' '.join(img_sources)}; "
        "script-src 'self'; "
        "style-src 'self' 'unsafe-inline'; "
        "frame-ancestors 'none'; "
        "base-uri 'self'; "
        "form-action 'self';"
    )


def apply_security_headers(response: Response) -> Response:
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Content-Security-Policy", os.getenv("CONTENT_SECURITY_POLICY") or build_csp())

    if _env_bool("ENABLE_HSTS", True):
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains")

    return response
