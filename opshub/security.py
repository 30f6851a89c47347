"""Security headers applied to every response."""

from __future__ import annotations

import re
from typing import Mapping

from flask import Flask, Response, current_app, request


PRODUCTION_CSP = "; ".join(
    (
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' 'unsafe-eval' https://cdn.jsdelivr.net https://unpkg.com",
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com",
        "font-src 'self' https://fonts.gstatic.com",
        "img-src 'self' data: https: blob:",
        "connect-src 'self'",
        "media-src 'self' data:",
        "object-src 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "frame-ancestors 'none'",
        "upgrade-insecure-requests",
    )
)

DEVELOPMENT_CSP = "; ".join(
    (
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' 'unsafe-eval'",
        "style-src 'self' 'unsafe-inline'",
        "font-src 'self' data:",
        "img-src 'self' data: https: blob:",
        "connect-src 'self' ws: wss:",
        "media-src 'self' data:",
        "object-src 'none'",
        "base-uri 'self'",
    )
)

PERMISSIONS_POLICY = ", ".join(
    (
        "camera=()",
        "microphone=()",
        "geolocation=()",
        "interest-cohort=()",
        "payment=()",
        "usb=()",
        "magnetometer=()",
        "accelerometer=()",
        "gyroscope=()",
    )
)

_STATIC_ASSET = re.compile(r"\.(css|js|png|jpg|jpeg|gif|ico|svg|woff|woff2|ttf|eot)$")


def is_production(app: Flask | None = None) -> bool:
    app = app or current_app
    return str(app.config.get("APP_ENV", "")).lower() == "production"


def default_security_headers(production: bool) -> dict[str, str]:
    return {
        "Content-Security-Policy": PRODUCTION_CSP if production else DEVELOPMENT_CSP,
        "Strict-Transport-Security": (
            "max-age=31536000; includeSubDomains; preload" if production else "max-age=0"
        ),
        "X-Frame-Options": "DENY",
        "X-Content-Type-Options": "nosniff",
        "Referrer-Policy": "strict-origin-when-cross-origin",
        "Permissions-Policy": PERMISSIONS_POLICY,
        "Cross-Origin-Embedder-Policy": "credentialless",
        "Cross-Origin-Opener-Policy": "same-origin-allow-popups",
        "Cross-Origin-Resource-Policy": "same-origin",
        "X-XSS-Protection": "1; mode=block",
        "X-DNS-Prefetch-Control": "off",
        "X-Download-Options": "noopen",
        "X-Permitted-Cross-Domain-Policies": "none",
        "X-Robots-Tag": "index, follow" if production else "noindex, nofollow",
    }


def resolve_security_headers(
    production: bool, overrides: Mapping[str, str | None] | None = None
) -> dict[str, str]:
    """Return the default headers merged with ``overrides``.

    An override of ``None`` (or an empty string) drops the header.
    """

    headers = default_security_headers(production)
    for name, value in (overrides or {}).items():
        if value:
            headers[name] = value
        else:
            headers.pop(name, None)
    return headers


def apply_security_headers(response: Response) -> Response:
    if not current_app.config.get("SECURITY_HEADERS_ENABLED", True):
        return response

    headers = resolve_security_headers(
        is_production(),
        current_app.config.get("SECURITY_HEADER_OVERRIDES"),
    )
    for name, value in headers.items():
        response.headers[name] = value

    if _STATIC_ASSET.search(request.path):
        response.headers["Cache-Control"] = "public, max-age=31536000, immutable"
    elif request.path.startswith("/api/") and "Cache-Control" not in response.headers:
        response.headers["Cache-Control"] = "no-store"

    return response
