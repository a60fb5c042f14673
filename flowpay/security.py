"""Security helpers for configuring Flask in production."""
from __future__ import annotations

import logging
import os
from typing import Any, Mapping

from flask import Flask
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman
from werkzeug.middleware.proxy_fix import ProxyFix

logger = logging.getLogger(__name__)

# Created unbound so blueprints can decorate routes at import time.
limiter = Limiter(key_func=get_remote_address)


def _as_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).lower() in {"1", "true", "yes", "on"}


def _build_redis_uri(cfg: Mapping[str, Any]) -> str:
    if cfg.get("REDIS_URL"):
        return str(cfg["REDIS_URL"])

    host = cfg.get("REDIS_HOST", "127.0.0.1")
    port = cfg.get("REDIS_PORT", 6379)
    db = cfg.get("REDIS_DB", 0)
    password = cfg.get("REDIS_PASSWORD")
    if password:
        return f"redis://:{password}@{host}:{port}/{db}"
    return f"redis://{host}:{port}/{db}"


def configure_logging(cfg: Mapping[str, Any]) -> None:
    """Emit one JSON-ish line per record on the root logger."""
    level = getattr(logging, str(cfg.get("LOG_LEVEL", "INFO")).upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    if not any(isinstance(handler, logging.StreamHandler) for handler in root_logger.handlers):
        handler = logging.StreamHandler()
        fmt = (
            "{\"level\":\"%(levelname)s\",\"msg\":\"%(message)s\",\"name\":\"%(name)s\",\"path\":\"%(pathname)s\","
            "\"lineno\":%(lineno)d}"
        )
        handler.setFormatter(logging.Formatter(fmt))
        root_logger.addHandler(handler)


def init_security(app: Flask, cfg: Mapping[str, Any]) -> Limiter:
    """Initialise standard security middleware and rate limiting."""

    # Respect reverse proxy headers for TLS detection and client IP extraction.
    app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1)  # type: ignore[assignment]

    default_force_https = str(cfg.get("FLASK_ENV") or os.getenv("FLASK_ENV", "development")).strip().lower() == "production"
    force_https = _as_bool(cfg.get("FORCE_HTTPS"), default_force_https)

    if not force_https and default_force_https:
        logger.warning("FORCE_HTTPS disabled while FLASK_ENV=production – ensure this is intentional before deploying.")
    elif force_https:
        logger.debug("HTTPS enforcement enabled")

    # JSON API only; the claim page is served by the frontend.
    csp = {
        "default-src": "'none'",
        "frame-ancestors": "'none'",
    }
    Talisman(
        app,
        force_https=force_https,
        force_file_save=False,
        content_security_policy=csp,
        session_cookie_secure=force_https,
        session_cookie_samesite="Lax",
        frame_options="DENY",
        referrer_policy="no-referrer",
    )

    app.config["RATELIMIT_ENABLED"] = _as_bool(cfg.get("RATE_LIMIT_ENABLED"), True)
    app.config["RATELIMIT_DEFAULT"] = cfg.get("RATE_LIMIT_DEFAULT") or "100/hour"
    app.config["RATELIMIT_STRATEGY"] = "fixed-window"
    app.config["RATELIMIT_STORAGE_URI"] = (
        _build_redis_uri(cfg) if cfg.get("REDIS_URL") or cfg.get("REDIS_HOST") else "memory://"
    )
    limiter.init_app(app)
    if not app.config["RATELIMIT_ENABLED"]:
        logger.warning("Rate limiting disabled")

    configure_logging(cfg)
    return limiter
