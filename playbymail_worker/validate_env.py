"""Fail-fast environment checks, run once before settings load.

Every problem found is reported in a single RuntimeError so a broken
deployment can be fixed in one pass.
"""

from __future__ import annotations

import os
from functools import lru_cache
from urllib.parse import urlparse

ALLOWED_ENVIRONMENTS = {"development", "staging", "production"}
ALLOWED_EMAIL_TRANSPORTS = {"smtp", "forwardemail", "fake"}
LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}

# Variables each email transport cannot send without
TRANSPORT_REQUIREMENTS: dict[str, tuple[str, ...]] = {
    "smtp": ("SMTP_HOST",),
    "forwardemail": ("FORWARDEMAIL_API_KEY",),
    "fake": (),
}


def _env(name: str) -> str | None:
    value = os.getenv(name, "").strip()
    return value or None


def _missing(*names: str) -> list[str]:
    return [f"{name} is required and must be set before startup." for name in names if _env(name) is None]


def _infrastructure_problems() -> list[str]:
    problems = []
    for name in ("DATABASE_URL", "REDIS_URL"):
        value = _env(name)
        if value is None:
            continue
        host = urlparse(value).hostname
        if not host:
            problems.append(f"{name} must be a valid URL (missing hostname).")
        elif host in LOCAL_HOSTS:
            problems.append(f"{name} must not point to localhost in production.")

    database = urlparse(_env("DATABASE_URL") or "")
    if database.username == "postgres" and database.password == "postgres":
        problems.append("DATABASE_URL must not use default postgres credentials in production.")
    return problems


def _transport_problems() -> list[str]:
    transport = _env("EMAIL_TRANSPORT") or "fake"
    if transport not in ALLOWED_EMAIL_TRANSPORTS:
        return [f"EMAIL_TRANSPORT must be one of: {', '.join(sorted(ALLOWED_EMAIL_TRANSPORTS))}."]
    if transport == "fake":
        return ["EMAIL_TRANSPORT=fake is not allowed in production."]
    return _missing(*TRANSPORT_REQUIREMENTS[transport])


def _ocr_problems() -> list[str]:
    ocr_model = _env("OCR_MODEL") or "tesseract"
    if ocr_model.startswith("openai:"):
        return _missing("OPENAI_API_KEY")
    if ocr_model != "tesseract":
        return ["OCR_MODEL must be 'tesseract' or 'openai:<model>'."]
    return []


@lru_cache(maxsize=1)
def validate_env() -> None:
    """Raise RuntimeError listing every environment problem.

    Production is also held to non-local infrastructure and to the
    credentials of the configured email transport and OCR backend.
    """
    problems = _missing("ENVIRONMENT", "DATABASE_URL", "REDIS_URL")

    environment = _env("ENVIRONMENT")
    if environment and environment not in ALLOWED_ENVIRONMENTS:
        problems.append(f"ENVIRONMENT must be one of: {', '.join(sorted(ALLOWED_ENVIRONMENTS))}.")

    if environment == "production":
        problems += _infrastructure_problems() + _transport_problems() + _ocr_problems()

    if problems:
        raise RuntimeError("Invalid worker environment:\n  " + "\n  ".join(problems))
