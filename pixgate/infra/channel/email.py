# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/channel/email.py
import asyncio
import logging
import os
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from functools import lru_cache
from typing import Optional, Sequence

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

SMTP_TIMEOUT_SEC = 15


@lru_cache()
def _dotenv_loaded() -> bool:
    return load_dotenv(find_dotenv(usecwd=True), override=False)


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SmtpConfig:
    host: Optional[str]
    port: int = 587
    user: Optional[str] = None
    password: Optional[str] = None
    sender: Optional[str] = None
    starttls: bool = True
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "SmtpConfig":
        _dotenv_loaded()
        user = os.getenv("EMAIL_USER")
        return cls(
            host=os.getenv("EMAIL_HOST"),
            port=int(os.getenv("EMAIL_PORT") or 587),
            user=user,
            password=os.getenv("EMAIL_PASSWORD"),
            sender=os.getenv("EMAIL_FROM") or user,
            starttls=_flag("EMAIL_USE_TLS", True),
            enabled=_flag("EMAIL_ENABLED", True),
        )

    def unusable_reason(self) -> Optional[str]:
        if not self.enabled:
            return "EMAIL_ENABLED is off"
        if not self.host:
            return "EMAIL_HOST is not set"
        if not self.sender:
            return "neither EMAIL_FROM nor EMAIL_USER is set"
        return None


def build_message(
    sender: str,
    to_addrs: Sequence[str],
    subject: str,
    body: str,
    cc: Optional[Sequence[str]] = None,
) -> EmailMessage:
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = ", ".join(to_addrs)
    if cc:
        msg["Cc"] = ", ".join(cc)
    msg["Subject"] = subject
    msg.set_content(body)
    return msg


def _deliver(cfg: SmtpConfig, msg: EmailMessage) -> bool:
    try:
        with smtplib.SMTP(cfg.host, cfg.port, timeout=SMTP_TIMEOUT_SEC) as smtp:
            if cfg.starttls:
                smtp.starttls(context=ssl.create_default_context())
            if cfg.user and cfg.password:
                smtp.login(cfg.user, cfg.password)
            smtp.send_message(msg)
    except (smtplib.SMTPException, OSError):
        logger.exception("SMTP delivery of %r to %s failed", msg["Subject"], msg["To"])
        return False
    return True


async def send_email(
    *,
    to_addrs: Sequence[str],
    subject: str,
    body: str,
    cc: Optional[Sequence[str]] = None,
    config: Optional[SmtpConfig] = None,
) -> bool:
    """Send through SMTP in a worker thread. Returns False when nothing was sent."""
    if not to_addrs:
        return False
    cfg = config or SmtpConfig.from_env()
    reason = cfg.unusable_reason()
    if reason:
        logger.info("Email to %s skipped: %s", ", ".join(to_addrs), reason)
        return False
    msg = build_message(cfg.sender, list(to_addrs), subject, body, cc)
    return await asyncio.to_thread(_deliver, cfg, msg)
