# SPDX-License-Identifier: MIT

import pytest

from pixgate.infra.channel.email import SmtpConfig, build_message, send_email


def test_message_headers():
    msg = build_message("noreply@pixgate.dev", ["a@example.com", "b@example.com"], "Hi", "body", cc=["ops@example.com"])
    assert msg["To"] == "a@example.com, b@example.com"
    assert msg["Cc"] == "ops@example.com"
    assert msg["From"] == "noreply@pixgate.dev"
    assert msg.get_content().strip() == "body"


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("EMAIL_HOST", "smtp.example.com")
    monkeypatch.setenv("EMAIL_PORT", "2525")
    monkeypatch.setenv("EMAIL_USER", "mailer")
    monkeypatch.delenv("EMAIL_FROM", raising=False)
    monkeypatch.setenv("EMAIL_USE_TLS", "no")
    monkeypatch.delenv("EMAIL_ENABLED", raising=False)
    cfg = SmtpConfig.from_env()
    assert (cfg.host, cfg.port, cfg.sender, cfg.starttls) == ("smtp.example.com", 2525, "mailer", False)
    assert cfg.unusable_reason() is None


def test_unusable_config_reasons():
    assert "EMAIL_ENABLED" in SmtpConfig(host="h", sender="s", enabled=False).unusable_reason()
    assert "EMAIL_HOST" in SmtpConfig(host=None, sender="s").unusable_reason()
    assert "EMAIL_FROM" in SmtpConfig(host="h").unusable_reason()


@pytest.mark.asyncio
async def test_send_is_skipped_without_a_usable_config():
    assert await send_email(to_addrs=["a@example.com"], subject="s", body="b", config=SmtpConfig(host=None)) is False
    assert await send_email(to_addrs=[], subject="s", body="b", config=SmtpConfig(host="h", sender="s")) is False
