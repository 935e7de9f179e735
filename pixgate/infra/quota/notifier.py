# SPDX-License-Identifier: MIT
# Copyright (c) 2025 Elena Viter

# infra/quota/notifier.py
"""
Low-credit warning emails.

Severity by remaining monthly operations:
  0      -> critical  (resent at most every 6h)
  <= 5   -> urgent    (every 12h)
  <= 10  -> warning   (every 24h)

Sends are deduplicated per `{identity}_{severity}` in a WarningDedupCache.
The cache is process-local: several instances may each send one copy.
"""
import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Set

from pixgate.infra.channel.email import send_email

logger = logging.getLogger(__name__)


class WarningSeverity(str, Enum):
    WARNING = "warning"
    URGENT = "urgent"
    CRITICAL = "critical"


RESEND_INTERVAL_SECONDS: Dict[WarningSeverity, int] = {
    WarningSeverity.CRITICAL: 6 * 3600,
    WarningSeverity.URGENT: 12 * 3600,
    WarningSeverity.WARNING: 24 * 3600,
}


def severity_for(remaining: Optional[int]) -> Optional[WarningSeverity]:
    if remaining is None:
        return None
    if remaining <= 0:
        return WarningSeverity.CRITICAL
    if remaining <= 5:
        return WarningSeverity.URGENT
    if remaining <= 10:
        return WarningSeverity.WARNING
    return None


@dataclass
class SentWarning:
    severity: WarningSeverity
    remaining: int
    sent_at: float


class WarningDedupCache:
    """
    Bounded record of recently sent warnings.

    Entries older than `max_age_seconds` are purged by a periodic loop
    (start/flush); past `max_entries` the least recently written entry goes.
    """

    def __init__(
        self,
        *,
        max_entries: int = 10000,
        max_age_seconds: int = 48 * 3600,
        purge_interval_sec: float = 3600.0,
        clock: Callable[[], float] = time.time,
    ):
        self.max_entries = int(max_entries)
        self.max_age_seconds = int(max_age_seconds)
        self.purge_interval_sec = float(purge_interval_sec)
        self._clock = clock
        self._entries: "OrderedDict[str, SentWarning]" = OrderedDict()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    def __len__(self) -> int:
        return len(self._entries)

    def should_send(self, key: str, severity: WarningSeverity, now: Optional[float] = None) -> bool:
        cached = self._entries.get(key)
        if cached is None:
            return True
        now = self._clock() if now is None else now
        return now - cached.sent_at >= RESEND_INTERVAL_SECONDS[severity]

    def record(self, key: str, severity: WarningSeverity, remaining: int, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        self._entries[key] = SentWarning(severity=severity, remaining=remaining, sent_at=now)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            self._entries.popitem(last=False)

    def forget(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge(self, now: Optional[float] = None) -> int:
        now = self._clock() if now is None else now
        stale = [k for k, v in self._entries.items() if now - v.sent_at > self.max_age_seconds]
        for k in stale:
            del self._entries[k]
        return len(stale)

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="warning-dedup-purge")

    async def flush(self) -> None:
        if self._task:
            self._stop_event.set()
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._entries.clear()

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            await asyncio.sleep(self.purge_interval_sec)
            purged = self.purge()
            if purged:
                logger.debug("Purged %d warning dedup entries", purged)


EmailSender = Callable[..., Awaitable[bool]]


class QuotaWarningNotifier:
    def __init__(
        self,
        cache: WarningDedupCache,
        *,
        sender: EmailSender = send_email,
        enabled: bool = True,
        admin_email: Optional[str] = None,
    ):
        self.cache = cache
        self.sender = sender
        self.enabled = enabled
        # copied on critical warnings
        self.admin_email = admin_email
        self._pending: Set[asyncio.Task] = set()

    async def maybe_notify(
        self,
        *,
        identity_id: str,
        email: Optional[str],
        remaining: Optional[int],
        plan_name: str,
        display_name: Optional[str] = None,
    ) -> Optional[WarningSeverity]:
        """Send a warning if one is due; returns the severity sent."""
        if not self.enabled or not email:
            return None
        severity = severity_for(remaining)
        if severity is None:
            return None

        key = f"{identity_id}_{severity.value}"
        if not self.cache.should_send(key, severity):
            return None
        # claimed before sending so concurrent operations do not send twice
        self.cache.record(key, severity, int(remaining))

        logger.info("Sending %s low-credit warning to %s (%s operations remaining)", severity.value, identity_id, remaining)
        try:
            sent = await self.sender(
                to_addrs=[email],
                subject=_subject(severity, remaining),
                body=_body(display_name or "Valued Customer", plan_name, severity, remaining),
                cc=[self.admin_email] if self.admin_email and severity is WarningSeverity.CRITICAL else None,
            )
        except Exception:
            logger.exception("Failed to send %s warning to %s", severity.value, identity_id)
            sent = False
        if not sent:
            self.cache.forget(key)
            return None
        return severity

    def schedule(self, **kwargs) -> Optional[asyncio.Task]:
        """Fire-and-forget `maybe_notify`."""
        if not self.enabled or not kwargs.get("email"):
            return None
        task = asyncio.create_task(self.maybe_notify(**kwargs), name="quota-warning")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def _subject(severity: WarningSeverity, remaining: int) -> str:
    if severity is WarningSeverity.CRITICAL:
        return "You have used all of your monthly operations"
    return f"Only {remaining} operations left this month"


def _body(name: str, plan_name: str, severity: WarningSeverity, remaining: int) -> str:
    return (
        f"Hi {name},\n\n"
        f"Your {plan_name} plan has {remaining} image operations left in the current billing period.\n"
        + ("Further operations will be refused until the period resets or you upgrade.\n"
           if severity is WarningSeverity.CRITICAL else
           "Consider upgrading to keep compressing without interruption.\n")
    )
