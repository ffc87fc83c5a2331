from dataclasses import dataclass, field
from datetime import datetime
from html import escape
from typing import List, Optional
import logging

import httpx

from pppmon.config import settings

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n\n...(message truncated due to length limit)"


@dataclass
class SyncReport:
    router_name: str
    logins: List[str] = field(default_factory=list)
    logouts: List[str] = field(default_factory=list)
    total_secrets: int = 0
    total_active: int = 0
    disconnected: List[str] = field(default_factory=list)

    @property
    def has_activity(self) -> bool:
        return bool(self.logins or self.logouts)


def format_sync_report(report: SyncReport, now: Optional[datetime] = None) -> str:
    now = now or datetime.now()
    lines = [
        f"📊 <b>Sync Report</b> - {escape(report.router_name)}",
        f"Time: {now.strftime('%Y-%m-%d %H:%M:%S')}",
        "---",
        "",
    ]

    if report.logins:
        lines += ["✅ <b>LOGIN:</b>", "---"]
        lines += [f"{i}. {escape(name)}" for i, name in enumerate(sorted(report.logins), 1)]
        lines += ["", ""]

    if report.logouts:
        lines += ["❌ <b>LOGOUT:</b>", "---"]
        lines += [f"{i}. {escape(name)}" for i, name in enumerate(sorted(report.logouts), 1)]
        lines += ["", ""]

    lines += [
        "==============================",
        f"Total Secrets: {report.total_secrets}",
        f"Total Active: {report.total_active}",
        "==============================",
    ]

    if report.disconnected:
        lines.append(f"Disconnected Users ({len(report.disconnected)}):")
        lines += [f"• {escape(name)}" for name in sorted(report.disconnected)]

    return "\n".join(lines).strip()


def truncate_message(text: str, limit: int = None) -> str:
    limit = settings.TELEGRAM_MESSAGE_LIMIT if limit is None else limit
    if len(text) <= limit:
        return text
    return text[:max(limit - len(TRUNCATION_MARKER), 0)] + TRUNCATION_MARKER[:limit]


class TelegramNotifier:
    """Sends one report per router per sync cycle. Failures are logged, never raised."""

    def __init__(self, api_url: str = None, timeout: float = None, transport: httpx.AsyncBaseTransport = None):
        self.api_url = (api_url or settings.TELEGRAM_API_URL).rstrip("/")
        self.timeout = settings.TELEGRAM_TIMEOUT_SECONDS if timeout is None else timeout
        self.transport = transport

    async def send_sync_report(self, token: Optional[str], chat_id: Optional[str], report: SyncReport) -> bool:
        if not token or not chat_id:
            logger.debug(f"[TELEGRAM] No bot token/chat id for {report.router_name}, skipping report")
            return False

        # Only report cycles with login/logout activity
        if not report.has_activity:
            return False

        return await self.send_message(token, chat_id, format_sync_report(report))

    async def send_message(self, token: str, chat_id: str, text: str) -> bool:
        url = f"{self.api_url}/bot{token}/sendMessage"
        payload = {
            "chat_id": chat_id,
            "text": truncate_message(text),
            "parse_mode": "HTML",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload)
                response.raise_for_status()
            return True
        except httpx.HTTPStatusError as e:
            logger.error(f"[TELEGRAM] Failed to send message: {e.response.status_code} {e.response.text}")
        except httpx.HTTPError as e:
            logger.error(f"[TELEGRAM] Failed to send message: {e}")
        return False
