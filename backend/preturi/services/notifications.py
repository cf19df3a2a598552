"""
Уведомления об исходе операций. Журнал пишется всегда, Telegram получают техники после отправки
tăvițe в департаменты. Ошибка доставки уведомления не влияет на операцию.
"""
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import httpx

from preturi.config import settings
from preturi.core.logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class OperationOutcome:
    operation: str
    ok: bool
    code: str = "ok"
    message: str = ""
    ids: dict[str, Any] = field(default_factory=dict)


class Notifier(Protocol):
    async def notify(self, outcome: OperationOutcome) -> None: ...


class LoggingNotifier:
    async def notify(self, outcome: OperationOutcome) -> None:
        if outcome.ok:
            logger.info("%s: выполнено %s", outcome.operation, outcome.ids)
        else:
            logger.warning("%s: отклонено code=%s %s %s", outcome.operation, outcome.code, outcome.message, outcome.ids)


class RecordingNotifier(LoggingNotifier):
    """Сохраняет исходы в списке; для встраивания и тестов."""

    def __init__(self) -> None:
        self.outcomes: list[OperationOutcome] = []

    async def notify(self, outcome: OperationOutcome) -> None:
        self.outcomes.append(outcome)
        await super().notify(outcome)


def _format_dispatch_message(outcome: OperationOutcome) -> str:
    ids = outcome.ids
    trays = ", ".join(ids.get("tray_numbers") or []) or "—"
    pipelines = ", ".join(ids.get("pipelines") or []) or "—"
    return (
        f"🆕 Tăvițe noi în departament\n\n"
        f"Fișă: {ids.get('service_file_id')}\n"
        f"Tăvițe: {trays}\n"
        f"Departamente: {pipelines}\n"
        f"Poziții: {ids.get('item_count', 0)}"
    )


class TelegramNotifier(LoggingNotifier):
    """Telegram Bot API: сообщение в чаты техников после успешной отправки."""

    def __init__(self, token: Optional[str] = None, chat_ids: Optional[list[int]] = None):
        self.token = token if token is not None else settings.telegram_bot_token
        self.chat_ids = chat_ids if chat_ids is not None else settings.telegram_chat_id_list

    async def notify(self, outcome: OperationOutcome) -> None:
        await super().notify(outcome)
        if not outcome.ok or outcome.operation != "dispatch":
            return
        if not self.token:
            logger.warning("TELEGRAM_BOT_TOKEN не задан — уведомление не отправлено")
            return
        if not self.chat_ids:
            logger.warning("TELEGRAM_CHAT_IDS пуст — уведомление не отправлено")
            return
        text = _format_dispatch_message(outcome)
        url = f"https://api.telegram.org/bot{self.token}/sendMessage"
        async with httpx.AsyncClient() as client:
            for chat_id in self.chat_ids:
                try:
                    r = await client.post(url, json={"chat_id": chat_id, "text": text}, timeout=10.0)
                    if r.status_code != 200:
                        logger.warning("Telegram sendMessage %s: %s", r.status_code, r.text)
                except httpx.HTTPError as e:
                    logger.exception("Ошибка отправки в Telegram chat_id=%s: %s", chat_id, e)


def default_notifier() -> Notifier:
    if settings.telegram_bot_token:
        return TelegramNotifier()
    return LoggingNotifier()
