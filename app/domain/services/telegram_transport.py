"""
Telegram Bot API transport

send / edit / delete / answer-callback over httpx, every call protected by
the shared ``telegram`` circuit breaker. Failures surface as
ExternalServiceException subclasses; callers decide whether a failure
is an outcome or an error.
"""
from dataclasses import dataclass
from typing import Any, Optional, Sequence

import httpx

from app.core.circuit_breaker import get_telegram_circuit_breaker
from app.core.config import settings
from app.core.exceptions import ServiceTimeoutError, TelegramError
from app.core.logging import get_logger

logger = get_logger(__name__)

_NOT_MODIFIED_MARKER = "message is not modified"


@dataclass(frozen=True)
class InlineButton:
    text: str
    callback_data: str


Keyboard = Sequence[Sequence[InlineButton]]


def _render_keyboard(keyboard: Optional[Keyboard]) -> dict[str, Any]:
    rows = [
        [{"text": button.text, "callback_data": button.callback_data} for button in row]
        for row in (keyboard or [])
    ]
    return {"inline_keyboard": rows}


class TelegramTransport:
    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
    ):
        self.token = token if token is not None else settings.TELEGRAM_BOT_TOKEN
        self.base_url = (base_url or settings.TELEGRAM_API_BASE_URL).rstrip("/")
        self.timeout = timeout

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        if not self.token:
            raise TelegramError("bot token not configured", details={"operation": method})

        url = f"{self.base_url}/bot{self.token}/{method}"

        async def _post() -> Any:
            try:
                async with httpx.AsyncClient() as client:
                    response = await client.post(url, json=payload, timeout=self.timeout)
            except httpx.TimeoutException as exc:
                raise ServiceTimeoutError("telegram", self.timeout) from exc
            except httpx.HTTPError as exc:
                raise TelegramError(f"{method} transport failure: {exc}", details={"operation": method}) from exc

            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, dict):
                body = {}
            if response.status_code != 200 or not body.get("ok", False):
                description = body.get("description")
                if description and _NOT_MODIFIED_MARKER in description:
                    # עריכה זהה לתוכן הקיים - אין מה לעדכן
                    return True
                raise TelegramError.from_response(method, response, message=description)
            return body.get("result")

        return await get_telegram_circuit_breaker().execute(_post)

    async def send_message(
        self,
        chat_id: int | str,
        text: str,
        keyboard: Optional[Keyboard] = None,
    ) -> int:
        """שליחת הודעה; מחזיר את message_id שטלגרם הקצה"""
        payload: dict[str, Any] = {"chat_id": chat_id, "text": text, "parse_mode": "HTML"}
        if keyboard:
            payload["reply_markup"] = _render_keyboard(keyboard)
        result = await self._call("sendMessage", payload)
        return int(result["message_id"])

    async def edit_message(
        self,
        chat_id: int | str,
        message_id: int,
        text: str,
        keyboard: Optional[Keyboard] = None,
    ) -> None:
        """עריכת טקסט; keyboard ריק מסיר את הכפתורים"""
        await self._call(
            "editMessageText",
            {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": "HTML",
                "reply_markup": _render_keyboard(keyboard),
            },
        )

    async def delete_message(self, chat_id: int | str, message_id: int) -> None:
        await self._call("deleteMessage", {"chat_id": chat_id, "message_id": message_id})

    async def answer_callback(
        self,
        callback_query_id: str,
        text: Optional[str] = None,
        show_alert: bool = False,
    ) -> None:
        payload: dict[str, Any] = {"callback_query_id": callback_query_id}
        if text:
            payload["text"] = text
        if show_alert:
            payload["show_alert"] = True
        await self._call("answerCallbackQuery", payload)


def get_transport() -> TelegramTransport:
    """FastAPI dependency - מוחלף ב-fake בבדיקות"""
    return TelegramTransport()
