# messaging.py
import logging
from typing import Any, Optional, Protocol

import httpx

from errors import MessagingError, MessagingRejected, MessagingUnavailable

logger = logging.getLogger(__name__)


class MessagingClient(Protocol):
    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> Any: ...

    async def unban(self, chat_id: int, user_id: int) -> None: ...

    async def kick(self, chat_id: int, user_id: int) -> None: ...

    async def fetch_or_create_invite_link(self, chat_id: int) -> str: ...

    async def who_am_i(self) -> dict: ...


def invite_markup(link: str, label: str = "Join the chat") -> dict:
    return {"inline_keyboard": [[{"text": label, "url": link}]]}


class TelegramClient:
    """Thin Bot API client. No retries, no buffering."""

    def __init__(self, token: str, http: httpx.AsyncClient, api_base: str = "https://api.telegram.org"):
        self._token = token
        self.http = http
        self.api_base = api_base.rstrip("/")
        self._me: Optional[dict] = None

    async def call(self, method: str, **params) -> Any:
        url = f"{self.api_base}/bot{self._token}/{method}"
        payload = {key: value for key, value in params.items() if value is not None}
        try:
            response = await self.http.post(url, json=payload)
        except httpx.HTTPError as e:
            # str(e) may carry the URL, which carries the token
            raise MessagingUnavailable(f"{method}: {type(e).__name__}") from e
        try:
            body = response.json()
        except ValueError as e:
            raise MessagingUnavailable(f"{method}: non-JSON response ({response.status_code})") from e
        if not isinstance(body, dict) or not body.get("ok"):
            body = body if isinstance(body, dict) else {}
            raise MessagingRejected(method, body.get("description", "unknown error"), body.get("error_code"))
        return body.get("result")

    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None):
        return await self.call("sendMessage", chat_id=chat_id, text=text, reply_markup=reply_markup)

    async def unban(self, chat_id: int, user_id: int) -> None:
        await self.call("unbanChatMember", chat_id=chat_id, user_id=user_id, only_if_banned=True)

    async def kick(self, chat_id: int, user_id: int) -> None:
        await self.call("banChatMember", chat_id=chat_id, user_id=user_id)
        logger.info(f"Kicked {user_id} from {chat_id}")
        # lift the ban so they can rejoin once eligible again
        try:
            await self.call("unbanChatMember", chat_id=chat_id, user_id=user_id, only_if_banned=True)
        except MessagingError as e:
            logger.warning(f"{user_id} stays banned from {chat_id}: {e}")

    async def fetch_or_create_invite_link(self, chat_id: int) -> str:
        chat = await self.call("getChat", chat_id=chat_id)
        link = (chat or {}).get("invite_link")
        if link:
            return link
        link = await self.call("exportChatInviteLink", chat_id=chat_id)
        logger.info(f"Created primary invite link for {chat_id}")
        return link

    async def who_am_i(self) -> dict:
        if self._me is None:
            self._me = await self.call("getMe")
        return self._me
