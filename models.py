# models.py
from typing import List, Literal, Optional, Union

from pydantic import BaseModel, field_validator


class SubscriberRecord(BaseModel):
    """One registry row. row_number is the spreadsheet row it was read from."""
    row_number: int
    email: str
    active: bool = False
    linked_identity: Optional[int] = None

    @property
    def is_linked(self) -> bool:
        return self.linked_identity is not None


class TextCommand(BaseModel):
    kind: Literal["text_command"] = "text_command"
    chat_id: int
    chat_type: str
    sender_id: int
    command: str
    payload: str = ""

    @property
    def is_private(self) -> bool:
        return self.chat_type == "private"


class ChatJoin(BaseModel):
    kind: Literal["chat_join"] = "chat_join"
    chat_id: int
    member_ids: List[int]


class OtherUpdate(BaseModel):
    kind: Literal["other"] = "other"
    update_id: Optional[int] = None


InboundUpdate = Union[TextCommand, ChatJoin, OtherUpdate]

_ABSENT_STATUSES = {"left", "kicked"}


def parse_update(update: dict) -> InboundUpdate:
    """Decode a Telegram Update into exactly one variant. Never raises."""
    update_id = update.get("update_id") if isinstance(update, dict) else None
    try:
        message = update.get("message")
        if message:
            chat = message["chat"]
            joined = message.get("new_chat_members")
            if joined:
                return ChatJoin(chat_id=chat["id"], member_ids=[member["id"] for member in joined])
            text = (message.get("text") or "").strip()
            sender = message.get("from")
            if text.startswith("/") and sender:
                head, _, rest = text.partition(" ")
                command = head[1:].split("@", 1)[0].lower()
                return TextCommand(
                    chat_id=chat["id"],
                    chat_type=chat.get("type", ""),
                    sender_id=sender["id"],
                    command=command,
                    payload=rest.strip(),
                )

        member_update = update.get("chat_member")
        if member_update:
            old_status = member_update["old_chat_member"]["status"]
            new_member = member_update["new_chat_member"]
            if new_member["status"] == "member" and old_status in _ABSENT_STATUSES:
                return ChatJoin(
                    chat_id=member_update["chat"]["id"],
                    member_ids=[new_member["user"]["id"]],
                )
    except (AttributeError, KeyError, TypeError, ValueError):
        pass
    return OtherUpdate(update_id=update_id if isinstance(update_id, int) else None)


class EmailRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def email_not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("email must not be blank")
        return value


class RegistrationLink(BaseModel):
    email: str
    token: str
    link: str
