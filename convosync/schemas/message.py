from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from convosync.utils.time import ensure_aware, from_ms, to_ms


MessageStatus = Literal["pending", "sent"]


class MediaAttachment(BaseModel):

    url: str
    kind: str = "image"


class Message(BaseModel):

    model_config = ConfigDict(extra="ignore")

    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    media_url: Optional[str] = None
    media_kind: Optional[str] = None
    reply_to: Optional[str] = None
    created_at: datetime
    deleted_at: Optional[datetime] = None
    client_message_id: Optional[str] = None
    # local bookkeeping only, never written to the backend
    status: MessageStatus = "sent"

    @field_validator("created_at", "deleted_at")
    @classmethod
    def normalize_timestamps(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_aware(value) if value is not None else None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Message":
        return cls.model_validate(row)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        return (self.created_at, self.id)

    @property
    def cursor(self) -> "MessageCursor":
        return MessageCursor(created_at=self.created_at, id=self.id)


class MessageCursor(BaseModel):
    """Position in a conversation's ``(created_at, id)`` order.

    Without an ``id`` the cursor compares on ``created_at`` alone.
    The string form is ``"<epoch ms>:<id>"``.
    """

    created_at: datetime
    id: Optional[str] = None

    def encode(self) -> str:
        return f"{to_ms(self.created_at)}:{self.id or ''}"

    @classmethod
    def parse(cls, value: Union["MessageCursor", str, datetime]) -> "MessageCursor":
        if isinstance(value, MessageCursor):
            return value
        if isinstance(value, datetime):
            return cls(created_at=ensure_aware(value))
        ts_str, _, oid = value.partition(":")
        return cls(created_at=from_ms(int(ts_str)), id=oid or None)


class MessagePage(BaseModel):

    items: List[Message] = Field(default_factory=list)
    next_cursor: Optional[str] = None
