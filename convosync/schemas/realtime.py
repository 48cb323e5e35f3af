from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

from convosync.utils.time import utcnow


ChangeType = Literal["INSERT", "UPDATE", "DELETE"]


class ChangeEvent(BaseModel):
    """Row change pushed on the ``db:<table>`` channel."""

    table: str
    type: ChangeType
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    at: datetime = Field(default_factory=utcnow)

    @property
    def row(self) -> Dict[str, Any]:
        return self.new if self.new is not None else (self.old or {})


class TypingEvent(BaseModel):

    conversation_id: str
    user_id: str
    is_typing: bool


class PresenceEvent(BaseModel):

    type: Literal["join", "leave", "sync"]
    user_id: str
    at: datetime = Field(default_factory=utcnow)


class PresenceEntry(BaseModel):

    user_id: str
    online: bool = True
    last_seen_at: datetime
