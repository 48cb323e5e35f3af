from datetime import datetime
from typing import Optional, TypedDict


class MessageDocument(TypedDict, total=False):
    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str]
    media_url: Optional[str]
    media_kind: Optional[str]
    reply_to: Optional[str]
    created_at: datetime
    # soft delete keeps the row in place for pagination
    deleted_at: Optional[datetime]
    # client ack / idempotency key
    client_message_id: Optional[str]
