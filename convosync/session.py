from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Session:
    """The signed-in user, passed explicitly to every store."""

    user_id: str
    access_token: Optional[str] = None
    display_name: Optional[str] = None
