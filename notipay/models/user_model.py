from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime, timezone


class User(BaseModel):
    """NotiPay user as the payment core sees it. Owned by the user store; read-only here."""

    id: str = Field(..., alias="_id")
    full_name: str
    email: Optional[str] = None
    wallet_number: str = ""           # local mobile wallet number, e.g. 09123456789
    password_hash: Optional[str] = None

    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def display_name(self) -> str:
        return self.full_name

    model_config = {
        "from_attributes": True,
        "populate_by_name": True
    }
