from typing import Any

from pydantic import BaseModel, Field


class ManualGuest(BaseModel):
    identity: str
    name: str = ""


class CheckinRequest(BaseModel):
    credential: str | None = None
    guest: ManualGuest | None = None
    guests: list[Any] | None = None
    hostId: str | None = None
    overrideReason: str | None = Field(default=None, max_length=2000)
    overrideSecret: str | None = None

    def guest_entries(self) -> list[Any] | None:
        if self.guest is not None:
            return [{"e": self.guest.identity, "n": self.guest.name}]
        return self.guests
