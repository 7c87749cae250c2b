"""Data contracts for broker websocket events."""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from ..services.codes import normalize_code


class Role(str, Enum):
    CREATOR = "creator"
    GUEST = "guest"


class _CodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64, description="Pairing code")

    @field_validator("code", mode="before")
    @classmethod
    def _normalize(cls, value: object) -> object:
        if isinstance(value, str):
            return normalize_code(value)
        return value


class JoinRoomRequest(_CodeRequest):
    role: Role = Field(default=Role.GUEST, description="creator opens a room, guest joins one")

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: object) -> object:
        """Anything other than an explicit creator joins as a guest."""

        return Role.CREATOR if value == Role.CREATOR.value else Role.GUEST


class SignalRequest(_CodeRequest):
    signal: Any = Field(default=None, description="Opaque handshake payload")
