"""Data contracts for the direct-channel application protocol."""
from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class TransferKind(str, Enum):
    TEXT = "text"
    FILE = "file"


class MetadataFrame(BaseModel):
    """First message on a direct channel, describing what follows."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    type: TransferKind
    filename: str | None = None
    size: int | None = Field(default=None, ge=0)
    mime_type: str | None = Field(default=None, alias="mimeType")


class TransferResult(BaseModel):
    """Outcome of a finished transfer session."""

    code: str
    role: str
    metadata: MetadataFrame | None = None
    accepted: bool = True
    bytes_transferred: int = 0
    chunks: int = 0
    text: str | None = None
    path: Path | None = None
