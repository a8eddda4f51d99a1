"""
Fetch models — what to download or clone, and how each attempt went.
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


class FetchKind(str, Enum):
    HTTP = "http"      # single file download
    GIT = "git"        # shallow repository clone


class FetchSpec(BaseModel):
    """Candidate sources (in preference order) for one artifact."""

    model_config = ConfigDict(frozen=True)

    sources: list[str] = Field(min_length=1)
    destination: Path
    kind: FetchKind = FetchKind.HTTP
    max_retries: int = Field(default=3, ge=1)
    timeout: int = Field(default=30, ge=1)
    delay: float = Field(default=2.0, ge=0)   # constant, not exponential
    label: str = ""

    @property
    def display(self) -> str:
        return self.label or self.destination.name


class FetchAttempt(BaseModel):
    """One try against one source."""

    source: str
    attempt: int
    ok: bool = False
    error: str = ""
