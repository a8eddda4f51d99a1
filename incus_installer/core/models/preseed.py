"""
Preseed document — the structure ``incus admin init --preseed`` reads.

Field order here is the order the document is rendered in. The
daemon owns schema validation; these models only fix the shape.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class PreseedNetwork(BaseModel):
    config: dict[str, str] = Field(default_factory=dict)
    description: str = ""
    name: str
    type: str = "bridge"


class PreseedStoragePool(BaseModel):
    config: dict[str, str] = Field(default_factory=dict)
    description: str = ""
    name: str
    driver: str = "dir"


class PreseedProfile(BaseModel):
    config: dict[str, str] = Field(default_factory=dict)
    description: str = ""
    devices: dict[str, dict[str, str]] = Field(default_factory=dict)
    name: str = "default"


class PreseedDocument(BaseModel):
    config: dict[str, str] = Field(default_factory=dict)
    networks: list[PreseedNetwork] = Field(default_factory=list)
    storage_pools: list[PreseedStoragePool] = Field(default_factory=list)
    profiles: list[PreseedProfile] = Field(default_factory=list)
    cluster: None = None
