# config_manager/main.py
from pydantic import BaseModel, Field
from typing import Literal

from .knowledge_base import KnowledgeBaseConfig


class StorageConfig(BaseModel):
    """Where documents and chunks are persisted."""

    backend: Literal["sqlite", "memory"] = Field("sqlite", alias="backend")
    db_path: str = Field("knowledge_base/kb.db", alias="db_path")


class Config(BaseModel):
    """
    Main configuration for the engine.
    """

    storage: StorageConfig = Field(default_factory=StorageConfig, alias="storage")
    knowledge_base: KnowledgeBaseConfig = Field(
        default_factory=KnowledgeBaseConfig, alias="knowledge_base"
    )
