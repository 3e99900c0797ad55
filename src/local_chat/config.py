"""Centralized configuration for the chat engine."""

import json
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _parse_string_list(v: object) -> list[str]:
    """Accept a JSON array string or comma-separated string from env vars."""
    if isinstance(v, str):
        try:
            parsed = json.loads(v)
        except (json.JSONDecodeError, ValueError):
            parsed = [item.strip() for item in v.split(",") if item.strip()]
        if not isinstance(parsed, list):
            return [str(parsed)]
        return [str(item) for item in parsed]
    return v  # type: ignore[return-value]


class SamplingConfig(BaseSettings):
    """Sampling parameters, passed through to the engine untouched."""

    model_config = SettingsConfigDict(env_prefix="SAMPLING_", frozen=True)

    temperature: float = Field(default=0.9, ge=0.0, le=2.0)
    top_k: int = Field(default=40, ge=0)
    top_p: float = Field(default=0.95, ge=0.0, le=1.0)
    repeat_last_n: int = 64
    repeat_penalty: float = 1.1
    mirostat: int = Field(default=0, ge=0, le=2)
    mirostat_tau: float = 5.0
    mirostat_eta: float = 0.1
    tfs_z: float = 1.0
    typical_p: float = 1.0


class ContextConfig(BaseSettings):
    """Model context parameters: window, system prompt and stop sequences."""

    model_config = SettingsConfigDict(env_prefix="CONTEXT_", frozen=True)

    context_size: int = Field(default=1024, gt=0)
    batch_size: int = Field(default=512, gt=0)
    n_predict: int = Field(default=-1, ge=-1)
    system_prompt: str = ""
    prompt_format: str = "{{prompt}}"
    stop_sequences: list[str] = Field(default_factory=list)
    save_load_state: bool = False
    keep_alive: str = "5m"

    @field_validator("stop_sequences", mode="before")
    @classmethod
    def _parse_stop_sequences(cls, v: object) -> list[str]:
        """Keep configured order; empty entries never match anything."""
        return [s for s in _parse_string_list(v) if s]


class RAGConfig(BaseSettings):
    """Retrieval settings for a session's similarity index."""

    model_config = SettingsConfigDict(env_prefix="RAG_", frozen=True)

    index_dir: str = ""
    chunk_size: int = Field(default=256, gt=0)
    chunk_overlap: int = Field(default=100, ge=0)
    chunk_method: Literal["recursive", "semantic"] = "recursive"
    embedding_model: str = "all-MiniLM-L6-v2"
    similarity_metric: Literal["cosine", "dotproduct", "euclidean"] = "dotproduct"
    top_k: int = Field(default=3, gt=0)
    on_error: Literal["fallback", "message"] = "fallback"

    @model_validator(mode="after")
    def _overlap_less_than_size(self) -> "RAGConfig":
        if self.chunk_overlap >= self.chunk_size:
            msg = (
                f"chunk_overlap ({self.chunk_overlap}) must be less than "
                f"chunk_size ({self.chunk_size})"
            )
            raise ValueError(msg)
        return self


class StorageConfig(BaseSettings):
    """On-disk locations for history, chat configs and engine state."""

    model_config = SettingsConfigDict(env_prefix="STORAGE_", frozen=True)

    history_dir: str = "./data/history"
    chats_dir: str = "./data/chats"
    state_dir: str = "./data/state"
    rag_dir: str = "./data/rag"
    images_dir: str = "./data/cache/images"


class EngineConfig(BaseSettings):
    """Ollama connection settings."""

    model_config = SettingsConfigDict(env_prefix="ENGINE_", frozen=True)

    host: str | None = None
    timeout: float | None = Field(default=None, gt=0)


class SessionConfig(BaseModel):
    """Per-session configuration, stored as ``<chats_dir>/<session>.json``."""

    model_config = {"frozen": True}

    title: str = ""
    model: str = ""
    inference: str = "llama"
    sampling: SamplingConfig = Field(default_factory=SamplingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)
    rag: RAGConfig = Field(default_factory=RAGConfig)


class AppConfig(BaseSettings):
    """Top-level application configuration."""

    model_config = SettingsConfigDict(frozen=True)

    storage: StorageConfig = Field(default_factory=StorageConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
