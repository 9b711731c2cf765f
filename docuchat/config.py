"""
Pipeline configuration
-----------------------
All tunables (chunk sizes, thresholds, model names, worker counts) live in
``config/config.yaml`` and are parsed into the typed ``AppConfig`` below.
Components receive their section at construction time; nothing in the core
reads process state to decide behaviour.

API keys are not part of this file -- the OpenAI / Anthropic SDK clients
pick them up from the environment (optionally populated from ``.env``).
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, model_validator

DEFAULT_CONFIG_PATH = Path("config/config.yaml")


class EmbeddingSettings(BaseModel):
    provider: Literal["openai", "deterministic"] = "openai"
    model: str = "text-embedding-3-small"
    dimensions: int = Field(1536, ge=1)
    batch_size: int = Field(512, ge=1, le=2048)
    timeout_s: float = Field(30.0, gt=0)
    # Substitute a deterministic vector when the API call fails (dev only)
    fallback_on_error: bool = False


class ChunkingSettings(BaseModel):
    target_size: int = Field(800, ge=1)          # tokens per chunk
    overlap_fraction: float = Field(0.2, ge=0.0, lt=1.0)
    encoding: str = "cl100k_base"


class RetrievalSettings(BaseModel):
    similarity_threshold: float = Field(0.25, ge=-1.0, le=1.0)
    max_chunks: int = Field(8, ge=1)
    raise_on_empty_scope: bool = False


class GenerationSettings(BaseModel):
    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = Field(0.2, ge=0.0, le=2.0)
    max_tokens: int = Field(1500, ge=1)
    max_history_turns: int = Field(10, ge=0)  # messages, not user/assistant pairs


class IngestionSettings(BaseModel):
    max_workers: int = Field(4, ge=1)
    max_documents_in_flight: int = Field(2, ge=1)
    embed_attempts: int = Field(3, ge=1)
    retry_wait_min_s: float = Field(1.0, ge=0)
    retry_wait_max_s: float = Field(20.0, ge=0)


class IndexSettings(BaseModel):
    backend: Literal["memory", "faiss"] = "faiss"
    index_dir: str = "data/index"
    store_path: str = "data/documents.json"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/docuchat.log"
    json_file: bool = False


class AppConfig(BaseModel):
    """Root configuration object."""

    environment: Literal["development", "production"] = "development"
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    chunking: ChunkingSettings = Field(default_factory=ChunkingSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    ingestion: IngestionSettings = Field(default_factory=IngestionSettings)
    index: IndexSettings = Field(default_factory=IndexSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @model_validator(mode="after")
    def _no_fallback_vectors_in_production(self) -> "AppConfig":
        if self.environment == "production" and (
            self.embedding.provider == "deterministic" or self.embedding.fallback_on_error
        ):
            raise ValueError(
                "Deterministic/fallback embeddings are not allowed when environment=production"
            )
        return self


def load_config(path: str | Path | None = None) -> AppConfig:
    """
    Load ``AppConfig`` from YAML.

    A missing file yields the defaults; unknown sections are ignored and
    invalid values raise ``pydantic.ValidationError``.
    """
    load_dotenv()
    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH

    if not config_path.exists():
        logger.warning(f"[Config] {config_path} not found -- using defaults")
        return AppConfig()

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}

    cfg = AppConfig.model_validate(raw)
    logger.debug(
        f"[Config] Loaded {config_path} | env={cfg.environment} | "
        f"embedding={cfg.embedding.provider}:{cfg.embedding.model} | "
        f"index={cfg.index.backend}"
    )
    return cfg
