"""
Configuration utilities.
"""

import json
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field

from kbrag.rag.chunking import ChunkingOptions
from kbrag.rag.exceptions import ConfigurationError
from kbrag.rag.retriever import RetrievalOptions


class Config(BaseModel):
    """Base configuration class."""

    @classmethod
    def from_yaml(cls, path: Path) -> "Config":
        """Load configuration from YAML file."""
        with open(path) as f:
            data = yaml.safe_load(f)
        return cls(**(data or {}))

    @classmethod
    def from_file(cls, path: str | Path) -> "Config":
        """Load configuration from file (YAML or JSON)."""
        path = Path(path)

        if path.suffix in (".yaml", ".yml"):
            return cls.from_yaml(path)
        elif path.suffix == ".json":
            with open(path) as f:
                data = json.load(f)
            return cls(**data)
        else:
            raise ConfigurationError(f"Unsupported config file format: {path.suffix}")


class EmbeddingConfig(BaseModel):
    """Embedding provider settings."""
    provider: Literal["openai", "local", "fake"] = "openai"
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    dimension: int | None = None
    request_delay: float = 0.05
    timeout: float | None = 30.0


class SummarizerConfig(BaseModel):
    """Contextual summary settings. Disabled means plain overlap chunking."""
    enabled: bool = True
    provider: Literal["openai", "anthropic"] = "openai"
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    max_concurrency: int = 1
    timeout: float | None = 30.0


class RerankConfig(BaseModel):
    """Reranking settings."""
    provider: Literal["none", "cross_encoder", "llm"] = "none"
    model: str | None = None
    llm_provider: Literal["openai", "anthropic"] = "openai"
    api_key: str | None = None
    timeout: float | None = 10.0


class StorageConfig(BaseModel):
    """Storage backends."""
    backend: Literal["sqlite", "memory"] = "sqlite"
    db_path: str = "kbrag.db"
    blob_backend: Literal["local", "memory"] = "local"
    blob_root: str = "kbrag_files"


class KnowledgeBaseConfig(Config):
    """Configuration for a knowledge base."""
    chunking: ChunkingOptions = Field(default_factory=ChunkingOptions)
    retrieval: RetrievalOptions = Field(default_factory=RetrievalOptions)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    rerank: RerankConfig = Field(default_factory=RerankConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    image_provider: Literal["openai", "anthropic"] | None = None
    log_level: str = "INFO"


def load_config(path: str | Path = "kbrag.yaml") -> KnowledgeBaseConfig:
    """
    Load knowledge base configuration from file.

    Args:
        path: Path to config file

    Returns:
        KnowledgeBaseConfig instance (defaults if the file does not exist)
    """
    path = Path(path)

    if not path.exists():
        return KnowledgeBaseConfig()

    return KnowledgeBaseConfig.from_file(path)
