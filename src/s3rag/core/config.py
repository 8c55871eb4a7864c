"""Configuration models and loaders for :mod:`s3rag`."""

from __future__ import annotations

from collections.abc import Mapping as MappingABC
from enum import StrEnum
from pathlib import Path
from typing import Any, Callable, Literal, Mapping

import tomllib
import tomlkit
from pydantic import (
    BaseModel,
    Field,
    SecretStr,
    ValidationError,
    field_validator,
    model_validator,
)

from s3rag.resources import get_resource

__all__ = [
    "AppConfig",
    "ConfigError",
    "DEFAULTS_RESOURCE_NAME",
    "EmbeddingSettings",
    "OllamaSettings",
    "OpenAISettings",
    "RagSettings",
    "S3Settings",
    "SyncSettings",
    "SyncTrigger",
    "VectorStoreSettings",
    "WorkspaceSettings",
    "env_config_from_environ",
    "load_config",
    "load_packaged_defaults",
    "read_packaged_defaults_text",
    "read_user_config",
    "render_user_config",
]

DEFAULTS_RESOURCE_NAME = "s3rag.defaults.toml"


class ConfigError(RuntimeError):
    """Raised when configuration files or values cannot be loaded."""


class SyncTrigger(StrEnum):
    """When the index is synchronized with the bucket."""

    STARTUP = "startup"
    PERIODIC = "periodic"
    MANUAL = "manual"


class WorkspaceSettings(BaseModel):
    """Workspace-level configuration values."""

    root: Path = Field(
        default_factory=lambda: Path("~/.s3rag").expanduser(),
        description="Absolute path to the workspace root.",
    )

    model_config = {"str_strip_whitespace": True, "validate_assignment": True}

    @model_validator(mode="before")
    @classmethod
    def _coerce_raw(cls, value: Any) -> Any:
        if isinstance(value, (str, Path)):
            return {"root": value}
        return value

    @field_validator("root")
    @classmethod
    def _expand(cls, value: Path) -> Path:
        return value.expanduser()


class S3Settings(BaseModel):
    """Bucket coordinates and credentials for the remote document store."""

    bucket: str = Field(default="", description="Bucket holding documents.")
    region: str = Field(default="us-east-1")
    prefix: str = Field(
        default="",
        description="Only keys under this prefix are listed.",
    )
    endpoint: str | None = Field(
        default=None,
        description="Custom endpoint URL for S3-compatible services.",
    )
    force_path_style: bool = Field(default=False)
    access_key_id: str | None = Field(default=None)
    secret_access_key: SecretStr | None = Field(default=None)
    suffixes: tuple[str, ...] = Field(
        default=(".md",),
        description="Key suffixes considered documents (case-insensitive).",
    )

    model_config = {"str_strip_whitespace": True, "frozen": True}

    @field_validator("endpoint", "access_key_id", mode="before")
    @classmethod
    def _blank_to_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("suffixes")
    @classmethod
    def _normalize_suffixes(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        normalized = tuple(
            dict.fromkeys(item.strip().lower() for item in value if item.strip())
        )
        if not normalized:
            raise ValueError("At least one document suffix is required.")
        return normalized


class OllamaSettings(BaseModel):
    base_url: str = Field(default="http://localhost:11434")
    model: str = Field(default="nomic-embed-text")
    timeout: float = Field(default=60.0, gt=0.0)

    model_config = {"str_strip_whitespace": True, "frozen": True}

    def is_valid(self) -> bool:
        return bool(self.base_url) and bool(self.model)


class OpenAISettings(BaseModel):
    api_key: SecretStr | None = Field(default=None)
    model: str = Field(default="text-embedding-3-small")
    base_url: str | None = Field(default=None)
    timeout: float = Field(default=30.0, gt=0.0)
    max_input_tokens: int | None = Field(default=None, ge=1)

    model_config = {"str_strip_whitespace": True, "frozen": True}

    def is_valid(self) -> bool:
        """Return ``True`` when both the API key and model are non-blank.

        Example:
            >>> OpenAISettings(api_key="sk-test").is_valid()
            True
            >>> OpenAISettings(api_key="  ").is_valid()
            False
        """

        key = self.api_key.get_secret_value().strip() if self.api_key else ""
        return bool(key) and bool(self.model)


class EmbeddingSettings(BaseModel):
    """Requested embedding provider plus per-provider settings."""

    provider: Literal["ollama", "openai"] = Field(default="ollama")
    ollama: OllamaSettings = Field(default_factory=OllamaSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)

    model_config = {"frozen": True}

    @field_validator("provider", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class RagSettings(BaseModel):
    """Chunking and retrieval tuning."""

    chunk_size: int = Field(default=1000, ge=1)
    chunk_overlap: int = Field(default=200, ge=0)
    max_results: int = Field(default=4, ge=1)
    min_similarity_score: float = Field(default=0.5)
    embed_batch_size: int = Field(
        default=64,
        ge=1,
        description="Maximum texts sent to the provider per request.",
    )

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_overlap(self) -> "RagSettings":
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be smaller than chunk_size")
        return self


class SyncSettings(BaseModel):
    mode: SyncTrigger = Field(default=SyncTrigger.STARTUP)
    interval_minutes: int = Field(default=5, ge=1)
    state_file: Path = Field(default=Path("data/.sync-state.json"))

    model_config = {"frozen": True}

    @field_validator("mode", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class VectorStoreSettings(BaseModel):
    path: Path = Field(default=Path("data/vector-store"))
    index_type: str = Field(
        default="Flat",
        description="FAISS factory suffix placed after ``IDMap2,``.",
    )
    lock_timeout: float = Field(default=30.0, ge=0.0)

    model_config = {"str_strip_whitespace": True, "frozen": True}


class AppConfig(BaseModel):
    """Root configuration for the :mod:`s3rag` application."""

    workspace_settings: WorkspaceSettings = Field(
        default_factory=WorkspaceSettings,
        alias="workspace",
    )
    log_level: str = Field(default="INFO")
    s3: S3Settings = Field(default_factory=S3Settings)
    embeddings: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    rag: RagSettings = Field(default_factory=RagSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)
    vector_store: VectorStoreSettings = Field(
        default_factory=VectorStoreSettings
    )

    model_config = {
        "str_strip_whitespace": True,
        "validate_assignment": True,
        "populate_by_name": True,
    }

    @model_validator(mode="after")
    def _post_process(self) -> "AppConfig":
        object.__setattr__(self, "log_level", self.log_level.upper())
        return self

    @property
    def workspace(self) -> Path:
        return self.workspace_settings.root

    def resolve_path(self, candidate: Path) -> Path:
        """Return ``candidate`` resolved against the workspace when relative.

        Example:
            >>> from pathlib import Path
            >>> config = AppConfig(workspace={"root": "/srv/s3rag"})
            >>> config.resolve_path(Path("data/x")).as_posix()
            '/srv/s3rag/data/x'
        """

        path = candidate.expanduser()
        if path.is_absolute():
            return path
        return self.workspace / path

    @property
    def state_file_path(self) -> Path:
        return self.resolve_path(self.sync.state_file)

    @property
    def vector_store_path(self) -> Path:
        return self.resolve_path(self.vector_store.path)


def read_packaged_defaults_text() -> str:
    """Return the raw packaged defaults TOML content.

    Example:
        >>> read_packaged_defaults_text().startswith("#")
        True
    """

    return get_resource(DEFAULTS_RESOURCE_NAME).read_text(encoding="utf-8")


def load_packaged_defaults() -> dict[str, Any]:
    """Load the packaged defaults as a plain dictionary.

    Example:
        >>> load_packaged_defaults()["rag"]["chunk_size"]
        1000
    """

    return tomllib.loads(read_packaged_defaults_text())


def read_user_config(path: Path) -> dict[str, Any]:
    """Parse a user ``s3rag.toml``; a missing file yields an empty mapping."""

    if not path.exists():
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise ConfigError(f"Failed to read config {path}: {exc}") from exc


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Environment variable -> (config path, coercion).
_ENV_BINDINGS: tuple[tuple[str, tuple[str, ...], Callable[[str], Any]], ...] = (
    ("S3RAG_WORKSPACE", ("workspace", "root"), str),
    ("S3RAG_LOG_LEVEL", ("log_level",), str),
    ("S3_BUCKET_NAME", ("s3", "bucket"), str),
    ("S3_REGION", ("s3", "region"), str),
    ("S3_PREFIX", ("s3", "prefix"), str),
    ("S3_ENDPOINT", ("s3", "endpoint"), str),
    ("S3_FORCE_PATH_STYLE", ("s3", "force_path_style"), _as_bool),
    ("S3_ACCESS_KEY_ID", ("s3", "access_key_id"), str),
    ("S3_SECRET_ACCESS_KEY", ("s3", "secret_access_key"), str),
    ("EMBEDDING_PROVIDER", ("embeddings", "provider"), str),
    ("OLLAMA_BASE_URL", ("embeddings", "ollama", "base_url"), str),
    ("OLLAMA_EMBEDDING_MODEL", ("embeddings", "ollama", "model"), str),
    ("OPENAI_API_KEY", ("embeddings", "openai", "api_key"), str),
    ("OPENAI_EMBEDDING_MODEL", ("embeddings", "openai", "model"), str),
    ("OPENAI_BASE_URL", ("embeddings", "openai", "base_url"), str),
    ("CHUNK_SIZE", ("rag", "chunk_size"), int),
    ("CHUNK_OVERLAP", ("rag", "chunk_overlap"), int),
    ("MAX_RESULTS", ("rag", "max_results"), int),
    ("MIN_SIMILARITY_SCORE", ("rag", "min_similarity_score"), float),
    ("SYNC_MODE", ("sync", "mode"), str),
    ("SYNC_INTERVAL_MINUTES", ("sync", "interval_minutes"), int),
    ("VECTOR_STORE_PATH", ("vector_store", "path"), str),
)


def env_config_from_environ(environ: Mapping[str, str]) -> dict[str, Any]:
    """Translate recognised environment variables into a config layer.

    Blank values are ignored so an exported-but-empty variable does not
    override lower layers.

    Example:
        >>> env_config_from_environ({"S3_BUCKET_NAME": "docs", "CHUNK_SIZE": "500"})
        {'s3': {'bucket': 'docs'}, 'rag': {'chunk_size': 500}}

    Raises:
        ConfigError: If a numeric variable cannot be parsed.
    """

    layer: dict[str, Any] = {}
    for name, path, coerce in _ENV_BINDINGS:
        raw = environ.get(name)
        if raw is None or not raw.strip():
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc
        target = layer
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = value
    return layer


def _deep_merge(
    base: Mapping[str, Any],
    overlay: Mapping[str, Any],
) -> dict[str, Any]:
    """Recursively merge ``overlay`` into ``base`` returning a new dict."""

    merged: dict[str, Any] = dict(base)
    for key, value in overlay.items():
        if (
            key in merged
            and isinstance(merged[key], MappingABC)
            and isinstance(value, MappingABC)
        ):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(
    *,
    defaults: Mapping[str, Any],
    user_config: Mapping[str, Any] | None = None,
    env_config: Mapping[str, Any] | None = None,
    cli_overrides: Mapping[str, Any] | None = None,
) -> AppConfig:
    """Load configuration according to the precedence stack.

    Layers are deep merged in order: packaged defaults, user ``s3rag.toml``,
    environment, CLI flags.

    Raises:
        ConfigError: If the merged payload fails validation.
    """

    stack = dict(defaults)
    for layer in (user_config, env_config, cli_overrides):
        if layer:
            stack = _deep_merge(stack, layer)

    try:
        return AppConfig(**stack)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration: {exc}") from exc


def _table(values: Mapping[str, Any]) -> Any:
    table = tomlkit.table()
    for key, value in values.items():
        if value is None:
            continue
        table[key] = value
    return table


def render_user_config(
    config: AppConfig,
    *,
    include_defaults: bool = True,
) -> str:
    """Render a ``s3rag.toml`` for users to customize.

    Credentials (S3 keys, OpenAI API key) are never written; they are read
    from the environment instead.
    """

    document = tomlkit.document()

    if include_defaults:
        document.add(tomlkit.comment("Generated by s3rag init"))
        document.add(
            tomlkit.comment(
                "Precedence: CLI flags > env vars > s3rag.toml > defaults"
            )
        )
        document.add(tomlkit.comment("Credentials come from the environment:"))
        document.add(tomlkit.comment("  S3_ACCESS_KEY_ID / S3_SECRET_ACCESS_KEY"))
        document.add(tomlkit.comment("  OPENAI_API_KEY"))
        document.add(tomlkit.nl())

    document["log_level"] = config.log_level
    document["workspace"] = _table({"root": str(config.workspace)})

    s3 = config.s3
    document["s3"] = _table(
        {
            "bucket": s3.bucket,
            "region": s3.region,
            "prefix": s3.prefix,
            "endpoint": s3.endpoint,
            "force_path_style": s3.force_path_style,
            "suffixes": list(s3.suffixes),
        }
    )

    embeddings = tomlkit.table()
    embeddings["provider"] = config.embeddings.provider
    ollama = config.embeddings.ollama
    embeddings.add(
        "ollama",
        _table(
            {
                "base_url": ollama.base_url,
                "model": ollama.model,
                "timeout": ollama.timeout,
            }
        ),
    )
    openai = config.embeddings.openai
    embeddings.add(
        "openai",
        _table(
            {
                "model": openai.model,
                "base_url": openai.base_url,
                "timeout": openai.timeout,
                "max_input_tokens": openai.max_input_tokens,
            }
        ),
    )
    document["embeddings"] = embeddings

    document["rag"] = _table(config.rag.model_dump())
    document["sync"] = _table(
        {
            "mode": config.sync.mode.value,
            "interval_minutes": config.sync.interval_minutes,
            "state_file": config.sync.state_file.as_posix(),
        }
    )
    document["vector_store"] = _table(
        {
            "path": config.vector_store.path.as_posix(),
            "index_type": config.vector_store.index_type,
            "lock_timeout": config.vector_store.lock_timeout,
        }
    )

    return tomlkit.dumps(document)
