"""Tests for :mod:`s3rag.core.config`."""

from __future__ import annotations

import tomllib
from pathlib import Path

import pytest

from s3rag.core.config import (
    AppConfig,
    ConfigError,
    SyncTrigger,
    env_config_from_environ,
    load_config,
    load_packaged_defaults,
    read_user_config,
    render_user_config,
)


@pytest.fixture
def defaults() -> dict:
    return load_packaged_defaults()


def test_packaged_defaults_build_a_valid_config(defaults) -> None:
    config = load_config(defaults=defaults)

    assert config.s3.region == "us-east-1"
    assert config.s3.suffixes == (".md",)
    assert config.embeddings.provider == "ollama"
    assert config.rag.chunk_size == 1000
    assert config.rag.chunk_overlap == 200
    assert config.rag.max_results == 4
    assert config.rag.min_similarity_score == 0.5
    assert config.sync.mode is SyncTrigger.STARTUP
    assert config.sync.interval_minutes == 5
    assert config.workspace == Path("~/.s3rag").expanduser()


def test_precedence_cli_over_env_over_user_over_defaults(defaults) -> None:
    config = load_config(
        defaults=defaults,
        user_config={"s3": {"bucket": "user", "prefix": "docs/"}, "rag": {"max_results": 6}},
        env_config={"s3": {"bucket": "env"}, "rag": {"max_results": 8}},
        cli_overrides={"s3": {"bucket": "cli"}},
    )

    assert config.s3.bucket == "cli"
    assert config.s3.prefix == "docs/"
    assert config.rag.max_results == 8
    assert config.rag.chunk_size == 1000


def test_env_bindings_coerce_values() -> None:
    layer = env_config_from_environ(
        {
            "S3_BUCKET_NAME": "docs",
            "S3_FORCE_PATH_STYLE": "true",
            "S3_ENDPOINT": "http://minio:9000",
            "EMBEDDING_PROVIDER": "OpenAI",
            "OPENAI_API_KEY": "sk-test",
            "CHUNK_SIZE": "500",
            "MIN_SIMILARITY_SCORE": "0.3",
            "SYNC_MODE": "manual",
            "S3_PREFIX": "   ",
            "UNRELATED": "ignored",
        }
    )

    assert layer == {
        "s3": {
            "bucket": "docs",
            "force_path_style": True,
            "endpoint": "http://minio:9000",
        },
        "embeddings": {"provider": "OpenAI", "openai": {"api_key": "sk-test"}},
        "rag": {"chunk_size": 500, "min_similarity_score": 0.3},
        "sync": {"mode": "manual"},
    }


def test_env_layer_flows_into_settings(defaults) -> None:
    env = env_config_from_environ(
        {"EMBEDDING_PROVIDER": " OpenAI ", "SYNC_MODE": "Periodic", "OPENAI_API_KEY": "sk"}
    )

    config = load_config(defaults=defaults, env_config=env)

    assert config.embeddings.provider == "openai"
    assert config.embeddings.openai.is_valid()
    assert config.sync.mode is SyncTrigger.PERIODIC


def test_invalid_number_in_environment_raises() -> None:
    with pytest.raises(ConfigError, match="CHUNK_SIZE"):
        env_config_from_environ({"CHUNK_SIZE": "big"})


@pytest.mark.parametrize(
    "layer",
    [
        {"rag": {"chunk_size": 100, "chunk_overlap": 100}},
        {"rag": {"max_results": 0}},
        {"embeddings": {"provider": "cohere"}},
        {"s3": {"suffixes": []}},
    ],
)
def test_invalid_values_raise_config_error(defaults, layer) -> None:
    with pytest.raises(ConfigError):
        load_config(defaults=defaults, user_config=layer)


def test_relative_data_paths_resolve_against_workspace(tmp_path: Path) -> None:
    config = AppConfig(
        workspace={"root": str(tmp_path)},
        sync={"state_file": "state/sync.json"},
        vector_store={"path": "/srv/index"},
    )

    assert config.state_file_path == tmp_path / "state" / "sync.json"
    assert config.vector_store_path == Path("/srv/index")


def test_read_user_config(tmp_path: Path) -> None:
    assert read_user_config(tmp_path / "missing.toml") == {}

    good = tmp_path / "s3rag.toml"
    good.write_text('[s3]\nbucket = "docs"\n', encoding="utf-8")
    assert read_user_config(good) == {"s3": {"bucket": "docs"}}

    bad = tmp_path / "bad.toml"
    bad.write_text("[s3\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        read_user_config(bad)


def test_render_user_config_omits_credentials(defaults, tmp_path: Path) -> None:
    config = load_config(
        defaults=defaults,
        env_config={
            "s3": {"access_key_id": "AKIA", "secret_access_key": "s3-secret"},
            "embeddings": {"openai": {"api_key": "sk-secret"}},
        },
        cli_overrides={"workspace": {"root": str(tmp_path)}, "s3": {"bucket": "docs"}},
    )

    rendered = render_user_config(config)

    assert rendered.startswith("# Generated by s3rag init")
    for secret in ("AKIA", "s3-secret", "sk-secret"):
        assert secret not in rendered

    reparsed = load_config(defaults=defaults, user_config=tomllib.loads(rendered))
    assert reparsed.s3.bucket == "docs"
    assert reparsed.workspace == tmp_path
    assert reparsed.rag == config.rag
    assert reparsed.sync == config.sync
