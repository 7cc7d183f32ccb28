from __future__ import annotations

from pathlib import Path

import pytest

from code_context.config import DEFAULT_CONFIG, cfg_fingerprint, expand_pattern, load_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "QDRANT_URL",
        "QDRANT_HOST",
        "QDRANT_PORT",
        "LANCEDB_PATH",
        "VECTOR_STORE_BACKEND",
        "EMBEDDING_BACKEND",
        "EMBEDDING_API_BASE",
        "EMBEDDING_MODEL",
        "EMBEDDING_API_KEY",
        "CODE_CONTEXT_MANIFEST_URL",
    ):
        monkeypatch.delenv(name, raising=False)


def test_defaults(tmp_path: Path) -> None:
    cfg = load_config(tmp_path)

    assert cfg["chunk_max_chars"] == 2500
    assert cfg["chunk_overlap_chars"] == 300
    assert cfg["vector_store"]["backend"] == "qdrant"
    assert cfg["repo"] == str(tmp_path.resolve())
    assert "**/*.py" in cfg["include_globs"]
    assert "**/node_modules/**" in cfg["exclude_globs"]


def test_load_config_does_not_mutate_defaults() -> None:
    cfg = load_config(overrides={"vector_store": {"qdrant": {"port": 7000}}})

    assert cfg["vector_store"]["qdrant"]["port"] == 7000
    assert cfg["vector_store"]["qdrant"]["host"] == "localhost"
    assert DEFAULT_CONFIG["vector_store"]["qdrant"]["port"] == 6333


def test_environment_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QDRANT_URL", "http://qdrant:6333")
    monkeypatch.setenv("QDRANT_PORT", "6400")
    monkeypatch.setenv("VECTOR_STORE_BACKEND", "LanceDB")
    monkeypatch.setenv("EMBEDDING_API_KEY", "sk-test")

    cfg = load_config()

    assert cfg["vector_store"]["qdrant"]["url"] == "http://qdrant:6333"
    assert cfg["vector_store"]["qdrant"]["port"] == 6400
    assert cfg["vector_store"]["backend"] == "lancedb"
    assert cfg["embedding"]["http"]["api_key"] == "sk-test"
    assert cfg["embedding"]["http"]["model"] == "text-embedding-3-small"


def test_explicit_overrides_win_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("VECTOR_STORE_BACKEND", "lancedb")

    cfg = load_config(overrides={"vector_store": {"backend": "memory"}})

    assert cfg["vector_store"]["backend"] == "memory"


def test_fingerprint_tracks_index_shaping_settings() -> None:
    base = load_config()
    same = load_config(overrides={"search": {"top_k": 50}})
    resized = load_config(overrides={"chunk_max_chars": 1200})
    no_hybrid = load_config(overrides={"vector_store": {"hybrid": False}})

    assert cfg_fingerprint(base) == cfg_fingerprint(same)
    assert cfg_fingerprint(base) != cfg_fingerprint(resized)
    assert cfg_fingerprint(base) != cfg_fingerprint(no_hybrid)


def test_expand_pattern() -> None:
    assert expand_pattern("*.py") == ["*.py", "**/*.py"]
    assert expand_pattern("venv/**") == ["venv/**", "**/venv/**"]
    assert expand_pattern("**/x") == ["**/x"]
    assert expand_pattern("# comment") == []
