"""Configuration management for code-context."""

from __future__ import annotations

import copy
import hashlib
import json
import os
from pathlib import Path
from typing import Dict, List, Optional


DEFAULT_INCLUDE_PATTERNS: List[str] = [
    "*.py", "*.js", "*.ts", "*.tsx", "*.jsx",
    "*.go", "*.java", "*.kt", "*.cs",
    "*.rb", "*.php", "*.rs",
    "*.c", "*.h", "*.cpp", "*.hpp",
    "*.swift", "*.scala", "*.lua",
    "*.md", "*.txt", "*.yaml", "*.yml", "*.json", "*.toml",
]

DEFAULT_EXCLUDE_PATTERNS: List[str] = [
    ".git/**",
    "node_modules/**",
    "dist/**",
    "build/**",
    ".venv/**",
    "venv/**",
    "__pycache__/**",
    ".code_context/**",
    ".lancedb/**",
    "target/**",
    ".next/**",
    ".idea/**",
    ".vscode/**",
    ".env",
    ".env.*",
    "*.lock",
    "*.min.js",
]

_HOME_DIR = Path("~/.code_context").expanduser()

DEFAULT_CONFIG: Dict = {
    "max_file_size_kb": 512,
    "chunk_max_chars": 2500,
    "chunk_overlap_chars": 300,
    "min_chunk_chars": 8,
    "files_per_commit": 16,
    "workers": {
        "files": 4,
        "embedding": 2,
    },
    "embedding": {
        "backend": "sentence_transformers",
        "sentence_transformers_model": "sentence-transformers/all-MiniLM-L6-v2",
        "batch_size": 32,
        "max_batch_tokens": 8000,
        "max_attempts": 3,
        "backoff_base": 1.0,
        "backoff_max": 30.0,
        "http": {
            "api_base": "https://api.openai.com/v1",
            "model": "text-embedding-3-small",
            "api_key": None,
            "dimension": None,
            "timeout": 30,
        },
    },
    "search": {"top_k": 8, "score_threshold": 0.0},
    "vector_store": {
        "backend": "qdrant",
        "hybrid": True,
        "qdrant": {
            "url": None,
            "host": "localhost",
            "port": 6333,
            "path": None,
            "location": None,
        },
        "lancedb": {
            "path": str(_HOME_DIR / "lancedb"),
        },
    },
    "manifest": {
        "url": "sqlite:///" + (_HOME_DIR / "manifest.db").as_posix(),
    },
}

# Settings that change the chunk set or its vectors; changing any of them
# forces a full reindex.
FINGERPRINT_KEYS = (
    "chunk_max_chars",
    "chunk_overlap_chars",
    "min_chunk_chars",
)


def expand_pattern(pattern: str) -> List[str]:
    """Expand pattern to include both root and nested versions.

    Examples:
        '*.py' -> ['*.py', '**/*.py']
        'venv/**' -> ['venv/**', '**/venv/**']
    """
    pattern = pattern.strip()
    if not pattern or pattern.startswith("#"):
        return []

    if pattern.startswith("**/"):
        return [pattern]

    if pattern.startswith("*."):
        return [pattern, "**/" + pattern]

    if "/**" in pattern:
        return [pattern, "**/" + pattern]

    return [pattern]


def _expand_patterns(patterns: List[str]) -> List[str]:
    """Expand and deduplicate patterns while preserving order."""
    out: List[str] = []
    seen: set[str] = set()
    for p in patterns:
        for ep in expand_pattern(p):
            if ep not in seen:
                seen.add(ep)
                out.append(ep)
    return out


def _deep_merge(base: Dict, overrides: Dict) -> Dict:
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _env_overrides() -> Dict:
    out: Dict = {}
    vs = out.setdefault("vector_store", {})
    emb = out.setdefault("embedding", {})

    if os.getenv("VECTOR_STORE_BACKEND"):
        vs["backend"] = os.environ["VECTOR_STORE_BACKEND"].strip().lower()
    qdrant: Dict = {}
    if os.getenv("QDRANT_URL"):
        qdrant["url"] = os.environ["QDRANT_URL"]
    if os.getenv("QDRANT_HOST"):
        qdrant["host"] = os.environ["QDRANT_HOST"]
    if os.getenv("QDRANT_PORT"):
        qdrant["port"] = int(os.environ["QDRANT_PORT"])
    if qdrant:
        vs["qdrant"] = qdrant
    if os.getenv("LANCEDB_PATH"):
        vs["lancedb"] = {"path": os.environ["LANCEDB_PATH"]}

    if os.getenv("EMBEDDING_BACKEND"):
        emb["backend"] = os.environ["EMBEDDING_BACKEND"].strip().lower()
    http: Dict = {}
    if os.getenv("EMBEDDING_API_BASE"):
        http["api_base"] = os.environ["EMBEDDING_API_BASE"]
    if os.getenv("EMBEDDING_MODEL"):
        http["model"] = os.environ["EMBEDDING_MODEL"]
    if os.getenv("EMBEDDING_API_KEY"):
        http["api_key"] = os.environ["EMBEDDING_API_KEY"]
    if http:
        emb["http"] = http

    if os.getenv("CODE_CONTEXT_MANIFEST_URL"):
        out["manifest"] = {"url": os.environ["CODE_CONTEXT_MANIFEST_URL"]}
    return out


def load_config(repo: Optional[Path] = None, overrides: Optional[Dict] = None) -> Dict:
    """Load configuration.

    Defaults, then environment variables, then explicit ``overrides``.
    This is the only place the environment is consulted; every component
    receives its settings from the returned dict.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    _deep_merge(config, _env_overrides())
    if overrides:
        _deep_merge(config, copy.deepcopy(overrides))

    config.setdefault("include_globs", _expand_patterns(DEFAULT_INCLUDE_PATTERNS))
    config.setdefault("exclude_globs", _expand_patterns(DEFAULT_EXCLUDE_PATTERNS))
    if repo is not None:
        config["repo"] = str(Path(repo).resolve())

    return config


def cfg_fingerprint(cfg: Dict) -> str:
    """Generate fingerprint hash for the settings that shape the index."""
    subset = {k: cfg.get(k) for k in FINGERPRINT_KEYS}
    emb = cfg.get("embedding", {})
    backend = emb.get("backend")
    subset["embedding_backend"] = backend
    if backend == "http":
        subset["embedding_model"] = emb.get("http", {}).get("model")
    else:
        subset["embedding_model"] = emb.get("sentence_transformers_model")
    subset["hybrid"] = bool(cfg.get("vector_store", {}).get("hybrid", True))
    payload = json.dumps(subset, sort_keys=True, ensure_ascii=False).encode("utf-8")
    return hashlib.sha256(payload).hexdigest()
