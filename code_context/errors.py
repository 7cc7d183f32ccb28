"""Error taxonomy for code-context."""

from __future__ import annotations


class CodeContextError(Exception):
    """Base class for all code-context errors."""


class UnsupportedLanguage(CodeContextError):
    """No grammar is available for a language; callers fall back to text splitting."""

    def __init__(self, language: str | None):
        super().__init__(f"Unsupported language: {language!r}")
        self.language = language


class ProviderError(CodeContextError):
    """Embedding provider failure that is worth retrying."""


class ProviderUnavailable(ProviderError):
    pass


class ProviderRateLimited(ProviderError):
    pass


class VectorStoreUnavailable(CodeContextError):
    """The vector store backend cannot be reached."""


class CorruptManifest(CodeContextError):
    """The persisted manifest cannot be read."""


class IndexNotFoundError(CodeContextError, ValueError):
    pass


class DeadlineExceeded(CodeContextError, TimeoutError):
    pass
