"""Custom exceptions for the deep research engine."""


class DeepResearchError(Exception):
    """Base exception for deep research errors."""

    pass


class InvalidConfiguration(DeepResearchError, ValueError):
    """Raised at construction time when a component is misconfigured."""

    pass


class LLMProviderError(DeepResearchError):
    """Raised when LLM provider configuration is invalid."""

    pass


class TransientProviderFailure(DeepResearchError):
    """Raised when a generation or search call keeps failing after bounded retries."""

    def __init__(self, message: str, attempts: int = 0):
        super().__init__(message)
        self.attempts = attempts


class CacheFailure(DeepResearchError):
    """Raised internally when a cache get/set or fingerprint fails.

    Never escapes the cache facade; callers see a miss instead.
    """

    pass


class FormatError(DeepResearchError):
    """Raised internally when generative output does not match the expected schema."""

    pass
