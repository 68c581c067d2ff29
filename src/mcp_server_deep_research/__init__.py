"""MCP server for recursive deep research."""

__version__ = "0.1.0"

from .config import settings  # noqa: E402
from .exceptions import DeepResearchError, InvalidConfiguration, LLMProviderError  # noqa: E402
from .providers import get_llm  # noqa: E402
from .research import ResearchMachine, deep_research, research  # noqa: E402
from .server import main, serve  # noqa: E402

__all__ = [
    "__version__",
    "main",
    "serve",
    "settings",
    "get_llm",
    "deep_research",
    "research",
    "ResearchMachine",
    "DeepResearchError",
    "InvalidConfiguration",
    "LLMProviderError",
]
