"""Circuit breaking, retry classification and SSE stream relaying for an LLM gateway."""

__version__ = "0.1.0"
__all__ = ["circuitbreaker", "retry", "stream"]