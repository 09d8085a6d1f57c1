"""Ollama-compatible reverse proxy for OpenAI-style cloud inference APIs."""

__version__ = "0.1.0"
