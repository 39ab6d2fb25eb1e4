from __future__ import annotations

from llmgate.core.providers.openai_compatible import OpenAICompatibleAdapter


class GroqAdapter(OpenAICompatibleAdapter):
    """Groq's OpenAI-compatible endpoint.

    Groq requests are aborted at the HTTP level: when the deadline passes or an interrupt arrives
    the pending request task is cancelled, which closes the connection instead of waiting for the
    next token.
    """

    name = "groq"
    native_abort = True
