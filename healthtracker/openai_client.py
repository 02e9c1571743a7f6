"""
Thin wrapper around the OpenAI chat completion API used for report text.

Behaviour hierarchy:
1. If USE_OFFLINE_MODEL is set, return a deterministic placeholder without any
   external calls.
2. Otherwise call the real OpenAI API with the key from OPENAI_API_KEY.

Any failure (missing key, network, SDK or empty output) is raised as
:class:`~healthtracker.errors.GenerationError` so callers have a single
fallback path.
"""

from typing import Dict, List, Optional
import hashlib
import os

import structlog

from healthtracker.config import get_settings
from healthtracker.errors import GenerationError

# ``openai`` is imported lazily so offline deterministic mode works without
# network configuration.

logger = structlog.get_logger(__name__)


def _use_offline() -> bool:
    return os.getenv("USE_OFFLINE_MODEL", "").lower() in {"1", "true", "yes"}


def _deterministic_placeholder(messages: List[Dict[str, str]]) -> str:
    """Return a deterministic placeholder string based on the message content."""
    joined = "\n".join(f"{m.get('role')}:{m.get('content','')}" for m in messages)
    h = hashlib.sha1(joined.encode("utf-8")).hexdigest()[:12]
    return f"Offline response ({h})"


def call_openai(
    messages: List[Dict[str, str]],
    model: Optional[str] = None,
    temperature: float = 0.7,
) -> str:
    """Chat completion with an offline deterministic mode.

    Args:
        messages: OpenAI-style message dicts.
        model: Remote model name; defaults to ``OPENAI_MODEL``.
        temperature: Sampling temperature.
    Returns:
        Assistant response content string.
    Raises:
        GenerationError on any failure outside offline mode.
    """
    if _use_offline():
        return _deterministic_placeholder(messages)

    api_key = os.getenv("OPENAI_API_KEY")
    if not api_key:
        raise GenerationError("OpenAI key not configured.")
    model_name = model or get_settings().openai_model
    try:
        from openai import OpenAI

        client = OpenAI(api_key=api_key)
        response = client.chat.completions.create(
            model=model_name,
            messages=messages,
            temperature=temperature,
        )
        content = response.choices[0].message.content
    except Exception as exc:  # pragma: no cover - network errors / SDK issues
        logger.warning("openai_call_failed", model=model_name, error=str(exc))
        raise GenerationError(f"Error calling OpenAI: {exc}") from exc
    if not content or not content.strip():
        raise GenerationError("Empty response from OpenAI")
    return content


def generate(prompt: str, *, system: Optional[str] = None) -> str:
    """Generate text for a single *prompt*."""

    messages: List[Dict[str, str]] = []
    if system:
        messages.append({"role": "system", "content": system})
    messages.append({"role": "user", "content": prompt})
    return call_openai(messages)
