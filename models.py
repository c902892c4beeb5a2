"""Catalog of the Groq models the relay accepts."""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, List


@dataclass(frozen=True)
class ModelInfo:
    """Display metadata for one upstream model."""

    id: str
    name: str
    provider: str
    context_length: int
    vision: bool = False


MODEL_CATALOG: List[ModelInfo] = [
    ModelInfo(id="openai/gpt-oss-120b", name="GPT-OSS 120B", provider="OpenAI", context_length=131_072),
    ModelInfo(id="openai/gpt-oss-20b", name="GPT-OSS 20B", provider="OpenAI", context_length=131_072),
    ModelInfo(
        id="meta-llama/llama-4-scout-17b-16e-instruct",
        name="Llama 4 Scout 17B",
        provider="Meta",
        context_length=131_072,
        vision=True,
    ),
    ModelInfo(id="moonshotai/kimi-k2-instruct-0905", name="Kimi K2", provider="Moonshot AI", context_length=262_144),
    ModelInfo(id="qwen/qwen3-32b", name="Qwen3 32B", provider="Alibaba", context_length=131_072),
    ModelInfo(id="llama-3.1-8b-instant", name="Llama 3.1 8B Instant", provider="Meta", context_length=131_072),
]

ALLOWED_MODELS: FrozenSet[str] = frozenset(m.id for m in MODEL_CATALOG)
VISION_MODELS: FrozenSet[str] = frozenset(m.id for m in MODEL_CATALOG if m.vision)


def supports_vision(model_id: str) -> bool:
    """Check whether a model accepts image_url content parts."""
    return model_id in VISION_MODELS
