"""
Stream normalizers: one per backend family, plus a generic fallback.
"""

from ouroboros.core.normalizers.anthropic import AnthropicNormalizer
from ouroboros.core.normalizers.base import StreamNormalizer
from ouroboros.core.normalizers.generic import GenericNormalizer
from ouroboros.core.normalizers.openai import OpenAINormalizer

_NORMALIZERS: dict[str, type[StreamNormalizer]] = {
    "openai": OpenAINormalizer,
    "anthropic": AnthropicNormalizer,
}


def get_normalizer(provider_id: str) -> StreamNormalizer:
    """Normalizer for provider_id; unknown providers get the generic one."""
    normalizer_cls = _NORMALIZERS.get(provider_id)
    if normalizer_cls is None:
        return GenericNormalizer(provider_id)
    return normalizer_cls()


__all__ = [
    "AnthropicNormalizer",
    "GenericNormalizer",
    "OpenAINormalizer",
    "StreamNormalizer",
    "get_normalizer",
]
