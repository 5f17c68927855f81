"""
Fallback normalizer for any provider without a dedicated one.

Behaves like the Anthropic normalizer (complete tool blocks, no recovery
request on an empty response) but keeps no provider-private metadata.
"""

from __future__ import annotations

from ouroboros.core.normalizers.anthropic import BlockTurnAssembler
from ouroboros.core.normalizers.base import StreamNormalizer


class GenericNormalizer(StreamNormalizer):
    def __init__(self, provider_id: str = "generic"):
        super().__init__(provider_id)

    def new_assembler(self, agent_id: str | None = None) -> BlockTurnAssembler:
        return BlockTurnAssembler(agent_id)
