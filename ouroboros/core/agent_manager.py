"""
Active specialist roles for a session.

The active role set decides the session's system instruction: the base
instruction followed by a short roster of active specialists and a knowledge
section per specialist. Every change to the set pushes a fresh instruction
to the bound session; history is untouched.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import TYPE_CHECKING, Callable, Iterator

from ouroboros.models.persona import AgentPersona
from ouroboros.personas import PersonaCatalog, expertise_prompt

if TYPE_CHECKING:
    from ouroboros.core.session import ConversationSession

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[list[AgentPersona]], None]


def build_specialist_instruction(base: str, personas: list[AgentPersona]) -> str:
    """Base instruction plus the active-specialist roster and knowledge base."""
    if not personas:
        return base

    roster = "\n".join(f"• {p.emoji} **{p.name}** - {p.description}" for p in personas)
    sections = []
    for p in personas:
        focus = ", ".join(p.specialties[:3])
        sections.append(
            f"## {p.emoji} {p.name} ({p.id})\n\n"
            f"**Category**: {p.category}\n"
            f"**Specialties**: {', '.join(p.specialties)}\n\n"
            f"**Expert Knowledge & Approach**:\n{expertise_prompt(p)}\n\n"
            f"**When to engage this specialist**: When users ask about {focus}, "
            f"or related topics in {p.category}."
        )

    parts = [
        base.rstrip(),
        "# ACTIVE SPECIALIST AGENTS\n\n"
        "You have access to the following specialist agents' expertise:\n" + roster,
        "# SPECIALIST AGENT KNOWLEDGE BASE\n\n" + "\n\n".join(sections),
    ]
    return "\n\n".join(p for p in parts if p)


class AgentManager:
    """Owns the active persona set of one session."""

    def __init__(self, catalog: PersonaCatalog, session: ConversationSession | None = None):
        self.catalog = catalog
        self.session = session
        self._active: list[str] = []
        self._lock = threading.RLock()
        self._change_callbacks: list[ChangeCallback] = []

    def bind(self, session: ConversationSession) -> None:
        """Attach to a session and push the current instruction to it."""
        with self._lock:
            self.session = session
            self._sync()

    def on_change(self, callback: ChangeCallback) -> None:
        self._change_callbacks.append(callback)

    # ── Queries ───────────────────────────────────────────────────────

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def active_agents(self) -> list[AgentPersona]:
        with self._lock:
            return [self.catalog.require(pid) for pid in self._active]

    def is_active(self, persona_id: str) -> bool:
        with self._lock:
            return persona_id in self._active

    def stats(self) -> dict[str, object]:
        active = self.active_agents()
        by_category: dict[str, int] = {}
        for persona in active:
            by_category[persona.category] = by_category.get(persona.category, 0) + 1
        return {
            "total_available": len(self.catalog),
            "active_count": len(active),
            "active_ids": [p.id for p in active],
            "active_by_category": by_category,
        }

    # ── Mutation ──────────────────────────────────────────────────────

    def activate(self, persona_id: str) -> AgentPersona:
        """
        Add a persona to the active set.

        Raises:
            PersonaNotFound: persona_id isn't in the catalog
        """
        persona = self.catalog.require(persona_id)
        with self._lock:
            if persona_id not in self._active:
                self._active.append(persona_id)
                logger.info("Activated agent %s", persona_id)
                self._changed()
        return persona

    def deactivate(self, persona_id: str) -> bool:
        with self._lock:
            if persona_id not in self._active:
                return False
            self._active.remove(persona_id)
            logger.info("Deactivated agent %s", persona_id)
            self._changed()
            return True

    def deactivate_all(self) -> None:
        with self._lock:
            if not self._active:
                return
            self._active = []
            self._changed()

    def save_state(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._active)

    def restore_state(self, state: tuple[str, ...] | list[str]) -> None:
        """Make exactly state the active set (unknown ids are dropped)."""
        ids = [pid for pid in state if pid in self.catalog]
        with self._lock:
            if ids == self._active:
                return
            self._active = ids
            self._changed()

    @contextmanager
    def temporary_activation(self, persona_ids: list[str]) -> Iterator[list[AgentPersona]]:
        """
        Make persona_ids the active set for the duration of the block.

        The previous set is restored exactly once when the block exits,
        however it exits. Unknown ids are skipped with a warning.
        """
        known = []
        for pid in persona_ids:
            if pid in self.catalog:
                if pid not in known:
                    known.append(pid)
            else:
                logger.warning("Skipping unknown agent %s", pid)

        saved = self.save_state()
        self.restore_state(known)
        try:
            yield [self.catalog.require(pid) for pid in known]
        finally:
            self.restore_state(saved)
            logger.debug("Restored active agents: %s", list(saved) or "none")

    # ── Session sync ──────────────────────────────────────────────────

    def system_instruction(self, base: str | None = None) -> str:
        if base is None:
            base = self.session.base_instruction if self.session is not None else ""
        return build_specialist_instruction(base, self.active_agents())

    def _changed(self) -> None:
        self._sync()
        active = self.active_agents()
        for callback in list(self._change_callbacks):
            try:
                callback(active)
            except Exception:
                logger.exception("Agent change callback failed")

    def _sync(self) -> None:
        if self.session is None:
            return
        active = self.active_agents()
        self.session.set_system_instruction(self.system_instruction())
        if len(active) == 1:
            self.session.set_agent(active[0].id, active[0].name, active[0].emoji)
        else:
            self.session.set_agent(None)

