"""
Specialist persona catalog bundled with ouroboros.

The catalog lives in catalog.yaml next to this module, grouped by category.
It is static data: loaded once, read-only at runtime.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

import yaml

from ouroboros.errors import PersonaNotFound
from ouroboros.models.persona import AgentPersona

PERSONAS_DIR = Path(__file__).parent
CATALOG_PATH = PERSONAS_DIR / "catalog.yaml"

CATEGORIES: tuple[str, ...] = (
    "Architecture & Design",
    "AI/ML Specialists",
    "Security & Compliance",
    "Performance & Optimization",
    "Database & Data",
    "DevOps & Infrastructure",
    "Frontend Specialists",
    "Backend Specialists",
    "Specialized Domains",
    "Process & Quality",
)


def expertise_prompt(persona: AgentPersona) -> str:
    """The persona's own system prompt, or one composed from its catalog entry."""
    if persona.system_prompt:
        return persona.system_prompt
    specialties = ", ".join(persona.specialties)
    return (
        f"You are a {persona.name}. {persona.description}.\n\n"
        f"Your areas of expertise: {specialties}. Give concrete, actionable advice "
        f"grounded in these areas and say so when a question falls outside them."
    )


class PersonaCatalog:
    """Ordered, id-indexed view over a list of personas."""

    def __init__(self, personas: list[AgentPersona]):
        self._personas: dict[str, AgentPersona] = {}
        for persona in personas:
            if persona.id in self._personas:
                raise ValueError(f"Duplicate persona id in catalog: {persona.id}")
            self._personas[persona.id] = persona

    def get(self, persona_id: str) -> AgentPersona | None:
        return self._personas.get(persona_id)

    def require(self, persona_id: str) -> AgentPersona:
        persona = self._personas.get(persona_id)
        if persona is None:
            raise PersonaNotFound(persona_id)
        return persona

    def list(self) -> list[AgentPersona]:
        return list(self._personas.values())

    def ids(self) -> list[str]:
        return list(self._personas)

    def by_category(self, category: str) -> list[AgentPersona]:
        return [p for p in self._personas.values() if p.category == category]

    def search_by_specialty(self, term: str) -> list[AgentPersona]:
        """Personas whose specialties, name or description mention term (case-insensitive)."""
        needle = term.lower().strip()
        if not needle:
            return []
        return [
            p
            for p in self._personas.values()
            if any(needle in s.lower() for s in p.specialties)
            or needle in p.name.lower()
            or needle in p.description.lower()
        ]

    def __contains__(self, persona_id: object) -> bool:
        return persona_id in self._personas

    def __len__(self) -> int:
        return len(self._personas)


def load_catalog(path: Path | None = None) -> PersonaCatalog:
    """Parse a catalog file: a mapping of category name to persona entries."""
    path = path or CATALOG_PATH
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}

    personas = []
    for category, entries in data.items():
        for entry in entries or []:
            personas.append(AgentPersona(category=category, **entry))
    return PersonaCatalog(personas)


@lru_cache(maxsize=1)
def default_catalog() -> PersonaCatalog:
    return load_catalog()


def get_persona(persona_id: str) -> AgentPersona | None:
    return default_catalog().get(persona_id)


def list_personas() -> list[AgentPersona]:
    return default_catalog().list()


def get_by_category(category: str) -> list[AgentPersona]:
    return default_catalog().by_category(category)


def search_by_specialty(term: str) -> list[AgentPersona]:
    return default_catalog().search_by_specialty(term)


__all__ = [
    "CATEGORIES",
    "PersonaCatalog",
    "default_catalog",
    "expertise_prompt",
    "get_by_category",
    "get_persona",
    "list_personas",
    "load_catalog",
    "search_by_specialty",
]
