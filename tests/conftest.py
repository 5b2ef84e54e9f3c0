"""
Pytest configuration and fixtures for the Character Builder core.
Only the inference collaborator is faked; the store is the real in-memory one.
"""

import asyncio
import copy
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from character_builder.characters.change_notifier import ChangeNotifier
from character_builder.characters.inference import GenerationContext, InferenceResult
from character_builder.characters.version_store import VersionStore
from character_builder.core.config import Config, Environment
from character_builder.core.context import CharacterBuilderContext
from character_builder.storage import InMemoryDocumentStore

OWNER_ID = "owner-1"


def _ability(score: int) -> Dict[str, int]:
    return {"score": score, "modifier": (score - 10) // 2}


def _save(modifier: int, proficient: bool = False) -> Dict[str, Any]:
    return {"proficient": proficient, "modifier": modifier}


SAMPLE_SNAPSHOT: Dict[str, Any] = {
    "name": "Thorin Oakenshield",
    "class": "Fighter",
    "level": 3,
    "race": "Mountain Dwarf",
    "background": "Soldier",
    "alignment": "Lawful Good",
    "abilities": {
        "strength": _ability(16),
        "dexterity": _ability(12),
        "constitution": _ability(15),
        "intelligence": _ability(10),
        "wisdom": _ability(13),
        "charisma": _ability(8),
    },
    "skills": [
        {"name": "Athletics", "proficient": True, "modifier": 5},
        {"name": "Perception", "proficient": True, "modifier": 3},
    ],
    "savingThrows": {
        "strength": _save(5, True),
        "dexterity": _save(1),
        "constitution": _save(4, True),
        "intelligence": _save(0),
        "wisdom": _save(1),
        "charisma": _save(-1),
    },
    "passiveWisdom": 13,
    "proficiencies": ["All armor", "Shields", "Martial weapons"],
    "languages": ["Common", "Dwarvish"],
    "armorClass": 18,
    "initiative": 1,
    "speed": 25,
    "hitPoints": {"max": 31, "current": 31},
    "hitDice": {"total": 3, "current": 3, "die": "d10"},
    "attacks": [
        {"name": "Warhammer", "bonus": 5, "damage": "1d8 + 3", "type": "Bludgeoning"}
    ],
    "equipment": ["Chain mail", "Shield", "Warhammer"],
    "coins": {"gp": 15},
    "featuresAndTraits": [
        {"name": "Second Wind", "description": "Regain 1d10 + level HP.", "source": "Class"}
    ],
}


def make_snapshot(**changes: Any) -> Dict[str, Any]:
    """A valid character sheet with top-level fields replaced."""
    snapshot = copy.deepcopy(SAMPLE_SNAPSHOT)
    snapshot.update(changes)
    return snapshot


class TickingClock:
    """Deterministic clock that advances one second per reading."""

    def __init__(self) -> None:
        self.current = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


class ScriptedInference:
    """Inference collaborator whose results the test controls.

    Each call waits on ``release`` (set by default) and then returns the next
    scripted result, or raises it when it is an exception.
    """

    def __init__(self, *results: Any) -> None:
        self.results: List[Any] = list(results)
        self.release = asyncio.Event()
        self.release.set()
        self.started = asyncio.Event()
        self.calls: List[GenerationContext] = []

    async def generate(self, context: GenerationContext, token: Any) -> InferenceResult:
        self.calls.append(context)
        self.started.set()
        await self.release.wait()
        result = self.results.pop(0) if self.results else InferenceResult(None, "")
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def snapshot() -> Dict[str, Any]:
    return make_snapshot()


@pytest.fixture
def config() -> Config:
    return Config(environment=Environment.TESTING)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def context(store: InMemoryDocumentStore, config: Config) -> CharacterBuilderContext:
    return CharacterBuilderContext(store=store, config=config, clock=TickingClock())


@pytest.fixture
def notifier(context: CharacterBuilderContext) -> ChangeNotifier:
    return ChangeNotifier(context)


@pytest.fixture
def version_store(
    context: CharacterBuilderContext, notifier: ChangeNotifier
) -> VersionStore:
    return VersionStore(context, notifier=notifier)


@pytest.fixture
async def character(version_store: VersionStore, snapshot: Dict[str, Any]):
    return await version_store.create_character(OWNER_ID, "Thorin", snapshot)


def proposal(snapshot: Optional[Dict[str, Any]] = None, text: str = "Done.") -> InferenceResult:
    """An inference result proposing ``snapshot`` (or a level-up by default)."""
    return InferenceResult(snapshot or make_snapshot(level=4), text)
