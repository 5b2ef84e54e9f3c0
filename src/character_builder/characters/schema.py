"""
Character sheet schema and the default snapshot validator.

The sheet is a D&D 5e character as produced by the builder assistant. Spell
slots arrive either as a list of slot objects or as a mapping keyed by spell
level; both are normalized here into one sorted list before a snapshot
enters the version history.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ..core.exceptions import ValidationError

Alignment = Literal[
    "Lawful Good",
    "Neutral Good",
    "Chaotic Good",
    "Lawful Neutral",
    "True Neutral",
    "Chaotic Neutral",
    "Lawful Evil",
    "Neutral Evil",
    "Chaotic Evil",
    "Unaligned",
]


class SheetModel(BaseModel):
    """Base model: camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel)


class AbilityScore(SheetModel):
    score: int = Field(ge=1, le=30)
    modifier: int


class Abilities(SheetModel):
    strength: AbilityScore
    dexterity: AbilityScore
    constitution: AbilityScore
    intelligence: AbilityScore
    wisdom: AbilityScore
    charisma: AbilityScore


class SavingThrow(SheetModel):
    proficient: bool
    modifier: int


class SavingThrows(SheetModel):
    strength: SavingThrow
    dexterity: SavingThrow
    constitution: SavingThrow
    intelligence: SavingThrow
    wisdom: SavingThrow
    charisma: SavingThrow


class Skill(SheetModel):
    name: str
    proficient: bool
    modifier: int


class Coins(SheetModel):
    cp: int = 0
    sp: int = 0
    ep: int = 0
    gp: int = 0
    pp: int = 0


class WeaponAttack(SheetModel):
    name: str
    bonus: int
    damage: str  # e.g. "1d8 + 3"
    type: str  # e.g. "Slashing"


class SpellSlot(SheetModel):
    level: int = Field(ge=1, le=9)
    total: int = Field(ge=0)
    expended: int = Field(ge=0)


class HitPoints(SheetModel):
    max: int
    current: int
    temp: int = 0


class HitDice(SheetModel):
    total: int
    current: int
    die: str  # e.g. "d8"


class DeathSaves(SheetModel):
    successes: int = Field(default=0, ge=0, le=3)
    failures: int = Field(default=0, ge=0, le=3)


class Spellcasting(SheetModel):
    spell_save_dc: Optional[int] = None
    spell_attack_bonus: Optional[int] = None
    slots: Optional[List[SpellSlot]] = None
    spells: Optional[List[str]] = None

    @field_validator("slots", mode="before")
    @classmethod
    def _normalize_slots(cls, value: Any) -> Any:
        return normalize_spell_slots(value)


class Feature(SheetModel):
    name: str
    description: str
    source: Optional[str] = None  # e.g. "Racial", "Class", "Feat"


class Appearance(SheetModel):
    age: Optional[str] = None
    height: Optional[str] = None
    weight: Optional[str] = None
    eyes: Optional[str] = None
    skin: Optional[str] = None
    hair: Optional[str] = None
    description: Optional[str] = None


class DndCharacter(SheetModel):
    """Full character sheet stored inside every version."""

    # Basic info
    name: str
    class_: str = Field(alias="class")
    level: int = Field(ge=1, le=20)
    background: Optional[str] = None
    player_name: Optional[str] = None
    race: str
    alignment: Optional[Alignment] = None
    experience_points: int = Field(default=0, ge=0)

    # Abilities, skills and proficiencies
    abilities: Abilities
    skills: List[Skill]
    saving_throws: SavingThrows
    passive_wisdom: int
    proficiencies: List[str]
    languages: List[str]

    # Combat
    armor_class: int
    initiative: int
    speed: int
    hit_points: HitPoints
    hit_dice: HitDice
    death_saves: DeathSaves = Field(default_factory=DeathSaves)
    attacks: List[WeaponAttack]
    spellcasting: Optional[Spellcasting] = None

    # Inventory
    equipment: List[str]
    coins: Coins

    # Features and flavor
    features_and_traits: List[Feature]
    personality_traits: Optional[str] = None
    ideals: Optional[str] = None
    bonds: Optional[str] = None
    flaws: Optional[str] = None
    appearance: Optional[Appearance] = None
    backstory: Optional[str] = None


def normalize_spell_slots(value: Any) -> Any:
    """Turn list-or-mapping spell slots into a list sorted by level.

    A mapping is keyed by spell level (``{"1": {"total": 4, "expended": 1}}``);
    missing counts default to zero. Anything else is returned untouched so the
    model reports it as a type error.
    """
    if value is None:
        return None
    if isinstance(value, dict):
        slots = []
        for level, data in value.items():
            data = data if isinstance(data, dict) else {}
            try:
                level_number = int(level)
            except (TypeError, ValueError):
                level_number = level  # left for the model to reject
            slots.append(
                {
                    "level": level_number,
                    "total": data.get("total") or 0,
                    "expended": data.get("expended") or 0,
                }
            )
        value = slots
    if isinstance(value, list):
        return sorted(
            value,
            key=lambda slot: (
                slot.get("level", 0)
                if isinstance(slot, dict) and isinstance(slot.get("level"), int)
                else 0
            ),
        )
    return value


def _error_field(error: Dict[str, Any]) -> str:
    return ".".join(str(part) for part in error.get("loc", ())) or "snapshot"


def validate_snapshot(raw: Any) -> Dict[str, Any]:
    """Validate a raw character payload and return the normalized snapshot.

    Raises:
        ValidationError: If the payload does not match the character schema
    """
    if not isinstance(raw, dict):
        raise ValidationError(
            "snapshot", type(raw).__name__, "snapshot must be an object",
            component="CharacterSchema",
        )

    try:
        model = DndCharacter.model_validate(raw)
    except pydantic.ValidationError as e:
        errors = e.errors()
        first = errors[0] if errors else {}
        raise ValidationError(
            _error_field(first),
            first.get("input", ""),
            first.get("msg", "invalid value"),
            details={
                "errors": [
                    {"field": _error_field(err), "reason": err.get("msg", "")}
                    for err in errors
                ]
            },
            component="CharacterSchema",
        ) from e

    return model.model_dump(by_alias=True, exclude_none=True)
