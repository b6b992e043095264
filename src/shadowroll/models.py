"""
Data models for the shadowroll progression resolver.

Tables and documents are read-only inputs supplied by the content store;
grant descriptors, pending choices and effects are produced fresh for each
progression run and discarded once the run is finalized.
"""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


# Ability abbreviation → full name
ABILITY_NAMES = {
    "STR": "strength",
    "DEX": "dexterity",
    "CON": "constitution",
    "INT": "intelligence",
    "WIS": "wisdom",
    "CHA": "charisma",
}


def ability_bonus_path(ability: str) -> str:
    """Effect path of an ability's bonus, e.g. ``system.abilities.str.bonus``."""
    return f"system.abilities.{ability[:3].lower()}.bonus"


class EffectMode(IntEnum):
    """How a mechanical effect combines with the value already at its path."""
    CUSTOM = 0
    MULTIPLY = 1
    ADD = 2
    DOWNGRADE = 3
    UPGRADE = 4
    OVERRIDE = 5


class EntryKind(str, Enum):
    """Payload carried by a table entry."""
    TEXT = "text"
    TABLE = "table"
    DOCUMENT = "document"


class GrantCategory(str, Enum):
    """What kind of thing a character receives."""
    TALENT = "talent"
    BOON = "boon"
    SPELL = "spell"


class MechanicalEffect(BaseModel):
    """A (path, value, mode) change applied to the character sheet."""
    model_config = ConfigDict(frozen=True)

    path: str
    value: int | float | str
    mode: EffectMode = EffectMode.ADD
    label: str | None = None


class TableEntry(BaseModel):
    """One line of a table, covering the inclusive range ``[low, high]``."""
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    low: int = 1
    high: int = 1
    kind: EntryKind = EntryKind.TEXT
    name: str = ""
    text: str = ""
    icon: str | None = None
    document_id: str | None = None
    table: RollTable | None = None
    drawable: bool = True

    @model_validator(mode="after")
    def check_range(self) -> "TableEntry":
        if self.high < self.low:
            raise ValueError(f"Entry range is inverted: [{self.low}, {self.high}]")
        return self

    @property
    def label(self) -> str:
        """Display text: the entry name, falling back to its text."""
        return (self.name or self.text).strip()

    @property
    def has_remote_reference(self) -> bool:
        return bool(self.document_id) or self.table is not None

    def contains(self, roll: int) -> bool:
        return self.low <= roll <= self.high


class RollTable(BaseModel):
    """A content-authored table: a roll formula plus ranged entries."""
    model_config = ConfigDict(frozen=True)

    id: str | None = None
    name: str = ""
    formula: str = "1d1"
    entries: list[TableEntry] = Field(default_factory=list)
    icon: str | None = None


class Document(BaseModel):
    """Canonical shape of anything the content store returns."""
    model_config = ConfigDict(frozen=True)

    name: str
    type: str = "Talent"
    description: str = ""
    remote_identifier: str | None = None
    icon: str | None = None
    effects: list[MechanicalEffect] = Field(default_factory=list)
    tier: int | None = None
    is_table: bool = False
    table_formula: str | None = None
    table_entries: list[TableEntry] = Field(default_factory=list)

    def as_table(self) -> RollTable:
        """View a table document as a RollTable."""
        return RollTable(
            id=self.remote_identifier,
            name=self.name,
            formula=self.table_formula or "1d1",
            entries=list(self.table_entries),
            icon=self.icon,
        )


class GrantDescriptor(BaseModel):
    """The resolved unit of output: one thing a character receives."""
    model_config = ConfigDict(frozen=True)

    name: str
    category: GrantCategory = GrantCategory.TALENT
    description: str = ""
    remote_identifier: str | None = None
    icon: str | None = None
    effects: list[MechanicalEffect] = Field(default_factory=list)
    level: int | None = None
    tier: int | None = None


class ChoiceOption(BaseModel):
    """One selectable option of a pending choice."""
    model_config = ConfigDict(frozen=True)

    name: str
    icon: str | None = None
    entry: TableEntry


class PendingChoice(BaseModel):
    """Tied entries awaiting a human selection."""
    model_config = ConfigDict(frozen=True)

    header: str = "Choose One"
    options: list[ChoiceOption]
    context: GrantCategory = GrantCategory.TALENT
    table_name: str = ""


class StatChoiceRequest(BaseModel):
    """A stat bonus awaiting an ability selection."""
    model_config = ConfigDict(frozen=True)

    grant: GrantDescriptor
    amount: int
    abilities: list[str] = Field(default_factory=list, description="Abilities on offer; empty means any")


class TableResolution(BaseModel):
    """Outcome of one resolution pass: landed grants and/or a pending choice."""
    grants: list[GrantDescriptor] = Field(default_factory=list)
    pending: PendingChoice | None = None

    @property
    def is_pending(self) -> bool:
        return self.pending is not None


# ----------------------------------------------------------------------
# Resolver outcomes for a single entry
# ----------------------------------------------------------------------


class Resolved(BaseModel):
    """The entry is a final grant."""
    kind: Literal["resolved"] = "resolved"
    grant: GrantDescriptor


class TableRef(BaseModel):
    """The entry points at another table to roll on."""
    kind: Literal["table"] = "table"
    table: RollTable | None = None
    identifier: str | None = None
    fallback: GrantDescriptor | None = None


class DocRef(BaseModel):
    """The entry points at a document that must be fetched first."""
    kind: Literal["document"] = "document"
    identifier: str
    fallback: GrantDescriptor


EntryOutcome = Resolved | TableRef | DocRef


TableEntry.model_rebuild()
