"""What a progression run must collect before it can be finalized."""

from __future__ import annotations

import re
from enum import Enum
from typing import Iterable

from pydantic import BaseModel, Field

from .documents import ClassProfile

SPELL_TIERS = (1, 2, 3, 4, 5)

# Grants like "Learn an additional spell" widen the spell selection by one
_EXTRA_SPELL_RE = re.compile(r"\blearn\s+(?:an?\s+)?(?:extra|additional)\s+spell", re.IGNORECASE)

# Human ancestry talent that grants a second talent at level 1
AMBITIOUS_TALENT = "ambitious"


class RunState(str, Enum):
    """Position of a run in the progression state machine."""
    NEEDS_TALENT_OR_BOON = "needs_talent_or_boon"
    NEEDS_BOON = "needs_boon"
    NEEDS_SPELLS = "needs_spells"
    COMPLETE = "complete"


class Requirements(BaseModel):
    """Counts a run has to reach.

    ``talent_slots`` is satisfied by talents, and by any boons beyond
    ``required_boons``. For a class without a patron that means a talent or
    a boon fills the slot; for a patron-gated class the first boon(s) go to
    the boon requirement and only additional boons count as talents.
    """
    current_level: int = Field(ge=0)
    target_level: int = Field(ge=1)
    talent_slots: int = Field(default=0, ge=0)
    required_boons: int = Field(default=0, ge=0)
    patron_gated: bool = False
    spells_by_tier: dict[int, int] = Field(default_factory=dict)

    @property
    def tiered_spells(self) -> int:
        return sum(self.spells_by_tier.values())

    def required_spells(self, granted_names: Iterable[str] = ()) -> int:
        """Total spells to select, counting extra-spell grants made so far."""
        return self.tiered_spells + count_extra_spell_grants(granted_names)

    def talents_satisfied(self, talents: int, boons: int, bonus_slots: int = 0) -> bool:
        surplus_boons = max(0, boons - self.required_boons)
        return talents + surplus_boons >= self.talent_slots + bonus_slots

    def boons_satisfied(self, boons: int) -> bool:
        return boons >= self.required_boons


def count_extra_spell_grants(names: Iterable[str]) -> int:
    return sum(1 for name in names if _EXTRA_SPELL_RE.search(name))


def spells_known_at(class_profile: ClassProfile, level: int) -> dict[int, int]:
    """Spells known per tier at ``level`` (levels below 1 know none)."""
    if level < 1:
        return {}
    return class_profile.spells_known.get(level, {})


def calculate_requirements(
    target_level: int,
    class_profile: ClassProfile,
    known_grant_names: Iterable[str] = (),
    *,
    current_level: int | None = None,
) -> Requirements:
    """Work out what a level-up (or a new level-1 character) must collect.

    Args:
        target_level: The level being reached.
        class_profile: The character's class.
        known_grant_names: Names of talents/boons the character already has.
        current_level: Level before advancing, defaults to ``target_level - 1``.
    """
    if current_level is None:
        current_level = target_level - 1
    names = [n.strip().lower() for n in known_grant_names]

    is_odd = target_level % 2 == 1
    talent_slots = 1 if is_odd else 0
    required_boons = 0

    if class_profile.patron_required:
        if target_level == 1:
            required_boons = max(1, class_profile.starting_boons)
            talent_slots = 0
        elif is_odd:
            # The usual talent roll becomes the "extra boon" slot
            required_boons = 1

    if target_level == 1 and AMBITIOUS_TALENT in names:
        talent_slots += 1

    spells_by_tier: dict[int, int] = {}
    if class_profile.is_spellcaster:
        after = spells_known_at(class_profile, target_level)
        before = spells_known_at(class_profile, current_level)
        for tier in SPELL_TIERS:
            gained = after.get(tier, 0) - before.get(tier, 0)
            if gained > 0:
                spells_by_tier[tier] = gained

    return Requirements(
        current_level=current_level,
        target_level=target_level,
        talent_slots=talent_slots,
        required_boons=required_boons,
        patron_gated=class_profile.patron_required,
        spells_by_tier=spells_by_tier,
    )
