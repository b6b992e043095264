"""Stat-Choice Synthesizer: derive ability bonuses from grant names.

Runs once per accepted grant. A name such as "+1 STR" or "Wisdom +2"
gets an ADD effect on that ability's bonus path straight away. A name such
as "+1 to any stat" suspends for the caller to pick an ability; the grant is
then renamed (e.g. "+1 to any stat (DEX)") and given the effect. A name
listing several abilities ("+2 to Strength, Dexterity, or Constitution")
suspends the same way, limited to those abilities. Only the first
matching pattern applies.
"""

from __future__ import annotations

import logging
import re

from .exceptions import InvalidSelectionError
from .models import (
    ABILITY_NAMES,
    EffectMode,
    GrantDescriptor,
    MechanicalEffect,
    StatChoiceRequest,
    ability_bonus_path,
)

logger = logging.getLogger("shadowroll")

_ABILITY_ALTERNATION = "|".join(
    list(ABILITY_NAMES.values()) + [abbr.lower() for abbr in ABILITY_NAMES]
)

_FIXED_PREFIX_RE = re.compile(
    rf"(?<![\w+])\+(\d+)\s+(?:to\s+)?({_ABILITY_ALTERNATION})\b(?!\s*(?:,|/|or\b))", re.IGNORECASE
)
# "+2 to Strength, Dexterity, or Constitution"
_LISTED_RE = re.compile(
    rf"(?<![\w+])\+(\d+)\s+(?:to\s+)?"
    rf"((?:{_ABILITY_ALTERNATION})(?:\s*(?:,\s*(?:or\s+)?|/\s*|\s+or\s+)(?:{_ABILITY_ALTERNATION}))+)\b",
    re.IGNORECASE,
)
_ABILITY_RE = re.compile(rf"\b({_ABILITY_ALTERNATION})\b", re.IGNORECASE)
_FIXED_SUFFIX_RE = re.compile(
    rf"\b({_ABILITY_ALTERNATION})\s*\+(\d+)\b", re.IGNORECASE
)
_FREE_PLUS_RE = re.compile(
    r"\+(\d+)\s+(?:points?\s+)?to\s+(?:any|one)\s+(?:stat|ability)\b", re.IGNORECASE
)
_FREE_INCREASE_RE = re.compile(
    r"\bincrease\s+(?:any|one)\s+(?:stat|ability)\s+by\s+(\d+)\b", re.IGNORECASE
)

_FULL_TO_ABBR = {full: abbr for abbr, full in ABILITY_NAMES.items()}


def normalize_ability(value: str) -> str | None:
    """Map "dex", "DEX" or "Dexterity" to the abbreviation "DEX"."""
    key = value.strip().lower()
    if key in _FULL_TO_ABBR:
        return _FULL_TO_ABBR[key]
    if key.upper() in ABILITY_NAMES:
        return key.upper()
    return None


def parse_fixed_bonus(name: str) -> tuple[str, int] | None:
    """Return ``(ability, amount)`` for "+N <ability>" / "<ability> +N" names."""
    match = _FIXED_PREFIX_RE.search(name)
    if match:
        return normalize_ability(match.group(2)), int(match.group(1))
    match = _FIXED_SUFFIX_RE.search(name)
    if match:
        return normalize_ability(match.group(1)), int(match.group(2))
    return None


def parse_listed_bonus(name: str) -> tuple[list[str], int] | None:
    """Return ``(abilities, amount)`` for "+N to STR, DEX or CON" names."""
    match = _LISTED_RE.search(name)
    if not match:
        return None
    abilities = [normalize_ability(a) for a in _ABILITY_RE.findall(match.group(2))]
    return list(dict.fromkeys(abilities)), int(match.group(1))


def parse_free_bonus(name: str) -> int | None:
    """Return the amount for "+N to any stat" / "increase one stat by N" names."""
    match = _FREE_PLUS_RE.search(name) or _FREE_INCREASE_RE.search(name)
    if match:
        return int(match.group(1))
    return None


def stat_effect(ability: str, amount: int) -> MechanicalEffect:
    full = ABILITY_NAMES[ability]
    return MechanicalEffect(
        path=ability_bonus_path(ability),
        value=amount,
        mode=EffectMode.ADD,
        label=f"+{amount} to {full.capitalize()}",
    )


def _with_effect(grant: GrantDescriptor, effect: MechanicalEffect, **updates) -> GrantDescriptor:
    if any(e.path == effect.path for e in grant.effects):
        # Content already ships the effect
        return grant.model_copy(update=updates) if updates else grant
    return grant.model_copy(update={"effects": [*grant.effects, effect], **updates})


class StatChoiceSynthesizer:
    """Attach ability-bonus effects to grants whose names describe one."""

    def synthesize(self, grant: GrantDescriptor) -> GrantDescriptor | StatChoiceRequest:
        """Return the grant (with any fixed effect attached) or a stat-choice request."""
        fixed = parse_fixed_bonus(grant.name)
        if fixed is not None:
            ability, amount = fixed
            logger.debug(f"'{grant.name}' grants +{amount} {ability}")
            return _with_effect(grant, stat_effect(ability, amount))

        listed = parse_listed_bonus(grant.name)
        if listed is not None:
            abilities, amount = listed
            logger.info(f"'{grant.name}' needs a stat choice among {', '.join(abilities)} (+{amount})")
            return StatChoiceRequest(grant=grant, amount=amount, abilities=abilities)

        amount = parse_free_bonus(grant.name)
        if amount is not None:
            logger.info(f"'{grant.name}' needs a stat choice (+{amount})")
            return StatChoiceRequest(grant=grant, amount=amount)

        return grant

    def apply_choice(self, request: StatChoiceRequest, ability: str | None) -> GrantDescriptor:
        """Complete a stat-choice request.

        ``None`` means the caller declined: the grant is kept without an effect.

        Raises:
            InvalidSelectionError: If ``ability`` is unknown or not among
                the abilities the request offers.
        """
        if ability is None:
            logger.info(f"Stat choice for '{request.grant.name}' cancelled, keeping it without effect")
            return request.grant

        abbr = normalize_ability(ability)
        if abbr is None:
            raise InvalidSelectionError(
                f"Unknown ability: '{ability}'. Valid: {', '.join(ABILITY_NAMES)}",
                details={"ability": ability},
            )
        if request.abilities and abbr not in request.abilities:
            raise InvalidSelectionError(
                f"'{request.grant.name}' does not offer {abbr}. Valid: {', '.join(request.abilities)}",
                details={"ability": ability, "abilities": request.abilities},
            )

        renamed = f"{request.grant.name} ({abbr})"
        return _with_effect(
            request.grant, stat_effect(abbr, request.amount), name=renamed
        )
