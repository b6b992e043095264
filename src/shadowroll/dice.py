"""Formula Roller: evaluate simple ``NdM`` dice-sum formulas for table rolls.

Only uniform sums are supported (optionally with a flat ``+K``/``-K``
modifier, or a bare integer). Anything else falls back to the configured
default formula, which is ``1d1`` unless overridden.
"""

from __future__ import annotations

import logging
import random
import re
from dataclasses import dataclass
from typing import Sequence, TypeVar

logger = logging.getLogger("shadowroll")

T = TypeVar("T")

DEFAULT_FORMULA = "1d1"

# Upper bound on dice per formula; content never needs more
MAX_DICE = 100

_DICE_RE = re.compile(r"^\s*(\d*)\s*[dD]\s*(\d+)\s*(?:([+-])\s*(\d+))?\s*$")
_CONSTANT_RE = re.compile(r"^\s*([+-]?\d+)\s*$")


@dataclass(frozen=True)
class ParsedFormula:
    """A parsed dice-sum formula: ``count`` dice of ``sides`` plus ``modifier``."""
    count: int
    sides: int
    modifier: int = 0

    @property
    def minimum(self) -> int:
        return self.count + self.modifier

    @property
    def maximum(self) -> int:
        return self.count * self.sides + self.modifier

    def __str__(self) -> str:
        if self.count == 0:
            return str(self.modifier)
        base = f"{self.count}d{self.sides}"
        if self.modifier > 0:
            return f"{base}+{self.modifier}"
        if self.modifier < 0:
            return f"{base}{self.modifier}"
        return base


def _parse_strict(formula: str | None) -> ParsedFormula | None:
    if not formula:
        return None

    constant = _CONSTANT_RE.match(formula)
    if constant:
        return ParsedFormula(count=0, sides=1, modifier=int(constant.group(1)))

    match = _DICE_RE.match(formula)
    if not match:
        return None

    count_str, sides_str, op, mod_str = match.groups()
    count = int(count_str) if count_str else 1
    sides = int(sides_str)
    if count < 1 or sides < 1 or count > MAX_DICE:
        return None

    modifier = int(mod_str) if mod_str else 0
    if op == "-":
        modifier = -modifier
    return ParsedFormula(count=count, sides=sides, modifier=modifier)


def parse_formula(formula: str | None, default: str = DEFAULT_FORMULA) -> ParsedFormula:
    """Parse a formula, falling back to ``default`` (and then to ``1d1``)."""
    parsed = _parse_strict(formula)
    if parsed is not None:
        return parsed

    if formula:
        logger.debug(f"Unparseable roll formula '{formula}', using '{default}'")
    return _parse_strict(default) or ParsedFormula(count=1, sides=1)


def formula_bounds(formula: str | None, default: str = DEFAULT_FORMULA) -> tuple[int, int]:
    """Smallest and largest results a formula can produce."""
    parsed = parse_formula(formula, default)
    return parsed.minimum, parsed.maximum


class FormulaRoller:
    """Roll dice formulas against an injectable random source.

    Pass ``seed`` (or a pre-seeded ``random.Random``) for reproducible rolls.
    """

    def __init__(
        self,
        rng: random.Random | None = None,
        *,
        seed: int | None = None,
        default_formula: str = DEFAULT_FORMULA,
    ) -> None:
        self.rng = rng if rng is not None else random.Random(seed)
        self.default_formula = default_formula

    def roll(self, formula: str | None) -> int:
        """Roll ``formula`` and return the total."""
        parsed = parse_formula(formula, self.default_formula)
        total = sum(self.rng.randint(1, parsed.sides) for _ in range(parsed.count))
        total += parsed.modifier
        logger.debug(f"Rolled {parsed} -> {total}")
        return total

    def getstate(self) -> object:
        return self.rng.getstate()

    def setstate(self, state: object) -> None:
        """Rewind the random source to a state taken with ``getstate``."""
        self.rng.setstate(state)

    def sample(self, population: Sequence[T], k: int) -> list[T]:
        """Pick ``k`` distinct items at random (all of them if ``k`` is too large)."""
        k = max(0, min(k, len(population)))
        return self.rng.sample(list(population), k)
