"""Range matching and entry classification for roll tables.

A roll selects every entry whose inclusive range contains it. When more
than one entry matches, the classifier separates structural entries (a
connector such as "or", or a "choose one" instruction) from meaningful
ones (real grants and sub-table references). Structural text becomes the
header of the resulting choice.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from .dice import formula_bounds
from .models import RollTable, TableEntry

logger = logging.getLogger("shadowroll")

DEFAULT_HEADER = "Choose One"

# Connectors that never stand for a real option
_CONNECTOR_RE = re.compile(r"^(?:or|and|reroll|\d+)$", re.IGNORECASE)

# Instructions that are never offered as options
_INSTRUCTION_RE = re.compile(
    r"(?:choose|select)\s+(?:one|1)\b"
    r"|\breroll\s+(?:if|duplicates?)\b"
    r"|\balready\s+(?:taken|had)\b"
    r"|\bduplicates?\s*=\s*reroll\b",
    re.IGNORECASE,
)

_CHOOSE_WORD_RE = re.compile(r"\bchoose\b", re.IGNORECASE)

# Header texts that normalize to the default header
_DEFAULT_HEADER_RE = re.compile(r"^(?:or|choose\s+(?:one|1)|select\s+(?:one|1))?$", re.IGNORECASE)


@dataclass
class Classification:
    """Partition of a matched entry set."""
    structural: list[TableEntry] = field(default_factory=list)
    meaningful: list[TableEntry] = field(default_factory=list)
    header: str = DEFAULT_HEADER

    @property
    def has_instruction(self) -> bool:
        """Whether a structural entry asks the player to choose."""
        return any(_CHOOSE_WORD_RE.search(e.label) for e in self.structural)


def match_entries(roll: int, entries: list[TableEntry]) -> list[TableEntry]:
    """Return the entries whose ``[low, high]`` contains ``roll``, in table order."""
    matched = [e for e in entries if e.contains(roll)]
    if not matched:
        logger.debug(f"Roll {roll} matched no entries")
    return matched


def header_for(entry: TableEntry | None) -> str:
    """Header text contributed by a structural entry."""
    if entry is None:
        return DEFAULT_HEADER
    text = entry.label
    if _DEFAULT_HEADER_RE.match(text):
        return DEFAULT_HEADER
    return text


def is_header_text(text: str) -> bool:
    """Whether text is only a connector or a "choose" instruction."""
    text = text.strip()
    return not text or bool(_CONNECTOR_RE.match(text) or _CHOOSE_WORD_RE.search(text))


def is_offerable(entry: TableEntry) -> bool:
    """Whether an entry may appear as an option of a choice."""
    label = entry.label
    if not label:
        return False
    if entry.has_remote_reference:
        return not _CONNECTOR_RE.match(label)
    return not (_CONNECTOR_RE.match(label) or _INSTRUCTION_RE.search(label))


def _is_bare_instruction(entry: TableEntry) -> bool:
    return bool(_CHOOSE_WORD_RE.search(entry.label)) and not entry.has_remote_reference


def classify(matched: list[TableEntry]) -> Classification:
    """Partition matched entries into structural and meaningful.

    Rules, in priority order:

    1. A single match is meaningful whatever its flags.
    2. Among several matches, an entry with an empty name that is flagged
       not drawable is structural; its text becomes the header.
    3. If rule 2 finds nothing, entries whose text is a bare "choose"
       instruction (no remote reference) are structural.

    Connector-only entries ("or", "and") and reroll instructions left among
    the meaningful ones are moved to structural as well.
    """
    if len(matched) <= 1:
        return Classification(meaningful=list(matched))

    structural = [e for e in matched if not e.name.strip() and not e.drawable]
    if not structural:
        structural = [e for e in matched if _is_bare_instruction(e)]

    meaningful: list[TableEntry] = []
    for entry in matched:
        if entry in structural:
            continue
        if is_offerable(entry):
            meaningful.append(entry)
        else:
            structural.append(entry)

    header_source = next((e for e in structural if not e.drawable and not e.name.strip()), None)
    if header_source is None:
        header_source = next((e for e in structural if _is_bare_instruction(e)), None)

    result = Classification(
        structural=structural,
        meaningful=_dedupe_by_label(meaningful),
        header=header_for(header_source),
    )
    logger.debug(
        f"Classified {len(matched)} entries: "
        f"{len(result.meaningful)} meaningful, {len(result.structural)} structural"
    )
    return result


def table_options(table: RollTable) -> list[TableEntry]:
    """Every offerable entry of a table, deduplicated by label."""
    return _dedupe_by_label([e for e in table.entries if is_offerable(e)])


def _dedupe_by_label(entries: list[TableEntry]) -> list[TableEntry]:
    seen: set[str] = set()
    unique: list[TableEntry] = []
    for entry in entries:
        key = entry.label.lower() or (entry.document_id or "")
        if key in seen:
            continue
        seen.add(key)
        unique.append(entry)
    return unique


def check_coverage(table: RollTable, default_formula: str = "1d1") -> list[int]:
    """Rolls the table's formula can produce that no entry covers."""
    low, high = formula_bounds(table.formula, default_formula)
    return [roll for roll in range(low, high + 1) if not any(e.contains(roll) for e in table.entries)]
