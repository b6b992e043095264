"""
Pytest configuration and fixtures for shadowroll tests.
"""

import sys
from pathlib import Path
import pytest

# Add src directory to Python path to allow importing shadowroll
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from shadowroll.documents import InMemoryDocumentStore
from shadowroll.models import Document, EntryKind, RollTable, TableEntry


# Configure anyio to only use asyncio (not trio)
@pytest.fixture
def anyio_backend():
    return "asyncio"


def _text_entry(low: int, high: int, name: str, **kwargs) -> TableEntry:
    """Inline-text table entry."""
    return TableEntry(low=low, high=high, name=name, **kwargs)


def _doc_entry(low: int, high: int, document_id: str, name: str = "", **kwargs) -> TableEntry:
    """Table entry referencing a remote document."""
    return TableEntry(low=low, high=high, kind=EntryKind.DOCUMENT, document_id=document_id, name=name, **kwargs)


def _table_document(identifier: str, name: str, formula: str, entries: list[TableEntry]) -> Document:
    """A document that is itself a roll table."""
    return Document(
        name=name,
        type="RollTable",
        remote_identifier=identifier,
        is_table=True,
        table_formula=formula,
        table_entries=entries,
    )


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """A small Shadowdark-flavoured content store."""
    return InMemoryDocumentStore([
        Document(name="Backstab +1 die", type="Talent", remote_identifier="Compendium.sd.talents.Item.backstab",
                 description="Your backstab deals an extra die of damage."),
        Document(name="Ambitious", type="Talent", remote_identifier="Compendium.sd.ancestry.Item.ambitious",
                 description="You gain one additional talent roll at 1st level."),
        Document(name="Mighty", type="Talent", remote_identifier="Compendium.sd.ancestry.Item.mighty"),
        Document(name="Keen Senses", type="Talent", remote_identifier="Compendium.sd.ancestry.Item.keen"),
        Document(name="Fireball", type="Spell", remote_identifier="Compendium.sd.spells.Item.fireball", tier=3),
        Document(name="Ice Storm", type="Spell", remote_identifier="Compendium.sd.spells.Item.icestorm", tier=4),
        _table_document(
            "Compendium.sd.tables.RollTable.weapons",
            "Weapon Mastery",
            "1d2",
            [_text_entry(1, 1, "Longsword Mastery"), _text_entry(2, 2, "Dagger Mastery")],
        ),
    ])


@pytest.fixture
def talent_table() -> RollTable:
    """2d6 class talent table with a tied 'choose' range."""
    return RollTable(
        id="Compendium.sd.tables.RollTable.thief",
        name="Thief Talents",
        formula="2d6",
        entries=[
            _doc_entry(2, 2, "Compendium.sd.talents.Item.backstab", "Backstab +1 die"),
            _text_entry(3, 6, "+1 DEX"),
            _text_entry(7, 9, "+1 to any stat"),
            TableEntry(low=10, high=11, name="", text="or", drawable=False),
            _text_entry(10, 11, "Advantage on initiative"),
            _text_entry(10, 11, "Climb at full speed"),
            _text_entry(12, 12, "+2 to any stat"),
        ],
    )
