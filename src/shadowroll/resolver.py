"""Result Resolver: turn table rolls into grant descriptors.

``resolve_table`` rolls a table, matches and classifies the entries, and
either surfaces a pending choice (several live options) or resolves the one
meaningful entry. Entries are resolved recursively: a table reference rolls
again, a document reference is fetched and, if the document turns out to be
a table itself, rolled on as well. Pending choices from sub-tables propagate
outward unchanged.

Content gaps never raise. A roll with no matching entry yields nothing; a
document that cannot be fetched yields a best-effort grant built from the
entry's own display data.
"""

from __future__ import annotations

import asyncio
import logging

from .dice import FormulaRoller
from .documents import DocumentFetcher
from .ledger import DeduplicationLedger
from .models import (
    ChoiceOption,
    DocRef,
    Document,
    EntryKind,
    EntryOutcome,
    GrantCategory,
    GrantDescriptor,
    PendingChoice,
    Resolved,
    RollTable,
    TableEntry,
    TableRef,
    TableResolution,
)
from .tables import classify, match_entries, table_options

logger = logging.getLogger("shadowroll")

DEFAULT_MAX_DEPTH = 8


def grant_from_entry(entry: TableEntry, category: GrantCategory) -> GrantDescriptor:
    """Build a grant from an entry's inline display data."""
    label = entry.label or entry.document_id or "Unknown Option"
    return GrantDescriptor(
        name=label,
        category=category,
        description=entry.text or label,
        remote_identifier=entry.document_id,
        icon=entry.icon,
    )


def grant_from_document(doc: Document, category: GrantCategory) -> GrantDescriptor:
    return GrantDescriptor(
        name=doc.name,
        category=category,
        description=doc.description,
        remote_identifier=doc.remote_identifier,
        icon=doc.icon,
        effects=list(doc.effects),
        tier=doc.tier,
    )


def classify_entry(entry: TableEntry, category: GrantCategory) -> EntryOutcome:
    """Decide what a single meaningful entry resolves to, without any I/O."""
    fallback = grant_from_entry(entry, category)

    if entry.kind is EntryKind.TABLE:
        return TableRef(table=entry.table, identifier=entry.document_id, fallback=fallback)
    if entry.kind is EntryKind.DOCUMENT and entry.document_id:
        return DocRef(identifier=entry.document_id, fallback=fallback)
    return Resolved(grant=fallback)


class TableResolver:
    """Resolve tables and entries against a document fetcher.

    The resolver holds no run state of its own; the deduplication ledger is
    passed into every call.
    """

    def __init__(
        self,
        fetcher: DocumentFetcher,
        roller: FormulaRoller | None = None,
        *,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.fetcher = fetcher
        self.roller = roller or FormulaRoller()
        self.max_depth = max_depth

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch(self, identifier: str) -> Document | None:
        """Fetch a document; any failure is logged and reported as None."""
        try:
            doc = await self.fetcher.fetch(identifier)
        except Exception as e:
            logger.warning(f"Failed to fetch document {identifier}: {e}")
            return None
        if doc is None:
            logger.warning(f"Document not found: {identifier}")
        return doc

    async def prefetch(self, identifiers: list[str]) -> None:
        """Fetch several documents concurrently (warms a caching fetcher)."""
        unique = list(dict.fromkeys(i for i in identifiers if i))
        if unique:
            await asyncio.gather(*(self.fetch(i) for i in unique))

    async def load_table(self, table_ref: RollTable | str) -> RollTable | Document | None:
        """Resolve a table reference to a table, or to the non-table document it names."""
        if isinstance(table_ref, RollTable):
            return table_ref
        doc = await self.fetch(table_ref)
        if doc is None:
            return None
        return doc.as_table() if doc.is_table else doc

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve_table(
        self,
        table_ref: RollTable | str,
        ledger: DeduplicationLedger,
        *,
        context: GrantCategory = GrantCategory.TALENT,
        roll: int | None = None,
        depth: int = 0,
    ) -> TableResolution:
        """Roll on a table and resolve the outcome.

        Args:
            table_ref: The table itself, or the remote identifier of one.
            ledger: Deduplication ledger of the current run.
            context: Category given to any grants produced.
            roll: Use this roll instead of rolling the table's formula.
            depth: Current nesting level of tables-of-tables.

        Returns:
            Accepted grants, or a pending choice when several options tie.
        """
        if depth > self.max_depth:
            logger.warning(f"Table nesting deeper than {self.max_depth}, giving up on {table_ref!r}")
            return TableResolution()

        loaded = await self.load_table(table_ref)
        if loaded is None:
            logger.warning(f"Table could not be loaded: {table_ref!r}")
            return TableResolution()
        if isinstance(loaded, Document):
            # A reference to an ordinary document: grant it directly
            return self._accept([grant_from_document(loaded, context)], ledger)

        table = loaded
        if roll is None:
            roll = self.roller.roll(table.formula)

        matched = match_entries(roll, table.entries)
        if not matched:
            logger.warning(f"Table '{table.name}' has no entry for roll {roll}")
            return TableResolution()

        classification = classify(matched)
        meaningful = classification.meaningful

        if not meaningful and classification.has_instruction:
            # "Choose 1 from the following": offer the whole table
            meaningful = table_options(table)
            logger.info(f"Roll {roll} on '{table.name}' offers the whole table ({len(meaningful)} options)")

        if not meaningful:
            logger.warning(f"Roll {roll} on '{table.name}' matched only structural entries")
            return TableResolution()

        if len(meaningful) > 1:
            choice = PendingChoice(
                header=classification.header,
                options=[
                    ChoiceOption(
                        name=entry.label or "Unknown Option",
                        icon=entry.icon or table.icon,
                        entry=entry,
                    )
                    for entry in meaningful
                ],
                context=context,
                table_name=table.name,
            )
            logger.info(
                f"Roll {roll} on '{table.name}' needs a choice: "
                f"{', '.join(o.name for o in choice.options)}"
            )
            return TableResolution(pending=choice)

        logger.debug(f"Roll {roll} on '{table.name}' -> {meaningful[0].label!r}")
        return await self.resolve_entry(meaningful[0], ledger, context=context, depth=depth)

    async def resolve_entry(
        self,
        entry: TableEntry,
        ledger: DeduplicationLedger,
        *,
        context: GrantCategory = GrantCategory.TALENT,
        depth: int = 0,
    ) -> TableResolution:
        """Resolve one meaningful entry to grants (or a nested pending choice)."""
        outcome = classify_entry(entry, context)

        if isinstance(outcome, Resolved):
            return self._accept([outcome.grant], ledger)

        if isinstance(outcome, TableRef):
            if outcome.table is not None:
                return await self.resolve_table(outcome.table, ledger, context=context, depth=depth + 1)
            if not outcome.identifier:
                return self._accept([outcome.fallback], ledger)
            identifier, fallback = outcome.identifier, outcome.fallback
        else:
            identifier, fallback = outcome.identifier, outcome.fallback

        doc = await self.fetch(identifier)
        if doc is None:
            return self._accept([fallback], ledger)
        if doc.is_table:
            logger.debug(f"Document {identifier} is a table, rolling on it")
            return await self.resolve_table(doc.as_table(), ledger, context=context, depth=depth + 1)
        return self._accept([grant_from_document(doc, context)], ledger)

    @staticmethod
    def _accept(candidates: list[GrantDescriptor], ledger: DeduplicationLedger) -> TableResolution:
        accepted = [g for g in candidates if ledger.accept(g)]
        for grant in accepted:
            logger.info(f"Granted {grant.category.value}: {grant.name}")
        return TableResolution(grants=accepted)
