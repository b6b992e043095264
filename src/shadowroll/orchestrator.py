"""Progression Orchestrator: drive one level-up or character-generation run.

A run sequences talent rolls, boon rolls and spell selection until the
class requirements are met, then finalizes into a deduplicated, fully
fetched grant list. It suspends in exactly two places: a pending table
choice and a pending stat choice. Both are surfaced as state on the run and
answered by calling ``resolve_choice`` / ``resolve_stat_choice``; nothing
blocks.

Each run owns its own choice slot, ledger and document cache, so several
runs can be driven side by side.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from pydantic import BaseModel, Field
from shortuuid import random as shortuuid_random

from .choices import ChoiceBroker, Selection, find_option
from .config import ResolverConfig
from .dice import FormulaRoller
from .documents import CachingFetcher, ClassProfile, DocumentFetcher
from .exceptions import (
    ChoiceAlreadyPendingError,
    IncompleteRunError,
    InvalidSelectionError,
    NoPendingChoiceError,
    ProtocolError,
    RunFinalizedError,
)
from .ledger import DeduplicationLedger
from .models import (
    Document,
    EntryKind,
    GrantCategory,
    GrantDescriptor,
    PendingChoice,
    RollTable,
    StatChoiceRequest,
    TableEntry,
    TableResolution,
)
from .requirements import AMBITIOUS_TALENT, Requirements, RunState, calculate_requirements
from .resolver import TableResolver
from .stat_synthesis import StatChoiceSynthesizer

logger = logging.getLogger("shadowroll")

ChoiceHook = Callable[[PendingChoice], Awaitable[Selection | None]]
StatChoiceHook = Callable[[StatChoiceRequest], Awaitable[str | None]]


class RunStatus(BaseModel):
    """Snapshot of a run for display."""
    run_id: str
    state: RunState
    target_level: int
    talents: list[str] = Field(default_factory=list)
    boons: list[str] = Field(default_factory=list)
    fixed_grants: list[str] = Field(default_factory=list)
    spells: list[str] = Field(default_factory=list)
    required_spells: int = 0
    pending_choice: PendingChoice | None = None
    pending_stat_choice: StatChoiceRequest | None = None
    unmet: list[str] = Field(default_factory=list)
    finalized: bool = False


@dataclass
class _StatSlot:
    """A landed grant still waiting for its stat choice."""
    request: StatChoiceRequest
    target: list[GrantDescriptor]
    index: int


def merge_document(grant: GrantDescriptor, doc: Document) -> GrantDescriptor:
    """Fill a grant from its fully fetched document.

    The document supplies description, icon and effects; the grant keeps its
    display name (which may carry a stat choice) and any effect it has on a
    path the document does not cover.
    """
    doc_paths = {e.path for e in doc.effects}
    effects = [*doc.effects, *(e for e in grant.effects if e.path not in doc_paths)]
    return grant.model_copy(update={
        "description": doc.description or grant.description,
        "icon": doc.icon or grant.icon,
        "effects": effects,
    })


def pick_ancestry_talents(
    talent_ids: list[str],
    choice_count: int | None,
    roller: FormulaRoller,
) -> list[str]:
    """Pick ``choice_count`` ancestry talents at random when more are offered."""
    if choice_count is None or choice_count >= len(talent_ids):
        return list(talent_ids)
    picked = roller.sample(talent_ids, choice_count)
    logger.info(f"Picked {len(picked)} of {len(talent_ids)} ancestry talents")
    return picked


class ProgressionRun:
    """One level-up or character-generation action."""

    def __init__(
        self,
        fetcher: DocumentFetcher,
        requirements: Requirements,
        *,
        talent_table: RollTable | str | None = None,
        boon_table: RollTable | str | None = None,
        eligible_spells: Iterable[GrantDescriptor] = (),
        config: ResolverConfig | None = None,
        roller: FormulaRoller | None = None,
        run_id: str | None = None,
    ) -> None:
        self.config = config or ResolverConfig()
        self.id = run_id or shortuuid_random(length=8)
        self.requirements = requirements
        self.talent_table = talent_table
        self.boon_table = boon_table
        self.eligible_spells = [
            s if s.category is GrantCategory.SPELL else s.model_copy(update={"category": GrantCategory.SPELL})
            for s in eligible_spells
        ]

        if roller is None:
            roller = FormulaRoller(seed=self.config.seed, default_formula=self.config.default_formula)
        self.resolver = TableResolver(CachingFetcher(fetcher), roller, max_depth=self.config.max_depth)
        self.ledger = DeduplicationLedger()
        self.broker = ChoiceBroker()
        self.synthesizer = StatChoiceSynthesizer()

        self.talents: list[GrantDescriptor] = []
        self.boons: list[GrantDescriptor] = []
        self.fixed_grants: list[GrantDescriptor] = []
        self.spells: list[GrantDescriptor] = []

        self._stat_queue: deque[_StatSlot] = deque()
        self._deferred: deque[tuple[TableEntry, GrantCategory]] = deque()
        self._choice_target: list[GrantDescriptor] | None = None
        self._finalized = False
        self._abandoned = False

        logger.info(
            f"Progression run {self.id} started: level {requirements.current_level} -> "
            f"{requirements.target_level}"
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pending_choice(self) -> PendingChoice | None:
        return self.broker.current

    @property
    def pending_stat_choice(self) -> StatChoiceRequest | None:
        return self._stat_queue[0].request if self._stat_queue else None

    @property
    def is_suspended(self) -> bool:
        return self.broker.is_pending or bool(self._stat_queue)

    @property
    def is_open(self) -> bool:
        return not (self._finalized or self._abandoned)

    @property
    def bonus_talent_slots(self) -> int:
        """Extra talents granted by talents landed in this run (level 1 only)."""
        if self.requirements.target_level != 1:
            return 0
        return sum(1 for g in self.fixed_grants if g.name.strip().lower() == AMBITIOUS_TALENT)

    @property
    def required_spells(self) -> int:
        names = [g.name for g in (*self.fixed_grants, *self.talents, *self.boons)]
        return self.requirements.required_spells(names)

    def _talents_satisfied(self) -> bool:
        return self.requirements.talents_satisfied(
            len(self.talents), len(self.boons), self.bonus_talent_slots
        )

    def _boons_satisfied(self) -> bool:
        return self.requirements.boons_satisfied(len(self.boons))

    def _spells_satisfied(self) -> bool:
        if len(self.spells) < self.required_spells:
            return False
        for tier, needed in self.requirements.spells_by_tier.items():
            if sum(1 for s in self.spells if s.tier == tier) < needed:
                return False
        return True

    @property
    def state(self) -> RunState:
        if not self._talents_satisfied():
            return RunState.NEEDS_TALENT_OR_BOON
        if not self._boons_satisfied():
            return RunState.NEEDS_BOON
        if not self._spells_satisfied():
            return RunState.NEEDS_SPELLS
        return RunState.COMPLETE

    def unmet_requirements(self) -> list[str]:
        """Human-readable list of what still blocks finalization."""
        unmet: list[str] = []
        if self.broker.current is not None:
            unmet.append(f"Pending choice: {self.broker.current.header}")
        if self._stat_queue:
            unmet.append(f"Pending stat choice for '{self._stat_queue[0].request.grant.name}'")
        if self._deferred:
            unmet.append(f"{len(self._deferred)} fixed grant(s) still to resolve")

        if not self._talents_satisfied():
            if self.requirements.patron_gated and self.requirements.required_boons:
                unmet.append("Roll a talent or an extra boon")
            elif self.boon_table is not None:
                unmet.append("Roll a talent or a boon")
            else:
                unmet.append("Roll a talent")
        if not self._boons_satisfied():
            missing = self.requirements.required_boons - len(self.boons)
            unmet.append(f"Roll {missing} boon(s)")
        if len(self.spells) < self.required_spells:
            unmet.append(f"Select {self.required_spells - len(self.spells)} more spell(s)")
        else:
            for tier, needed in sorted(self.requirements.spells_by_tier.items()):
                have = sum(1 for s in self.spells if s.tier == tier)
                if have < needed:
                    unmet.append(f"Select {needed - have} more tier {tier} spell(s)")
        return unmet

    @property
    def is_complete(self) -> bool:
        return self.state is RunState.COMPLETE and not self.is_suspended and not self._deferred

    def status(self) -> RunStatus:
        return RunStatus(
            run_id=self.id,
            state=self.state,
            target_level=self.requirements.target_level,
            talents=[g.name for g in self.talents],
            boons=[g.name for g in self.boons],
            fixed_grants=[g.name for g in self.fixed_grants],
            spells=[s.name for s in self.spells],
            required_spells=self.required_spells,
            pending_choice=self.pending_choice,
            pending_stat_choice=self.pending_stat_choice,
            unmet=self.unmet_requirements(),
            finalized=self._finalized,
        )

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._finalized:
            raise RunFinalizedError(f"Run {self.id} is already finalized", details={"run_id": self.id})
        if self._abandoned:
            raise RunFinalizedError(f"Run {self.id} was abandoned", details={"run_id": self.id})

    def _check_not_suspended(self) -> None:
        if self.broker.current is not None:
            raise ChoiceAlreadyPendingError(
                f"Resolve the pending choice first: {self.broker.current.header}",
                details={"options": [o.name for o in self.broker.current.options]},
            )
        if self._stat_queue:
            raise ChoiceAlreadyPendingError(
                f"Resolve the pending stat choice for '{self._stat_queue[0].request.grant.name}' first"
            )

    # ------------------------------------------------------------------
    # Landing grants
    # ------------------------------------------------------------------

    def _land(self, grant: GrantDescriptor, target: list[GrantDescriptor]) -> GrantDescriptor:
        result = self.synthesizer.synthesize(grant)
        if isinstance(result, StatChoiceRequest):
            target.append(grant)
            self._stat_queue.append(_StatSlot(result, target, len(target) - 1))
            return grant
        target.append(result)
        return result

    def _present(self, choice: PendingChoice, target: list[GrantDescriptor]) -> None:
        self.broker.present(choice)
        self._choice_target = target

    async def _ingest(
        self,
        resolution: TableResolution,
        target: list[GrantDescriptor],
    ) -> TableResolution:
        landed = [self._land(g, target) for g in resolution.grants]
        if resolution.pending is not None:
            self._present(resolution.pending, target)
        landed.extend(await self._drain_deferred())
        return TableResolution(grants=landed, pending=self.broker.current)

    async def _drain_deferred(self) -> list[GrantDescriptor]:
        """Resolve queued fixed grants in order, stopping at the first choice."""
        landed: list[GrantDescriptor] = []
        while self._deferred and self.broker.current is None:
            entry, category = self._deferred.popleft()
            resolution = await self.resolver.resolve_entry(entry, self.ledger, context=category)
            landed.extend(self._land(g, self.fixed_grants) for g in resolution.grants)
            if resolution.pending is not None:
                self._present(resolution.pending, self.fixed_grants)
        return landed

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def roll_talent(self) -> TableResolution:
        """Roll on the class talent table.

        Raises:
            ChoiceAlreadyPendingError: If a choice or stat choice is outstanding.
            ProtocolError: If there is no talent table or no talent slot left.
        """
        self._check_open()
        self._check_not_suspended()
        if self.talent_table is None:
            raise ProtocolError("No talent table configured for this run")
        if self._talents_satisfied():
            raise ProtocolError("No talent roll remaining at this level")

        resolution = await self.resolver.resolve_table(
            self.talent_table, self.ledger, context=GrantCategory.TALENT
        )
        if not resolution.grants and resolution.pending is None:
            logger.info("Talent roll produced nothing, roll again")
        return await self._ingest(resolution, self.talents)

    async def roll_boon(self) -> TableResolution:
        """Roll on the patron boon table.

        Raises:
            ChoiceAlreadyPendingError: If a choice or stat choice is outstanding.
            ProtocolError: If there is no boon table or no boon slot left.
        """
        self._check_open()
        self._check_not_suspended()
        if self.boon_table is None:
            raise ProtocolError("No boon table configured for this run")
        if self._boons_satisfied() and self._talents_satisfied():
            raise ProtocolError("No boon roll remaining at this level")

        resolution = await self.resolver.resolve_table(
            self.boon_table, self.ledger, context=GrantCategory.BOON
        )
        if not resolution.grants and resolution.pending is None:
            logger.info("Boon roll produced nothing, roll again")
        return await self._ingest(resolution, self.boons)

    async def resolve_choice(self, selection: Selection) -> TableResolution:
        """Answer the pending choice and continue resolution.

        Raises:
            NoPendingChoiceError: If no choice is outstanding.
            InvalidSelectionError: If the selection is not an offered option.
        """
        self._check_open()
        target = self._choice_target
        resolution = await self.broker.resolve(selection, self.resolver, self.ledger)
        self._choice_target = None
        return await self._ingest(resolution, target if target is not None else self.talents)

    def resolve_stat_choice(self, ability: str | None) -> GrantDescriptor:
        """Answer the pending stat choice; ``None`` keeps the grant without effect.

        Raises:
            NoPendingChoiceError: If no stat choice is outstanding.
            InvalidSelectionError: If ``ability`` is not a known ability.
        """
        self._check_open()
        if not self._stat_queue:
            raise NoPendingChoiceError("There is no pending stat choice")

        slot = self._stat_queue[0]
        grant = self.synthesizer.apply_choice(slot.request, ability)
        self._stat_queue.popleft()
        slot.target[slot.index] = grant
        if grant.name != slot.request.grant.name:
            self.ledger.record_name(grant.name)
        return grant

    async def add_fixed_grants(
        self,
        identifiers: Iterable[str],
        category: GrantCategory = GrantCategory.TALENT,
    ) -> TableResolution:
        """Grant a fixed list of documents (ancestry/class talents).

        Every document is fetched concurrently first, then the list is
        resolved in order; a table among them may raise a choice, after
        which the rest of the list resumes once the choice is answered.
        """
        self._check_open()
        self._check_not_suspended()

        entries = [TableEntry(kind=EntryKind.DOCUMENT, document_id=i) for i in identifiers if i]
        await self.resolver.prefetch([e.document_id for e in entries])
        self._deferred.extend((e, category) for e in entries)

        landed = await self._drain_deferred()
        return TableResolution(grants=landed, pending=self.broker.current)

    def select_spells(self, selection: Iterable[str | GrantDescriptor]) -> list[GrantDescriptor]:
        """Replace the spell selection.

        Items are matched against the eligible list by remote identifier or
        name. At most ``required_spells`` may be selected.

        Raises:
            InvalidSelectionError: On an unknown or repeated spell, or too many.
        """
        self._check_open()
        selection = list(selection)
        limit = self.required_spells
        if len(selection) > limit:
            raise InvalidSelectionError(
                f"Too many spells selected: {len(selection)} (at most {limit})",
                details={"limit": limit},
            )

        chosen: list[GrantDescriptor] = []
        for item in selection:
            spell = self._find_spell(item)
            if spell in chosen:
                raise InvalidSelectionError(f"Spell selected twice: {spell.name}")
            chosen.append(spell)

        self.spells = chosen
        logger.info(f"Selected {len(chosen)} spell(s): {', '.join(s.name for s in chosen)}")
        return list(chosen)

    def _find_spell(self, item: str | GrantDescriptor) -> GrantDescriptor:
        if isinstance(item, GrantDescriptor):
            keys = {k for k in (item.remote_identifier, item.name.lower()) if k}
        else:
            keys = {item, item.strip().lower()}
        for spell in self.eligible_spells:
            if spell.remote_identifier in keys or spell.name.lower() in keys:
                return spell
        raise InvalidSelectionError(
            f"'{item if isinstance(item, str) else item.name}' is not an eligible spell",
            details={"eligible": [s.name for s in self.eligible_spells]},
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    async def finalize(
        self,
        request_choice: ChoiceHook | None = None,
        request_stat_choice: StatChoiceHook | None = None,
    ) -> list[GrantDescriptor]:
        """Produce the final grant list.

        Every grant with a remote identifier is fetched in full. A grant
        whose document turns out to be a table is replaced in place by the
        result of rolling on it; choices raised there go to
        ``request_choice`` and stat choices to ``request_stat_choice``.
        A choice hook returning ``None`` leaves the choice open.

        The pass works on a copy of the ledger and keeps the roller state,
        so a failed attempt changes nothing: retrying replays the same
        rolls and offers the same choices.

        Raises:
            RunFinalizedError: If the run was already finalized or abandoned.
            IncompleteRunError: If requirements are unmet, or a choice
                surfaced during finalization and was left unanswered.
        """
        self._check_open()
        unmet = self.unmet_requirements()
        if unmet:
            raise IncompleteRunError(
                f"Run {self.id} is not complete: {'; '.join(unmet)}",
                unmet=unmet,
                details={"run_id": self.id, "state": self.state.value},
            )

        ledger = self.ledger.copy()
        roll_state = self.resolver.roller.getstate()
        try:
            final: list[GrantDescriptor] = []
            for grant in (*self.fixed_grants, *self.talents, *self.boons):
                final.extend(await self._expand(grant, ledger, request_choice, request_stat_choice))
            for spell in self.spells:
                if ledger.accept(spell):
                    final.append(spell)
        except Exception:
            self.resolver.roller.setstate(roll_state)
            raise

        self.ledger = ledger
        level = self.requirements.target_level
        final = [g.model_copy(update={"level": level}) for g in final]
        self._finalized = True
        logger.info(f"Progression run {self.id} finalized with {len(final)} grant(s)")
        return final

    async def _expand(
        self,
        grant: GrantDescriptor,
        ledger: DeduplicationLedger,
        request_choice: ChoiceHook | None,
        request_stat_choice: StatChoiceHook | None,
    ) -> list[GrantDescriptor]:
        if not grant.remote_identifier:
            return [grant]

        doc = await self.resolver.fetch(grant.remote_identifier)
        if doc is None:
            return [grant]
        if not doc.is_table:
            return [merge_document(grant, doc)]

        logger.info(f"'{grant.name}' is a table, resolving it in place")
        resolution = await self.resolver.resolve_table(
            doc.as_table(), ledger, context=grant.category, depth=1
        )
        found = list(resolution.grants)
        while resolution.pending is not None:
            choice = resolution.pending
            selection = await request_choice(choice) if request_choice else None
            if selection is None:
                raise IncompleteRunError(
                    f"'{grant.name}' needs a choice during finalization: {choice.header}",
                    unmet=[f"Pending choice: {choice.header}"],
                    details={
                        "grant": grant.name,
                        "header": choice.header,
                        "options": [o.name for o in choice.options],
                    },
                )
            option = find_option(choice, selection)
            resolution = await self.resolver.resolve_entry(
                option.entry, ledger, context=choice.context, depth=1
            )
            found.extend(resolution.grants)

        expanded: list[GrantDescriptor] = []
        for result in found:
            synthesized = self.synthesizer.synthesize(result)
            if isinstance(synthesized, StatChoiceRequest):
                ability = await request_stat_choice(synthesized) if request_stat_choice else None
                synthesized = self.synthesizer.apply_choice(synthesized, ability)
            expanded.append(synthesized)
        return expanded

    def abandon(self) -> None:
        """Drop the run; nothing has been written anywhere, so nothing is undone."""
        self._check_open()
        self._abandoned = True
        self.broker.clear()
        self._stat_queue.clear()
        self._deferred.clear()
        logger.info(f"Progression run {self.id} abandoned")


# ----------------------------------------------------------------------
# Call sites
# ----------------------------------------------------------------------


def start_level_up(
    fetcher: DocumentFetcher,
    class_profile: ClassProfile,
    current_level: int,
    *,
    known_grant_names: Iterable[str] = (),
    boon_table: RollTable | str | None = None,
    eligible_spells: Iterable[GrantDescriptor] = (),
    config: ResolverConfig | None = None,
    roller: FormulaRoller | None = None,
) -> ProgressionRun:
    """Start a run advancing an existing character by one level."""
    requirements = calculate_requirements(
        current_level + 1, class_profile, known_grant_names, current_level=current_level
    )
    return ProgressionRun(
        fetcher,
        requirements,
        talent_table=class_profile.talent_table,
        boon_table=boon_table,
        eligible_spells=eligible_spells,
        config=config,
        roller=roller,
    )


async def start_character_generation(
    fetcher: DocumentFetcher,
    class_profile: ClassProfile,
    *,
    fixed_talents: Iterable[str] = (),
    ancestry_talents: list[str] | None = None,
    ancestry_choice_count: int | None = None,
    boon_table: RollTable | str | None = None,
    eligible_spells: Iterable[GrantDescriptor] = (),
    config: ResolverConfig | None = None,
    roller: FormulaRoller | None = None,
) -> ProgressionRun:
    """Start a run for a new level-1 character and grant its fixed talents.

    The returned run may already hold a pending choice if one of the fixed
    talents is a table.
    """
    requirements = calculate_requirements(1, class_profile, current_level=0)
    run = ProgressionRun(
        fetcher,
        requirements,
        talent_table=class_profile.talent_table,
        boon_table=boon_table,
        eligible_spells=eligible_spells,
        config=config,
        roller=roller,
    )
    picked = pick_ancestry_talents(ancestry_talents or [], ancestry_choice_count, run.resolver.roller)
    await run.add_fixed_grants([*fixed_talents, *picked])
    return run
