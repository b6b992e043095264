"""
Tests for ProgressionRun: the level-up / character-generation state machine.

Tests cover:
- Talent rolls, pending choices and stat choices
- Patron-gated boon requirements
- Spell selection bounds and tier requirements
- Finalization: gating, full-fetch merge, in-place table substitution
- Character generation with fixed and ancestry talents
"""

from __future__ import annotations

import pytest

from shadowroll.dice import FormulaRoller
from shadowroll.documents import ClassProfile, InMemoryDocumentStore
from shadowroll.exceptions import (
    ChoiceAlreadyPendingError,
    IncompleteRunError,
    InvalidSelectionError,
    NoPendingChoiceError,
    ProtocolError,
    RunFinalizedError,
)
from shadowroll.models import (
    Document,
    GrantCategory,
    GrantDescriptor,
    MechanicalEffect,
    PendingChoice,
    RollTable,
    TableEntry,
)
from shadowroll.orchestrator import (
    ProgressionRun,
    merge_document,
    pick_ancestry_talents,
    start_character_generation,
    start_level_up,
)
from shadowroll.requirements import RunState, calculate_requirements

pytestmark = pytest.mark.anyio


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class QueuedRoller(FormulaRoller):
    """Roller returning pre-set results in order."""

    def __init__(self, *results: int) -> None:
        super().__init__(seed=0)
        self.results = list(results)

    def roll(self, formula: str | None) -> int:
        return self.results.pop(0)


FIGHTER = ClassProfile(name="Fighter")
WARLOCK = ClassProfile(name="Warlock", patron_required=True, starting_boons=1)
WIZARD = ClassProfile(name="Wizard", spells_known={1: {1: 3}, 2: {1: 4}, 3: {1: 4, 2: 1}})

BOON_TABLE = RollTable(name="Patron Boons", formula="1d2", entries=[
    TableEntry(low=1, high=1, name="Patron's Favor"),
    TableEntry(low=2, high=2, name="Dark Whispers"),
])

PICK_TABLE = Document(
    name="Pick a Side",
    remote_identifier="tables.pick",
    is_table=True,
    table_entries=[
        TableEntry(low=1, high=1, name="Left"),
        TableEntry(low=1, high=1, text="or", drawable=False),
        TableEntry(low=1, high=1, name="Right"),
    ],
)

MAGIC_MISSILE = GrantDescriptor(name="Magic Missile", remote_identifier="spells.missile", tier=1)
FIREBALL = GrantDescriptor(name="Fireball", remote_identifier="spells.fireball", tier=3)


def make_run(store, profile=FIGHTER, target_level=3, rolls=(), talent_table=None, **kwargs) -> ProgressionRun:
    requirements = calculate_requirements(target_level, profile)
    return ProgressionRun(
        store,
        requirements,
        roller=QueuedRoller(*rolls),
        talent_table=talent_table,
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Talent rolls
# ---------------------------------------------------------------------------


class TestRollTalent:

    async def test_fixed_stat_talent_completes_run(self, store, talent_table):
        run = make_run(store, rolls=[4], talent_table=talent_table)
        assert run.state is RunState.NEEDS_TALENT_OR_BOON

        result = await run.roll_talent()

        assert [g.name for g in result.grants] == ["+1 DEX"]
        assert result.grants[0].effects[0].path == "system.abilities.dex.bonus"
        assert run.state is RunState.COMPLETE
        assert run.is_complete

    async def test_tied_roll_surfaces_choice(self, store, talent_table):
        run = make_run(store, rolls=[10], talent_table=talent_table)
        result = await run.roll_talent()

        assert result.grants == []
        assert result.pending.header == "Choose One"
        assert [o.name for o in result.pending.options] == ["Advantage on initiative", "Climb at full speed"]
        assert run.pending_choice == result.pending
        assert run.state is RunState.NEEDS_TALENT_OR_BOON

        with pytest.raises(ChoiceAlreadyPendingError):
            await run.roll_talent()

        resolved = await run.resolve_choice("Climb at full speed")
        assert [g.name for g in resolved.grants] == ["Climb at full speed"]
        assert run.pending_choice is None
        assert run.is_complete

    async def test_choice_by_index(self, store, talent_table):
        run = make_run(store, rolls=[11], talent_table=talent_table)
        await run.roll_talent()
        resolved = await run.resolve_choice(0)
        assert resolved.grants[0].name == "Advantage on initiative"

    async def test_invalid_selection_keeps_choice(self, store, talent_table):
        run = make_run(store, rolls=[10], talent_table=talent_table)
        await run.roll_talent()
        with pytest.raises(InvalidSelectionError):
            await run.resolve_choice("Fly")
        assert run.pending_choice is not None

    async def test_resolve_without_choice(self, store, talent_table):
        run = make_run(store, talent_table=talent_table)
        with pytest.raises(NoPendingChoiceError):
            await run.resolve_choice(0)

    async def test_free_stat_choice(self, store, talent_table):
        run = make_run(store, rolls=[8], talent_table=talent_table)
        result = await run.roll_talent()

        assert result.grants[0].name == "+1 to any stat"
        assert run.pending_stat_choice.amount == 1
        assert not run.is_complete
        with pytest.raises(IncompleteRunError):
            await run.finalize()

        grant = run.resolve_stat_choice("DEX")
        assert grant.name == "+1 to any stat (DEX)"
        assert run.talents == [grant]
        assert run.pending_stat_choice is None
        assert run.is_complete

    async def test_declined_stat_choice_keeps_talent(self, store, talent_table):
        run = make_run(store, rolls=[12], talent_table=talent_table)
        await run.roll_talent()
        grant = run.resolve_stat_choice(None)
        assert grant.name == "+2 to any stat"
        assert grant.effects == []
        assert run.is_complete

    async def test_stat_choice_without_request(self, store, talent_table):
        run = make_run(store, talent_table=talent_table)
        with pytest.raises(NoPendingChoiceError):
            run.resolve_stat_choice("STR")

    async def test_no_talent_slot_at_even_level(self, store, talent_table):
        run = make_run(store, target_level=4, talent_table=talent_table)
        assert run.is_complete
        with pytest.raises(ProtocolError):
            await run.roll_talent()
        assert await run.finalize() == []

    async def test_no_talent_table(self, store):
        run = make_run(store)
        with pytest.raises(ProtocolError):
            await run.roll_talent()

    async def test_duplicate_roll_lands_nothing(self, store, talent_table):
        requirements = calculate_requirements(1, FIGHTER, ["Ambitious"], current_level=0)
        run = ProgressionRun(store, requirements, talent_table=talent_table, roller=QueuedRoller(4, 5, 2))

        await run.roll_talent()
        second = await run.roll_talent()
        assert second.grants == []
        assert run.state is RunState.NEEDS_TALENT_OR_BOON

        third = await run.roll_talent()
        assert [g.name for g in third.grants] == ["Backstab +1 die"]
        assert run.is_complete

    async def test_runs_have_separate_choice_slots(self, store, talent_table):
        first = make_run(store, rolls=[10], talent_table=talent_table)
        second = make_run(store, rolls=[10], talent_table=talent_table)
        await first.roll_talent()
        await second.roll_talent()
        await first.resolve_choice(0)
        assert first.pending_choice is None
        assert second.pending_choice is not None


# ---------------------------------------------------------------------------
# Patron boons
# ---------------------------------------------------------------------------


class TestPatronBoons:

    async def test_talent_without_boon_is_rejected(self, store, talent_table):
        run = make_run(store, profile=WARLOCK, rolls=[4], talent_table=talent_table, boon_table=BOON_TABLE)
        await run.roll_talent()

        assert run.state is RunState.NEEDS_BOON
        with pytest.raises(IncompleteRunError) as exc_info:
            await run.finalize()
        assert any("boon" in u for u in exc_info.value.unmet)

    async def test_talent_and_boon_complete(self, store, talent_table):
        run = make_run(store, profile=WARLOCK, rolls=[4, 1], talent_table=talent_table, boon_table=BOON_TABLE)
        await run.roll_talent()
        result = await run.roll_boon()

        assert result.grants[0].category is GrantCategory.BOON
        assert run.is_complete
        final = await run.finalize()
        assert [g.name for g in final] == ["+1 DEX", "Patron's Favor"]

    async def test_extra_boon_replaces_talent(self, store, talent_table):
        run = make_run(store, profile=WARLOCK, rolls=[1, 2], talent_table=talent_table, boon_table=BOON_TABLE)
        await run.roll_boon()
        assert run.state is RunState.NEEDS_TALENT_OR_BOON
        await run.roll_boon()

        assert run.is_complete
        with pytest.raises(ProtocolError):
            await run.roll_talent()

    async def test_level_one_boons_only(self, store, talent_table):
        requirements = calculate_requirements(1, WARLOCK, current_level=0)
        run = ProgressionRun(store, requirements, talent_table=talent_table, boon_table=BOON_TABLE,
                             roller=QueuedRoller(2))
        with pytest.raises(ProtocolError):
            await run.roll_talent()
        await run.roll_boon()
        assert run.is_complete

    async def test_no_boon_table(self, store, talent_table):
        run = make_run(store, profile=WARLOCK, talent_table=talent_table)
        with pytest.raises(ProtocolError):
            await run.roll_boon()


# ---------------------------------------------------------------------------
# Spells
# ---------------------------------------------------------------------------


class TestSpellSelection:

    def make_wizard_run(self, store) -> ProgressionRun:
        return make_run(store, profile=WIZARD, target_level=2, eligible_spells=[MAGIC_MISSILE, FIREBALL])

    async def test_requires_tiered_spell(self, store):
        run = self.make_wizard_run(store)
        assert run.state is RunState.NEEDS_SPELLS
        assert run.required_spells == 1

        run.select_spells(["Fireball"])
        assert run.state is RunState.NEEDS_SPELLS

        run.select_spells(["spells.missile"])
        assert run.state is RunState.COMPLETE

    async def test_too_many_spells(self, store):
        run = self.make_wizard_run(store)
        with pytest.raises(InvalidSelectionError):
            run.select_spells(["Magic Missile", "Fireball"])

    async def test_unknown_spell(self, store):
        run = self.make_wizard_run(store)
        with pytest.raises(InvalidSelectionError):
            run.select_spells(["Wish"])

    async def test_eligible_spells_are_spell_category(self, store):
        run = self.make_wizard_run(store)
        chosen = run.select_spells([MAGIC_MISSILE])
        assert chosen[0].category is GrantCategory.SPELL

    async def test_spells_appended_last(self, store, talent_table):
        run = make_run(store, profile=WIZARD, target_level=3, rolls=[4], talent_table=talent_table,
                       eligible_spells=[MAGIC_MISSILE, GrantDescriptor(name="Mirror Image", tier=2)])
        await run.roll_talent()
        run.select_spells(["Mirror Image"])
        final = await run.finalize()
        assert [g.name for g in final] == ["+1 DEX", "Mirror Image"]
        assert all(g.level == 3 for g in final)


# ---------------------------------------------------------------------------
# Finalization
# ---------------------------------------------------------------------------


def index_table(name: str, document_id: str) -> RollTable:
    """A roll-time index table whose only result points at a full document."""
    return RollTable(name="Index", entries=[TableEntry(low=1, high=1, name=name, document_id=document_id)])


class TestFinalize:

    async def test_full_fetch_merges_document(self, store):
        run = make_run(store, talent_table=index_table("Backstab", "Compendium.sd.talents.Item.backstab"), rolls=[1])
        await run.roll_talent()
        final = await run.finalize()

        assert len(final) == 1
        assert final[0].name == "Backstab"
        assert final[0].description == "Your backstab deals an extra die of damage."
        assert final[0].level == 3

    async def test_table_document_substituted(self, store):
        run = make_run(store, talent_table=index_table("Weapon Mastery", "Compendium.sd.tables.RollTable.weapons"),
                       rolls=[1, 2])
        await run.roll_talent()
        assert [g.name for g in run.talents] == ["Weapon Mastery"]

        final = await run.finalize()
        assert [g.name for g in final] == ["Dagger Mastery"]

    async def test_choice_during_finalize_needs_hook(self, store):
        store.add(PICK_TABLE)
        run = make_run(store, talent_table=index_table("Pick", "tables.pick"), rolls=[1, 1])
        await run.roll_talent()
        with pytest.raises(IncompleteRunError):
            await run.finalize()

    async def test_choice_during_finalize_with_hook(self, store):
        store.add(PICK_TABLE)
        seen: list[PendingChoice] = []

        async def request_choice(choice: PendingChoice) -> str:
            seen.append(choice)
            return "Right"

        run = make_run(store, talent_table=index_table("Pick", "tables.pick"), rolls=[1, 1])
        await run.roll_talent()
        final = await run.finalize(request_choice=request_choice)

        assert [g.name for g in final] == ["Right"]
        assert [o.name for o in seen[0].options] == ["Left", "Right"]

    async def test_failed_finalize_can_be_retried(self, store):
        store.add(PICK_TABLE)
        store.add(Document(name="Eyes", remote_identifier="tables.eyes", is_table=True,
                           table_entries=[TableEntry(low=1, high=1, name="Sharp Eyes")]))
        run = make_run(store, talent_table=index_table("Pick", "tables.pick"), rolls=[1, 1, 1, 1, 1])
        run.fixed_grants.append(GrantDescriptor(name="Eyes", remote_identifier="tables.eyes"))
        await run.roll_talent()

        with pytest.raises(IncompleteRunError) as exc_info:
            await run.finalize()
        assert exc_info.value.details["options"] == ["Left", "Right"]

        async def pick_first(choice: PendingChoice) -> int:
            return 0

        final = await run.finalize(request_choice=pick_first)
        assert [g.name for g in final] == ["Sharp Eyes", "Left"]

    async def test_unanswered_hook_leaves_choice_open(self, store):
        store.add(PICK_TABLE)

        async def no_answer(choice: PendingChoice) -> None:
            return None

        run = make_run(store, talent_table=index_table("Pick", "tables.pick"), rolls=[1, 1])
        await run.roll_talent()
        with pytest.raises(IncompleteRunError):
            await run.finalize(request_choice=no_answer)
        assert run.is_open

    async def test_failed_finalize_rewinds_rolls(self, store):
        store.add(PICK_TABLE)
        run = ProgressionRun(
            store,
            calculate_requirements(3, FIGHTER),
            talent_table=index_table("Pick", "tables.pick"),
            roller=FormulaRoller(seed=7),
        )
        await run.roll_talent()
        state = run.resolver.roller.getstate()

        with pytest.raises(IncompleteRunError):
            await run.finalize()
        assert run.resolver.roller.getstate() == state

    async def test_stat_choice_during_finalize(self):
        store = InMemoryDocumentStore([
            Document(name="Stat Boost", remote_identifier="tables.boost", is_table=True,
                     table_entries=[TableEntry(low=1, high=1, name="+1 to any stat")]),
        ])

        async def request_stat_choice(request) -> str:
            return "CON"

        run = make_run(store, talent_table=index_table("Boost", "tables.boost"), rolls=[1, 1])
        await run.roll_talent()
        final = await run.finalize(request_stat_choice=request_stat_choice)
        assert final[0].name == "+1 to any stat (CON)"
        assert final[0].effects[0].path == "system.abilities.con.bonus"

    async def test_finalize_once(self, store, talent_table):
        run = make_run(store, rolls=[4], talent_table=talent_table)
        await run.roll_talent()
        await run.finalize()
        with pytest.raises(RunFinalizedError):
            await run.finalize()
        with pytest.raises(RunFinalizedError):
            await run.roll_talent()

    async def test_incomplete_run_rejected(self, store, talent_table):
        run = make_run(store, talent_table=talent_table)
        with pytest.raises(IncompleteRunError) as exc_info:
            await run.finalize()
        assert exc_info.value.unmet == ["Roll a talent"]

    async def test_abandon(self, store, talent_table):
        run = make_run(store, rolls=[10], talent_table=talent_table)
        await run.roll_talent()
        run.abandon()
        assert not run.is_open
        with pytest.raises(RunFinalizedError):
            await run.resolve_choice(0)

    def test_merge_keeps_name_and_synthesized_effect(self):
        dex = MechanicalEffect(path="system.abilities.dex.bonus", value=1)
        grant = GrantDescriptor(name="+1 to any stat (DEX)", effects=[dex])
        doc = Document(
            name="+1 to any stat",
            description="Raise one ability.",
            icon="icons/stat.svg",
            effects=[MechanicalEffect(path="system.bonuses.hp", value=1)],
        )
        merged = merge_document(grant, doc)
        assert merged.name == "+1 to any stat (DEX)"
        assert merged.description == "Raise one ability."
        assert merged.icon == "icons/stat.svg"
        assert [e.path for e in merged.effects] == ["system.bonuses.hp", "system.abilities.dex.bonus"]


# ---------------------------------------------------------------------------
# Call sites
# ---------------------------------------------------------------------------


class TestCallSites:

    async def test_start_level_up(self, store):
        profile = ClassProfile(name="Fighter", talent_table="Compendium.sd.tables.RollTable.weapons")
        run = start_level_up(store, profile, current_level=2, roller=QueuedRoller(1))
        assert run.requirements.target_level == 3
        result = await run.roll_talent()
        assert [g.name for g in result.grants] == ["Longsword Mastery"]

    async def test_character_generation_with_ambitious(self, store, talent_table):
        profile = ClassProfile(name="Fighter")
        run = await start_character_generation(
            store,
            profile,
            fixed_talents=["Compendium.sd.ancestry.Item.ambitious"],
            roller=QueuedRoller(4, 2),
        )
        run.talent_table = talent_table

        assert [g.name for g in run.fixed_grants] == ["Ambitious"]
        await run.roll_talent()
        assert run.state is RunState.NEEDS_TALENT_OR_BOON
        await run.roll_talent()
        assert run.is_complete

        final = await run.finalize()
        assert [g.name for g in final] == ["Ambitious", "+1 DEX", "Backstab +1 die"]
        assert all(g.level == 1 for g in final)

    async def test_ancestry_choice_count(self, store):
        run = await start_character_generation(
            store,
            FIGHTER,
            ancestry_talents=["Compendium.sd.ancestry.Item.mighty", "Compendium.sd.ancestry.Item.keen"],
            ancestry_choice_count=1,
            roller=FormulaRoller(seed=11),
        )
        assert len(run.fixed_grants) == 1
        assert run.fixed_grants[0].name in {"Mighty", "Keen Senses"}

    async def test_fixed_table_choice_defers_rest(self, store):
        store.add(PICK_TABLE)
        run = await start_character_generation(
            store,
            FIGHTER,
            fixed_talents=["tables.pick", "Compendium.sd.ancestry.Item.mighty"],
        )
        assert run.pending_choice is not None
        assert run.fixed_grants == []

        result = await run.resolve_choice("Left")
        assert [g.name for g in result.grants] == ["Left", "Mighty"]
        assert [g.name for g in run.fixed_grants] == ["Left", "Mighty"]

    async def test_missing_fixed_talent_uses_identifier(self, store):
        run = await start_character_generation(store, FIGHTER, fixed_talents=["Compendium.sd.ancestry.Item.gone"])
        assert [g.name for g in run.fixed_grants] == ["Compendium.sd.ancestry.Item.gone"]

    def test_pick_all_when_not_limited(self):
        roller = FormulaRoller(seed=1)
        assert pick_ancestry_talents(["a", "b"], None, roller) == ["a", "b"]
        assert pick_ancestry_talents(["a", "b"], 2, roller) == ["a", "b"]
