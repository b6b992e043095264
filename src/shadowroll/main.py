"""
Shadowroll MCP Server
Table-driven talent, boon and spell progression exposed as FastMCP tools.
"""

import json
import logging
from collections import deque
from typing import Annotated, Literal

from fastmcp import FastMCP
from pydantic import Field

from .config import ResolverConfig
from .documents import (
    ClassProfile,
    DocumentFetcher,
    HttpDocumentFetcher,
    InMemoryDocumentStore,
    load_pack_directory,
)
from .exceptions import DocumentFetchError, IncompleteRunError, ProtocolError
from .models import GrantCategory, GrantDescriptor, PendingChoice, StatChoiceRequest, TableResolution
from .orchestrator import ProgressionRun, start_character_generation, start_level_up
from .resolver import grant_from_document

logger = logging.getLogger("shadowroll")

config = ResolverConfig.from_env()

logging.basicConfig(
    level=config.log_level,
    )


def build_fetcher(config: ResolverConfig) -> DocumentFetcher:
    """Content packs win over a remote store; with neither, serve nothing."""
    if config.pack_dir is not None:
        return load_pack_directory(config.pack_dir)
    if config.document_base_url:
        return HttpDocumentFetcher(
            config.document_base_url,
            timeout=config.request_timeout,
            max_retries=config.max_retries,
            retry_backoff=config.retry_backoff,
        )
    logger.warning("❌ No SHADOWROLL_PACK_DIR or SHADOWROLL_DOCUMENT_BASE_URL set, no documents available")
    return InMemoryDocumentStore()


fetcher = build_fetcher(config)
runs: dict[str, ProgressionRun] = {}

mcp = FastMCP(
    name="shadowroll"
)

logger.debug("✅ Server initialized, registering tools")


# ----------------------------------------------------------------------
# Formatting
# ----------------------------------------------------------------------


def _format_grant(grant: GrantDescriptor) -> str:
    line = f"• {grant.name} ({grant.category.value})"
    if grant.effects:
        line += " [" + ", ".join(e.label or f"{e.path} {e.value}" for e in grant.effects) + "]"
    return line


def _format_resolution(run: ProgressionRun, resolution: TableResolution) -> str:
    lines = []
    if resolution.grants:
        lines.append("🎲 **Granted:**")
        lines.extend(_format_grant(g) for g in resolution.grants)
    elif resolution.pending is None:
        lines.append("🎲 Nothing new was granted (duplicate or empty result), roll again.")

    if resolution.pending is not None:
        lines.append(f"\n❓ **{resolution.pending.header}**")
        lines.extend(f"  {i}. {o.name}" for i, o in enumerate(resolution.pending.options))
        lines.append("Answer with resolve_choice.")

    stat = run.pending_stat_choice
    if stat is not None:
        offered = f" from {', '.join(stat.abilities)}" if stat.abilities else ""
        lines.append(f"\n📈 '{stat.grant.name}' needs an ability{offered} (+{stat.amount}). Answer with resolve_stat_choice.")

    lines.append(f"\nState: {run.state.value}")
    return "\n".join(lines)


def _get_run(run_id: str) -> ProgressionRun:
    run = runs.get(run_id)
    if run is None:
        raise ProtocolError(f"Unknown run: {run_id}")
    return run


def _parse_spells_known(spells_known: str | None) -> dict[int, dict[int, int]]:
    if not spells_known:
        return {}
    parsed = json.loads(spells_known)
    return {int(level): {int(t): int(n) for t, n in tiers.items()} for level, tiers in parsed.items()}


async def _fetch_spells(identifiers: list[str]) -> list[GrantDescriptor]:
    spells = []
    for identifier in identifiers:
        try:
            doc = await fetcher.fetch(identifier)
        except DocumentFetchError as e:
            logger.warning(f"Failed to fetch spell {identifier}: {e.message}")
            continue
        if doc is None:
            logger.warning(f"Spell not found: {identifier}")
            continue
        spells.append(grant_from_document(doc, GrantCategory.SPELL))
    return spells


# ----------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------


@mcp.tool
async def start_progression_run(
    class_name: Annotated[str, Field(description="Character class name")],
    mode: Annotated[Literal["level_up", "character_generation"], Field(description="'level_up' for an existing character, 'character_generation' for a new one")] = "level_up",
    current_level: Annotated[int, Field(description="Level before advancing (ignored for character generation)", ge=0)] = 0,
    talent_table: Annotated[str | None, Field(description="Remote identifier of the class talent table")] = None,
    boon_table: Annotated[str | None, Field(description="Remote identifier of the patron boon table")] = None,
    patron_required: Annotated[bool, Field(description="Whether the class needs patron boons")] = False,
    starting_boons: Annotated[int, Field(description="Boons a patron class starts with at level 1", ge=0)] = 0,
    spells_known: Annotated[str | None, Field(description="JSON spells-known table: {\"1\": {\"1\": 3}, \"2\": {\"1\": 4}}")] = None,
    eligible_spells: Annotated[list[str] | None, Field(description="Remote identifiers of the spells the character may pick")] = None,
    known_talents: Annotated[list[str] | None, Field(description="Names of talents and boons the character already has")] = None,
    fixed_talents: Annotated[list[str] | None, Field(description="Remote identifiers of talents always granted (character generation)")] = None,
    ancestry_talents: Annotated[list[str] | None, Field(description="Remote identifiers of the ancestry's talents (character generation)")] = None,
    ancestry_choice_count: Annotated[int | None, Field(description="How many ancestry talents to pick at random, if fewer than offered")] = None,
) -> str:
    """Start a level-up or character-generation run and return its id."""
    try:
        profile = ClassProfile(
            name=class_name,
            talent_table=talent_table,
            patron_required=patron_required,
            starting_boons=starting_boons,
            spells_known=_parse_spells_known(spells_known),
        )
    except (json.JSONDecodeError, AttributeError, TypeError, ValueError) as e:
        return f"❌ Invalid class data: {e}"

    spells = await _fetch_spells(eligible_spells or [])

    if mode == "character_generation":
        run = await start_character_generation(
            fetcher,
            profile,
            fixed_talents=fixed_talents or [],
            ancestry_talents=ancestry_talents,
            ancestry_choice_count=ancestry_choice_count,
            boon_table=boon_table,
            eligible_spells=spells,
            config=config,
        )
    else:
        run = start_level_up(
            fetcher,
            profile,
            current_level,
            known_grant_names=known_talents or [],
            boon_table=boon_table,
            eligible_spells=spells,
            config=config,
        )
    runs[run.id] = run

    lines = [f"🌟 Started {mode.replace('_', ' ')} run `{run.id}` for {class_name} (level {run.requirements.target_level})"]
    if run.fixed_grants or run.pending_choice:
        lines.append(_format_resolution(run, TableResolution(grants=run.fixed_grants, pending=run.pending_choice)))
    unmet = run.unmet_requirements()
    if unmet:
        lines.append("Still needed:\n" + "\n".join(f"• {u}" for u in unmet))
    else:
        lines.append("Nothing else needed, ready to finalize.")
    return "\n".join(lines)


@mcp.tool
async def roll_talent(
    run_id: Annotated[str, Field(description="Progression run id")],
) -> str:
    """Roll on the class talent table."""
    try:
        run = _get_run(run_id)
        return _format_resolution(run, await run.roll_talent())
    except ProtocolError as e:
        return f"❌ {e.message}"


@mcp.tool
async def roll_boon(
    run_id: Annotated[str, Field(description="Progression run id")],
) -> str:
    """Roll on the patron boon table."""
    try:
        run = _get_run(run_id)
        return _format_resolution(run, await run.roll_boon())
    except ProtocolError as e:
        return f"❌ {e.message}"


@mcp.tool
async def resolve_choice(
    run_id: Annotated[str, Field(description="Progression run id")],
    selection: Annotated[str, Field(description="Option name, or its number from the list")],
) -> str:
    """Answer the run's pending choice."""
    try:
        run = _get_run(run_id)
        return _format_resolution(run, await run.resolve_choice(selection))
    except ProtocolError as e:
        return f"❌ {e.message}"


@mcp.tool
def resolve_stat_choice(
    run_id: Annotated[str, Field(description="Progression run id")],
    ability: Annotated[str | None, Field(description="Ability to raise (STR, DEX, CON, INT, WIS, CHA); omit to decline")] = None,
) -> str:
    """Answer the run's pending stat choice."""
    try:
        run = _get_run(run_id)
        grant = run.resolve_stat_choice(ability)
    except ProtocolError as e:
        return f"❌ {e.message}"
    return f"📈 {_format_grant(grant)}\n\nState: {run.state.value}"


@mcp.tool
def select_spells(
    run_id: Annotated[str, Field(description="Progression run id")],
    spells: Annotated[list[str], Field(description="Spell names or remote identifiers, replacing any earlier selection")],
) -> str:
    """Select the spells learned at this level."""
    try:
        run = _get_run(run_id)
        chosen = run.select_spells(spells)
    except ProtocolError as e:
        return f"❌ {e.message}"
    listing = "\n".join(_format_grant(s) for s in chosen) or "(none)"
    return f"✨ Selected {len(chosen)}/{run.required_spells} spell(s):\n{listing}\n\nState: {run.state.value}"


@mcp.tool
def get_run_status(
    run_id: Annotated[str, Field(description="Progression run id")],
) -> str:
    """Show what a run has collected and what it still needs."""
    try:
        status = _get_run(run_id).status()
    except ProtocolError as e:
        return f"❌ {e.message}"

    lines = [f"**Run {status.run_id}** (level {status.target_level}): {status.state.value}"]
    for label, names in (
        ("Fixed", status.fixed_grants),
        ("Talents", status.talents),
        ("Boons", status.boons),
        ("Spells", status.spells),
    ):
        if names:
            lines.append(f"{label}: {', '.join(names)}")
    if status.unmet:
        lines.append("Still needed:\n" + "\n".join(f"• {u}" for u in status.unmet))
    return "\n".join(lines)


@mcp.tool
async def finalize_run(
    run_id: Annotated[str, Field(description="Progression run id")],
    choices: Annotated[list[str] | None, Field(description="Answers, in order, to choices raised while finalizing (option name or index)")] = None,
    abilities: Annotated[list[str] | None, Field(description="Abilities, in order, for stat choices raised while finalizing")] = None,
) -> str:
    """Finalize a complete run and list every grant for the character.

    A table reached while finalizing may raise a choice. The run then stays
    open and the choice is listed; call again with the answers in ``choices``.
    """
    answers = deque(choices or [])
    ability_answers = deque(abilities or [])

    async def request_choice(choice: PendingChoice) -> str | None:
        return answers.popleft() if answers else None

    async def request_stat_choice(request: StatChoiceRequest) -> str | None:
        return ability_answers.popleft() if ability_answers else None

    try:
        run = _get_run(run_id)
        grants = await run.finalize(request_choice, request_stat_choice)
    except IncompleteRunError as e:
        options = e.details.get("options")
        if not options:
            return f"❌ {e.message}"
        lines = [f"❓ {e.message}"]
        lines.extend(f"  {i}. {name}" for i, name in enumerate(options))
        lines.append("Call finalize_run again with your answers in 'choices'.")
        return "\n".join(lines)
    except ProtocolError as e:
        return f"❌ {e.message}"
    runs.pop(run_id, None)
    return "✅ **Final grants:**\n" + "\n".join(_format_grant(g) for g in grants)


@mcp.tool
def abandon_run(
    run_id: Annotated[str, Field(description="Progression run id")],
) -> str:
    """Abandon a run without granting anything."""
    try:
        _get_run(run_id).abandon()
    except ProtocolError as e:
        return f"❌ {e.message}"
    runs.pop(run_id, None)
    return f"🗑️ Run '{run_id}' abandoned."


logger.debug("✅ All tools successfully registered. Shadowroll server running! 🎲")

def main() -> None:
    """Main entry point for the Shadowroll MCP Server."""
    mcp.run()

if __name__ == "__main__":
    main()
