"""
Document boundary for the shadowroll resolver.

Content stores describe the same fields under several names (a description
may live at ``description``, ``system.description`` or
``system.description.value``). Everything is normalized here, once, into the
canonical ``Document`` / ``TableEntry`` / ``ClassProfile`` shapes so the
resolver never performs fallback chains of its own.

Fetchers:
- InMemoryDocumentStore: dictionary-backed, used for tests and content packs
- HttpDocumentFetcher: httpx client for a remote content store
- CachingFetcher: per-run memoization around any other fetcher
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Protocol, runtime_checkable

import httpx
import yaml
from pydantic import BaseModel, Field, ValidationError

from .exceptions import DocumentFetchError
from .models import Document, EffectMode, EntryKind, MechanicalEffect, RollTable, TableEntry
from .tables import is_header_text

logger = logging.getLogger("shadowroll")

SUPPORTED_EXTENSIONS = {".json", ".yaml", ".yml"}

# Identifier fragments that mark a reference to a roll table
_TABLE_REFERENCE_MARKERS = ("RollTable", "rollable-tables")


@runtime_checkable
class DocumentFetcher(Protocol):
    """Resolves a remote identifier to a canonical document, or None."""

    async def fetch(self, identifier: str) -> Document | None:
        ...


class ClassProfile(BaseModel):
    """What the progression orchestrator needs to know about a class."""
    name: str
    remote_identifier: str | None = None
    talent_table: str | None = None
    patron_required: bool = False
    starting_boons: int = 0
    spells_known: dict[int, dict[int, int]] = Field(default_factory=dict)

    @property
    def is_spellcaster(self) -> bool:
        return bool(self.spells_known)


# ----------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------


def _dig(raw: dict[str, Any], *path: str) -> Any:
    current: Any = raw
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def _first_text(*candidates: Any) -> str:
    for value in candidates:
        if isinstance(value, dict):
            value = value.get("value")
        if isinstance(value, str) and value.strip():
            return value
    return ""


def _coerce_value(value: Any) -> int | float | str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        return text


def _coerce_mode(raw_mode: Any) -> EffectMode:
    if isinstance(raw_mode, str) and not raw_mode.strip().isdigit():
        try:
            return EffectMode[raw_mode.strip().upper()]
        except KeyError:
            return EffectMode.CUSTOM
    try:
        return EffectMode(int(raw_mode))
    except (TypeError, ValueError):
        return EffectMode.CUSTOM


def _coerce_tier(raw_tier: Any) -> int | None:
    try:
        return int(raw_tier) if raw_tier is not None else None
    except (TypeError, ValueError):
        return None


def normalize_effects(raw_effects: Any) -> list[MechanicalEffect]:
    """Flatten active-effect payloads into mechanical effects.

    Accepts either a list of canonical ``{path, value, mode}`` dicts or
    effect documents carrying a ``changes`` list of ``{key, value, mode}``.
    Bare strings (unresolved references) are dropped.
    """
    if not isinstance(raw_effects, list):
        return []

    effects: list[MechanicalEffect] = []
    for raw in raw_effects:
        if not isinstance(raw, dict):
            continue
        changes = raw.get("changes")
        if not isinstance(changes, list):
            changes = [raw]
        for change in changes:
            if not isinstance(change, dict):
                continue
            path = change.get("path") or change.get("key")
            if not path or "value" not in change:
                continue
            effects.append(MechanicalEffect(
                path=path,
                value=_coerce_value(change["value"]),
                mode=_coerce_mode(change.get("mode", EffectMode.ADD)),
                label=raw.get("name") or raw.get("label"),
            ))
    return effects


def _entry_reference(raw: dict[str, Any]) -> str | None:
    uuid = raw.get("documentUuid") or raw.get("document_id")
    if uuid:
        return str(uuid)
    collection = raw.get("documentCollection") or raw.get("collection")
    doc_id = raw.get("documentId")
    if collection and doc_id:
        return f"Compendium.{collection}.{doc_id}"
    return None


def is_table_reference(identifier: str) -> bool:
    return any(marker in identifier for marker in _TABLE_REFERENCE_MARKERS)


def normalize_entry(raw: dict[str, Any]) -> TableEntry:
    """Normalize one raw table result into a TableEntry."""
    low, high = 1, 1
    range_ = raw.get("range")
    if isinstance(range_, (list, tuple)) and len(range_) >= 2:
        low, high = int(range_[0]), int(range_[1])
    elif "low" in raw or "high" in raw:
        low = int(raw.get("low", 1))
        high = int(raw.get("high", low))

    inline_table = raw.get("table")
    reference = _entry_reference(raw)

    table: RollTable | None = None
    if isinstance(inline_table, dict):
        kind = EntryKind.TABLE
        table = normalize_table(inline_table)
    elif reference and is_table_reference(reference):
        kind = EntryKind.TABLE
    elif reference:
        kind = EntryKind.DOCUMENT
    else:
        kind = EntryKind.TEXT

    name = raw.get("name") or ""
    text = _first_text(raw.get("text"), raw.get("description"))
    drawable = bool(raw.get("drawable", True))
    # Foundry header rows carry drawn: false
    if raw.get("drawn") is False and kind is EntryKind.TEXT and is_header_text(name or text):
        drawable = False

    return TableEntry(
        id=raw.get("_id") or raw.get("id"),
        low=low,
        high=high,
        kind=kind,
        name=name,
        text=text,
        icon=raw.get("img") or raw.get("icon"),
        document_id=reference,
        table=table,
        drawable=drawable,
    )


def _raw_results(raw: dict[str, Any]) -> list[dict[str, Any]]:
    results = raw.get("tableEntries")
    if results is None:
        results = raw.get("results")
    if results is None:
        results = _dig(raw, "system", "results")
    if isinstance(results, dict):
        results = list(results.values())
    if not isinstance(results, list):
        return []
    return [r for r in results if isinstance(r, dict)]


def normalize_table(raw: dict[str, Any]) -> RollTable:
    """Normalize a raw roll table payload."""
    return RollTable(
        id=raw.get("uuid") or raw.get("_id") or raw.get("id"),
        name=raw.get("name") or "",
        formula=raw.get("formula") or raw.get("tableFormula") or "1d1",
        entries=[normalize_entry(r) for r in _raw_results(raw)],
        icon=raw.get("img") or raw.get("icon"),
    )


def normalize_document(raw: Any) -> Document | None:
    """Produce the canonical Document shape from a raw content-store payload.

    Returns None for anything that is not a mapping.
    """
    if not isinstance(raw, dict):
        return None

    doc_type = raw.get("type") or raw.get("documentName") or "Talent"
    formula = raw.get("tableFormula") or raw.get("formula") or _dig(raw, "system", "formula")
    raw_results = _raw_results(raw)

    is_table = raw.get("isTable")
    if is_table is None:
        is_table = doc_type == "RollTable" or bool(raw_results) or bool(raw.get("formula"))

    return Document(
        name=raw.get("name") or "Unknown",
        type=str(doc_type),
        description=_first_text(
            raw.get("description"),
            _dig(raw, "system", "description"),
            raw.get("text"),
        ),
        remote_identifier=raw.get("remoteIdentifier") or raw.get("uuid") or raw.get("_id"),
        icon=raw.get("img") or raw.get("icon"),
        effects=normalize_effects(raw.get("effects")),
        tier=_coerce_tier(_dig(raw, "system", "tier") or raw.get("tier")),
        is_table=bool(is_table),
        table_formula=formula if is_table else None,
        table_entries=[normalize_entry(r) for r in raw_results] if is_table else [],
    )


def normalize_class_profile(raw: dict[str, Any]) -> ClassProfile:
    """Extract the progression-relevant parts of a class document."""
    patron = _dig(raw, "system", "patron") or raw.get("patron") or {}
    spells_known_raw = _dig(raw, "system", "spellcasting", "spellsknown") or raw.get("spellsKnown") or {}

    spells_known: dict[int, dict[int, int]] = {}
    if isinstance(spells_known_raw, dict):
        for level, tiers in spells_known_raw.items():
            if not isinstance(tiers, dict):
                continue
            try:
                spells_known[int(level)] = {
                    int(tier): int(count or 0) for tier, count in tiers.items()
                }
            except (TypeError, ValueError):
                logger.warning(f"Ignoring malformed spells-known row for level {level!r}")

    return ClassProfile(
        name=raw.get("name") or "Unknown",
        remote_identifier=raw.get("uuid") or raw.get("_id"),
        talent_table=_dig(raw, "system", "classTalentTable") or raw.get("talentTable"),
        patron_required=bool(patron.get("required") or patron.get("requiredBoon")),
        starting_boons=int(patron.get("startingBoons") or 0),
        spells_known=spells_known,
    )


# ----------------------------------------------------------------------
# Fetchers
# ----------------------------------------------------------------------


class InMemoryDocumentStore:
    """Dictionary-backed document fetcher.

    Documents are indexed by their remote identifier, by any extra aliases
    given, and by their short id (last dotted segment of the identifier).
    """

    def __init__(self, documents: Iterable[Document | dict[str, Any]] | None = None) -> None:
        self._index: dict[str, Document] = {}
        self.requests: list[str] = []
        for doc in documents or []:
            self.add(doc)

    def add(self, document: Document | dict[str, Any], *aliases: str) -> Document:
        """Add a document (raw payloads are normalized first)."""
        if not isinstance(document, Document):
            normalized = normalize_document(document)
            if normalized is None:
                raise ValueError("Document payload must be a mapping")
            document = normalized

        keys = [a for a in aliases if a]
        if document.remote_identifier:
            keys.append(document.remote_identifier)
            keys.append(document.remote_identifier.rsplit(".", 1)[-1])
        if not keys:
            raise ValueError(f"Document '{document.name}' has no identifier to index by")

        for key in keys:
            self._index.setdefault(key, document)
        return document

    def __len__(self) -> int:
        return len({id(doc) for doc in self._index.values()})

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._index

    async def fetch(self, identifier: str) -> Document | None:
        self.requests.append(identifier)
        doc = self._index.get(identifier)
        if doc is None:
            doc = self._index.get(identifier.rsplit(".", 1)[-1])
        return doc


class CachingFetcher:
    """Memoize successful fetches of another fetcher for the lifetime of a run."""

    def __init__(self, inner: DocumentFetcher) -> None:
        self.inner = inner
        self._cache: dict[str, Document] = {}

    async def fetch(self, identifier: str) -> Document | None:
        cached = self._cache.get(identifier)
        if cached is not None:
            return cached
        doc = await self.inner.fetch(identifier)
        if doc is not None:
            self._cache[identifier] = doc
        return doc


class HttpDocumentFetcher:
    """
    Fetch documents from an HTTP content store.

    Issues ``GET {base_url}/document?uuid=<identifier>``. A 404 means the
    document does not exist (None); timeouts, transport errors and 5xx
    responses are retried with exponential backoff before giving up with
    DocumentFetchError.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_backoff: float = 2.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> "HttpDocumentFetcher":
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client if this fetcher created it."""
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def fetch(self, identifier: str) -> Document | None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
            self._owns_client = True

        url = f"{self.base_url}/document"
        last_error: Exception | None = None

        for attempt in range(self.max_retries):
            try:
                response = await self._client.get(url, params={"uuid": identifier})
                if response.status_code == 404:
                    logger.debug(f"Document not found: {identifier}")
                    return None
                response.raise_for_status()
                return normalize_document(response.json())

            except (httpx.TimeoutException, httpx.TransportError) as e:
                logger.warning(f"Transport error fetching {identifier}, attempt {attempt + 1}: {e}")
                last_error = e

            except httpx.HTTPStatusError as e:
                if e.response.status_code < 500:
                    raise DocumentFetchError(
                        f"HTTP error fetching {identifier}: {e}", identifier
                    ) from e
                logger.warning(f"Server error {e.response.status_code}, attempt {attempt + 1}")
                last_error = e

            except (json.JSONDecodeError, ValueError) as e:
                raise DocumentFetchError(
                    f"Invalid document payload for {identifier}: {e}", identifier
                ) from e

            if attempt + 1 < self.max_retries:
                await asyncio.sleep(self.retry_backoff ** attempt)

        raise DocumentFetchError(
            f"Failed to fetch {identifier} after {self.max_retries} attempts: {last_error}",
            identifier,
        )


# ----------------------------------------------------------------------
# Content packs
# ----------------------------------------------------------------------


def _read_pack_file(path: Path) -> Any:
    raw_content = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(raw_content)
    return yaml.safe_load(raw_content)


def load_pack_directory(pack_dir: Path, system: str = "shadowdark") -> InMemoryDocumentStore:
    """Load every JSON/YAML document under ``pack_dir`` into a store.

    Documents without a ``uuid`` are indexed as
    ``Compendium.<system>.<pack>.<_id>`` and
    ``Compendium.<system>.<pack>.<Type>.<_id>``, where the pack name is the
    parent directory name (a trailing ``.db`` is dropped).
    """
    store = InMemoryDocumentStore()
    if not pack_dir.exists():
        logger.warning(f"Pack directory not found: {pack_dir}")
        return store

    for path in sorted(pack_dir.rglob("*")):
        if not path.is_file() or path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            continue

        try:
            data = _read_pack_file(path)
        except (OSError, json.JSONDecodeError, yaml.YAMLError) as e:
            logger.warning(f"Failed to parse pack file {path}: {e}")
            continue

        if not isinstance(data, dict):
            logger.warning(f"Skipping {path}: top level is not an object")
            continue

        try:
            doc = normalize_document(data)
        except (ValidationError, TypeError, ValueError) as e:
            logger.warning(f"Invalid document in {path}: {e}")
            continue
        if doc is None:
            continue

        aliases: list[str] = []
        if not data.get("uuid") and data.get("_id"):
            pack = path.parent.name.removesuffix(".db")
            doc_type = "RollTable" if doc.is_table else "Item"
            short = f"Compendium.{system}.{pack}.{data['_id']}"
            aliases = [short, f"Compendium.{system}.{pack}.{doc_type}.{data['_id']}"]
            doc = doc.model_copy(update={"remote_identifier": short})

        if not doc.remote_identifier and not aliases:
            logger.warning(f"Skipping {path}: document has no identifier")
            continue
        store.add(doc, *aliases)

    logger.info(f"Loaded {len(store)} documents from {pack_dir}")
    return store
