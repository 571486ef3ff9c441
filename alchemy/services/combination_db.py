"""DB service layer for the combination store.

- Routers and the orchestrator never touch DB sessions directly.
- This layer owns session/transaction boundaries.
- Cache entries for every mutated key are invalidated before the mutating
  transaction commits, and once more after it commits.
- Every write producing an element claims its glyph in ``element_glyphs``
  within the same transaction, so one element never carries two glyphs.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from alchemy.crud import CreateData, DeleteData, ReadData, UpdateData
from alchemy.domain.glyphs import is_single_glyph
from alchemy.domain.keys import (
    ADMIN_SENTINEL,
    DEFAULT_GLYPH,
    DEFINED_SENTINEL,
    MAX_ELEMENT_NAME_LENGTH,
    STARTER_ELEMENTS,
    admin_key,
    clean_element_name,
    element_identity,
    is_sentinel,
    is_starter,
    normalize_key,
    starter_glyph,
)
from alchemy.domain.safety import contains_child_exploitation
from alchemy.errors import ConflictError, InvalidInputError, NotFoundError, StarterElementError
from alchemy.models.dc_models import ElementChangeReportModel, Origin
from alchemy.models.schema_models import (
    CombinationSchema,
    ElementDetailSchema,
    ElementIndexSchema,
    ElementSummarySchema,
    RecipeSchema,
)
from alchemy.models.schemas import Base, Combination
from alchemy.redis_cache import ResultCache

USED_IN_LIMIT = 50
# A lost glyph claim is retried once with the winner's glyph.
INSERT_ATTEMPTS = 2


def _check_encodable(value: str, field: str) -> None:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        raise InvalidInputError(f"{field} must be valid UTF-8 text")


def validate_element_name(name: str | None, field: str = "name") -> str:
    """Cleaned display name, or ``InvalidInputError``."""
    if name is None or not isinstance(name, str):
        raise InvalidInputError(f"{field} is required")
    _check_encodable(name, field)
    cleaned = clean_element_name(name)
    if not cleaned:
        raise InvalidInputError(f"{field} must not be empty")
    if len(cleaned) > MAX_ELEMENT_NAME_LENGTH:
        raise InvalidInputError(f"{field} must be at most {MAX_ELEMENT_NAME_LENGTH} characters")
    if is_sentinel(cleaned):
        raise InvalidInputError(f"{field} is a reserved name")
    return cleaned


def validate_glyph(glyph: str | None, field: str = "glyph") -> str:
    if isinstance(glyph, str):
        _check_encodable(glyph, field)
    if not is_single_glyph(glyph):
        raise InvalidInputError(f"{field} must be exactly one glyph")
    return glyph.strip()


def pair_key(key: str | None = None, a: str | None = None, b: str | None = None) -> str:
    """Combination key from an explicit key or from both inputs."""
    if key:
        _check_encodable(key, "key")
        return key.strip().lower()
    if a is None or b is None:
        raise InvalidInputError("Provide key, or both a and b")
    return normalize_key(validate_element_name(a, "a"), validate_element_name(b, "b"))


def _is_placeholder(row) -> bool:
    return row.input_a == ADMIN_SENTINEL


def _replace(name: str, old_identity: str, new_name: str) -> str:
    return new_name if element_identity(name) == old_identity else name


@dataclass
class InsertResult:
    row: CombinationSchema
    created: bool
    # This insert claimed the glyph of an element no row produced before.
    new_element: bool = False


class CombinationStore:
    def __init__(self, Session: async_sessionmaker, cache: ResultCache):
        self.Session: async_sessionmaker = Session
        self.cache: ResultCache = cache

    async def create_tables(self, engine: AsyncEngine) -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def seed_starters(self) -> int:
        """Insert the starter placeholder rows that are missing. Returns how many were created."""
        created = 0
        for name, glyph in STARTER_ELEMENTS:
            row = CombinationSchema(
                combination_key=admin_key(name),
                input_a=ADMIN_SENTINEL,
                input_b=DEFINED_SENTINEL,
                result_name=name,
                result_glyph=glyph,
                origin=Origin.starter_placeholder.value,
            )
            _, was_created = await self.insert_if_absent(row)
            created += int(was_created)
        if created:
            logging.info(f"Seeded {created} starter elements")
        return created

    async def _with_canonical_glyphs(
        self, rows: list[CombinationSchema], session: AsyncSession
    ) -> list[CombinationSchema]:
        glyphs = await ReadData.read_canonical_glyphs([row.result_name for row in rows], session)
        reconciled = []
        for row in rows:
            canonical = glyphs.get(element_identity(row.result_name))
            if canonical is not None and canonical != row.result_glyph:
                row = row.model_copy(update={"result_glyph": canonical})
            reconciled.append(row)
        return reconciled

    async def get_by_key(self, key: str) -> CombinationSchema | None:
        async with self.Session() as session:
            row = await ReadData.read_combination(key, session)
            if row is None:
                return None
            return (await self._with_canonical_glyphs([row], session))[0]

    async def bulk_get(self, keys: Iterable[str]) -> dict[str, CombinationSchema]:
        async with self.Session() as session:
            rows = await ReadData.read_combinations(keys, session)
            rows = await self._with_canonical_glyphs(rows, session)
        return {row.combination_key: row for row in rows}

    async def canonical_glyph(self, name: str) -> str | None:
        if is_starter(name):
            return starter_glyph(name)
        async with self.Session() as session:
            return await ReadData.read_canonical_glyph(name, session)

    async def canonical_glyphs(self, names: Iterable[str]) -> dict[str, str]:
        """element identity -> canonical glyph, for names with at least one row."""
        names = list(names)
        async with self.Session() as session:
            glyphs = await ReadData.read_canonical_glyphs(names, session)
        for name in names:
            if is_starter(name):
                glyphs[element_identity(name)] = starter_glyph(name)
        return glyphs

    async def element_exists(self, name: str) -> bool:
        return is_starter(name) or await self.canonical_glyph(name) is not None

    async def _claim_glyph(self, name: str, proposed: str, session: AsyncSession) -> tuple[str, bool]:
        """Glyph ``name`` must be stored with, claiming ``proposed`` when unclaimed

        A concurrent claim of the same element raises ``IntegrityError`` at
        flush time and rolls the caller's transaction back.

        Returns:
            tuple[str, bool]: The glyph, and whether no row produced the element before
        """
        identity = element_identity(name)
        claimed = await ReadData.read_claimed_glyph(identity, session)
        if claimed is not None:
            return claimed, False
        legacy = await ReadData.read_canonical_glyph(name, session)
        glyph = legacy or proposed
        await CreateData.add_element_glyph(identity, glyph, session)
        return glyph, legacy is None

    async def insert_combination(self, row: CombinationSchema) -> InsertResult:
        """Insert ``row`` unless its key is taken

        The glyph of the result is claimed in the same transaction, so the
        stored glyph is the element's first-written one. Lost races on the
        key or on the glyph claim are recovered by re-reading.

        Args:
            row (CombinationSchema): Row to insert

        Returns:
            InsertResult: The stored row, whether this call created it and whether it introduced the element
        """
        for attempt in range(INSERT_ATTEMPTS):
            try:
                async with self.Session() as session:
                    async with session.begin():
                        existing = await ReadData.read_any_row_by_key(row.combination_key, session)
                        if existing is not None:
                            existing = (await self._with_canonical_glyphs([existing], session))[0]
                            return InsertResult(existing, created=False)
                        glyph, new_element = await self._claim_glyph(row.result_name, row.result_glyph, session)
                        if glyph != row.result_glyph:
                            row = row.model_copy(update={"result_glyph": glyph})
                        inserted = await CreateData.add_combination(row, session)
                return InsertResult(inserted, created=True, new_element=new_element)
            except IntegrityError:
                logging.info(f"Insert race lost for {row.combination_key} (attempt {attempt + 1}), re-reading")

        async with self.Session() as session:
            existing = await ReadData.read_any_row_by_key(row.combination_key, session)
            if existing is None:
                raise RuntimeError(f"Row {row.combination_key} missing after insert conflict")
            return InsertResult((await self._with_canonical_glyphs([existing], session))[0], created=False)

    async def insert_if_absent(self, row: CombinationSchema) -> tuple[CombinationSchema, bool]:
        """``insert_combination`` as ``(stored row, created)``."""
        result = await self.insert_combination(row)
        return result.row, result.created

    async def _prune_glyphs(self, identities: Iterable[str], session: AsyncSession) -> None:
        """Drop glyph claims of elements no row produces any more."""
        for identity in set(identities):
            if not await ReadData.read_rows_producing(identity, session):
                await DeleteData.delete_element_glyph(identity, session)

    async def add_use_counts(self, counts: dict[str, int], last_used_at: datetime) -> int:
        """Apply batched use-count increments. Returns the number of rows updated."""
        if not counts:
            return 0
        updated = 0
        async with self.Session() as session:
            async with session.begin():
                for key, amount in counts.items():
                    updated += await UpdateData.add_use_count(key, amount, last_used_at, session)
        return updated

    async def top_combinations(self, limit: int = 200) -> list[CombinationSchema]:
        async with self.Session() as session:
            return await ReadData.read_top_combinations(limit, session)

    async def nearby_combinations(self, names: Iterable[str], limit: int = 12) -> list[CombinationSchema]:
        async with self.Session() as session:
            return await ReadData.read_nearby_combinations(names, limit, session)

    async def all_pair_combinations(self) -> list[CombinationSchema]:
        async with self.Session() as session:
            return await ReadData.read_all_pair_combinations(session)

    async def rename_element(
        self, old_name: str, new_name: str, new_glyph: str | None = None
    ) -> ElementChangeReportModel:
        """Rename an element everywhere it appears

        Rewrites both inputs and the result of every affected row and
        recomputes their keys in one transaction. Two rows folding onto one
        key are merged when they agree on the result and rejected otherwise.

        Args:
            old_name (str): Current element name, any casing
            new_name (str): New display name
            new_glyph (str | None): Glyph to apply to every row producing the new name

        Returns:
            ElementChangeReportModel: Counts of updated, merged and invalidated rows
        """
        old_name = validate_element_name(old_name, "name")
        new_name = validate_element_name(new_name, "new_name")
        if new_glyph is not None:
            new_glyph = validate_glyph(new_glyph, "new_glyph")
        if is_starter(old_name):
            raise StarterElementError(f"Starter element {old_name} cannot be renamed")
        if is_starter(new_name):
            raise StarterElementError(f"Cannot rename {old_name} to starter element {new_name}")
        if contains_child_exploitation(new_name):
            raise InvalidInputError("new_name is not allowed")

        old_identity = element_identity(old_name)
        renaming_onto_other = element_identity(new_name) != old_identity
        touched_keys: set[str] = set()

        async with self.Session() as session:
            async with session.begin():
                rows = await ReadData.read_rows_mentioning(old_name, session, for_update=True)
                if not rows:
                    raise NotFoundError(f"Element {old_name} not found")

                glyph = new_glyph
                if glyph is None and renaming_onto_other:
                    glyph = await ReadData.read_canonical_glyph(new_name, session)
                if glyph is None:
                    glyph = await ReadData.read_canonical_glyph(old_name, session)

                # Plan every rewrite before touching a row.
                planned: dict[str, tuple[Combination, dict]] = {}
                merges: list[tuple[Combination, Combination]] = []
                redirects: dict[int, Combination] = {}
                for row in rows:
                    values = {
                        "input_a": row.input_a if _is_placeholder(row) else _replace(row.input_a, old_identity, new_name),
                        "input_b": row.input_b if _is_placeholder(row) else _replace(row.input_b, old_identity, new_name),
                        "result_name": _replace(row.result_name, old_identity, new_name),
                    }
                    if element_identity(values["result_name"]) == element_identity(new_name) and glyph:
                        values["result_glyph"] = glyph
                    if _is_placeholder(row):
                        values["combination_key"] = admin_key(values["result_name"])
                    else:
                        values["combination_key"] = normalize_key(values["input_a"], values["input_b"])
                    touched_keys.update((row.combination_key, values["combination_key"]))

                    previous = planned.get(values["combination_key"])
                    if previous is None:
                        planned[values["combination_key"]] = (row, values)
                        continue
                    kept, kept_values = previous
                    if element_identity(kept_values["result_name"]) != element_identity(values["result_name"]):
                        raise ConflictError(
                            f"Renaming {old_name} to {new_name} folds {row.combination_key} onto "
                            f"{values['combination_key']} with a different result"
                        )
                    merges.append((row, kept))

                affected_ids = {row.id for row in rows}
                outside = await ReadData.read_rows_by_keys_for_update(planned.keys(), session)
                outside_by_key = {row.combination_key: row for row in outside if row.id not in affected_ids}
                for key, (row, values) in list(planned.items()):
                    existing = outside_by_key.get(key)
                    if existing is None:
                        continue
                    if element_identity(existing.result_name) != element_identity(values["result_name"]):
                        raise ConflictError(
                            f"Renaming {old_name} to {new_name} collides with {existing.input_a} + "
                            f"{existing.input_b} = {existing.result_name}"
                        )
                    merges.append((row, existing))
                    redirects[id(row)] = existing
                    del planned[key]

                await self.cache.invalidate(touched_keys)

                merged_rows = []
                for row, survivor in merges:
                    survivor = redirects.get(id(survivor), survivor)
                    survivor.use_count = (survivor.use_count or 0) + (row.use_count or 0)
                    merged_rows.append(row)
                await DeleteData.delete_rows(merged_rows, session)

                for row, values in planned.values():
                    for attribute, value in values.items():
                        setattr(row, attribute, value)
                await session.flush()

                if new_glyph is not None:
                    await UpdateData.set_glyph_for_result(new_name, new_glyph, session)
                    touched_keys.update(
                        row.combination_key for row in await ReadData.read_rows_producing(new_name, session)
                    )
                    await self.cache.invalidate(touched_keys)

                if glyph is not None and await ReadData.read_rows_producing(new_name, session):
                    await UpdateData.set_element_glyph(element_identity(new_name), glyph, session)
                if renaming_onto_other:
                    await self._prune_glyphs([old_identity], session)

        await self.cache.invalidate(touched_keys)
        logging.info(
            f"Renamed element {old_name} -> {new_name}: {len(planned)} updated, {len(merges)} merged"
        )
        return ElementChangeReportModel(
            name=new_name,
            glyph=glyph,
            updated=len(planned),
            merged=len(merges),
            invalidated_keys=len(touched_keys),
        )

    async def reglyph_element(self, name: str, glyph: str) -> ElementChangeReportModel:
        """Set the glyph of every row producing ``name``."""
        name = validate_element_name(name)
        glyph = validate_glyph(glyph)
        if is_starter(name):
            raise StarterElementError(f"Starter element {name} keeps its glyph")

        async with self.Session() as session:
            async with session.begin():
                rows = await ReadData.read_rows_producing(name, session, for_update=True)
                if not rows:
                    raise NotFoundError(f"Element {name} not found")
                keys = {row.combination_key for row in rows}
                await self.cache.invalidate(keys)
                updated = await UpdateData.set_glyph_for_result(name, glyph, session)
                await UpdateData.set_element_glyph(element_identity(name), glyph, session)

        await self.cache.invalidate(keys)
        logging.info(f"Changed glyph of {name} to {glyph} on {updated} rows")
        return ElementChangeReportModel(name=name, glyph=glyph, updated=updated, invalidated_keys=len(keys))

    async def delete_element(self, name: str) -> ElementChangeReportModel:
        """Delete every row in which ``name`` appears in any position."""
        name = validate_element_name(name)
        if is_starter(name):
            raise StarterElementError(f"Starter element {name} cannot be deleted")

        async with self.Session() as session:
            async with session.begin():
                rows = await ReadData.read_rows_mentioning(name, session, for_update=True)
                if not rows:
                    raise NotFoundError(f"Element {name} not found in any combination")
                keys = {row.combination_key for row in rows}
                results = {element_identity(row.result_name) for row in rows}
                await self.cache.invalidate(keys)
                deleted = await DeleteData.delete_rows(rows, session)
                await self._prune_glyphs(results | {element_identity(name)}, session)

        await self.cache.invalidate(keys)
        logging.info(f"Deleted element {name}: {deleted} rows")
        return ElementChangeReportModel(name=name, deleted=deleted, invalidated_keys=len(keys))

    async def create_combination(
        self, a: str, b: str, result_name: str, result_glyph: str, caller_id: str | None = None
    ) -> CombinationSchema:
        """Author one combination by hand

        Args:
            a (str): First input
            b (str): Second input
            result_name (str): Result element
            result_glyph (str): Glyph used when the result is a new element
            caller_id (str | None): Recorded as the discoverer

        Returns:
            CombinationSchema: The stored row, carrying the element's canonical glyph
        """
        a = validate_element_name(a, "a")
        b = validate_element_name(b, "b")
        result_name = validate_element_name(result_name, "result_name")
        result_glyph = validate_glyph(result_glyph, "result_glyph")
        if is_starter(result_name):
            raise StarterElementError(f"Starter element {result_name} cannot be a result")
        if contains_child_exploitation(result_name):
            raise InvalidInputError("result_name is not allowed")

        key = normalize_key(a, b)
        result = await self.insert_combination(
            CombinationSchema(
                combination_key=key,
                input_a=a,
                input_b=b,
                result_name=result_name,
                result_glyph=result_glyph,
                origin=Origin.human_authored.value,
                discovered_by=caller_id,
            )
        )
        if not result.created:
            raise ConflictError(f"{a} + {b} already makes {result.row.result_name}")
        await self.cache.invalidate([key])
        logging.info(f"Created combination {key} = {result.row.result_name}")
        return result.row

    async def update_combination(
        self, key: str, result_name: str | None = None, result_glyph: str | None = None
    ) -> CombinationSchema:
        """Change the result and/or glyph of one pair

        A new result adopts the glyph of that element when it is already
        known. A glyph applies to every row producing the result, as an
        element has one glyph.
        """
        if result_name is None and result_glyph is None:
            raise InvalidInputError("Provide result_name, result_glyph or both")
        if result_name is not None:
            result_name = validate_element_name(result_name, "result_name")
            if is_starter(result_name):
                raise StarterElementError(f"Starter element {result_name} cannot be a result")
            if contains_child_exploitation(result_name):
                raise InvalidInputError("result_name is not allowed")
        if result_glyph is not None:
            result_glyph = validate_glyph(result_glyph, "result_glyph")

        async with self.Session() as session:
            async with session.begin():
                row = await ReadData.read_pair_row_for_update(key, session)
                if row is None:
                    raise NotFoundError(f"Combination {key} not found")
                old_identity = element_identity(row.result_name)
                name = result_name or row.result_name
                identity = element_identity(name)

                glyph = result_glyph
                if glyph is None and identity != old_identity:
                    glyph = await ReadData.read_canonical_glyph(name, session)
                if glyph is None:
                    glyph = await ReadData.read_canonical_glyph(row.result_name, session) or row.result_glyph

                keys = {key}
                if result_glyph is not None:
                    producing = await ReadData.read_rows_producing(name, session, for_update=True)
                    keys.update(other.combination_key for other in producing)
                await self.cache.invalidate(keys)

                row.result_name = name
                row.result_glyph = glyph
                await session.flush()
                if result_glyph is not None:
                    await UpdateData.set_glyph_for_result(name, glyph, session)
                await UpdateData.set_element_glyph(identity, glyph, session)
                if identity != old_identity:
                    await self._prune_glyphs([old_identity], session)
                updated = CombinationSchema.model_validate(row)

        await self.cache.invalidate(keys)
        logging.info(f"Updated combination {key} = {updated.result_name} {updated.result_glyph}")
        return updated

    async def delete_combination(self, key: str) -> CombinationSchema:
        """Delete one pair row. Returns the deleted row."""
        async with self.Session() as session:
            async with session.begin():
                row = await ReadData.read_pair_row_for_update(key, session)
                if row is None:
                    raise NotFoundError(f"Combination {key} not found")
                deleted = CombinationSchema.model_validate(row)
                await self.cache.invalidate([key])
                await DeleteData.delete_rows([row], session)
                await self._prune_glyphs([element_identity(deleted.result_name)], session)

        await self.cache.invalidate([key])
        logging.info(f"Deleted combination {key} = {deleted.result_name}")
        return deleted

    async def element_detail(self, name: str) -> ElementDetailSchema:
        name = validate_element_name(name)
        async with self.Session() as session:
            ways = await ReadData.read_ways_to_create(name, session)
            used_in = await ReadData.read_used_in(name, USED_IN_LIMIT, session)
            glyph = await ReadData.read_canonical_glyph(name, session)
            display = await ReadData.read_display_name(name, session)

        starter = is_starter(name)
        if starter:
            glyph = starter_glyph(name)
            display = next(n for n, _ in STARTER_ELEMENTS if element_identity(n) == element_identity(name))
        if glyph is None and not used_in:
            raise NotFoundError(f"Element {name} not found")

        return ElementDetailSchema(
            name=display or name,
            glyph=glyph or DEFAULT_GLYPH,
            is_starter=starter,
            ways_to_create=[RecipeSchema.model_validate(row) for row in ways],
            used_in=[RecipeSchema.model_validate(row) for row in used_in],
            total_uses=sum(row.use_count for row in ways),
        )

    async def element_index(
        self, letter: str = "all", page: int = 1, limit: int = 100, search: str = ""
    ) -> ElementIndexSchema:
        """Paginated, de-duplicated list of known elements

        Args:
            letter (str): ``A``-``Z`` to filter by first letter, or ``all``
            page (int): 1-based page number
            limit (int): Page size, 1 to 200
            search (str): Case-insensitive substring filter

        Returns:
            ElementIndexSchema: The requested page, with per-letter counts when ``letter`` is ``all``
        """
        letter = (letter or "all").strip()
        letter = "all" if letter.lower() == "all" else letter.upper()
        if letter != "all" and not (len(letter) == 1 and "A" <= letter <= "Z"):
            raise InvalidInputError("letter must be A-Z or all")
        if page < 1:
            raise InvalidInputError("page must be at least 1")
        if not 1 <= limit <= 200:
            raise InvalidInputError("limit must be between 1 and 200")
        search = (search or "").strip().lower()
        _check_encodable(search, "search")

        async with self.Session() as session:
            rows, total = await ReadData.read_element_page(letter, search, (page - 1) * limit, limit, session)
            letter_counts = await ReadData.read_letter_counts(search, session) if letter == "all" else None

        elements = []
        for name, glyph in rows:
            if is_starter(name):
                elements.append(ElementSummarySchema(name=name, glyph=starter_glyph(name), is_starter=True))
            else:
                elements.append(ElementSummarySchema(name=name, glyph=glyph or DEFAULT_GLYPH))
        return ElementIndexSchema(
            elements=elements,
            total=total,
            page=page,
            limit=limit,
            total_pages=(total + limit - 1) // limit,
            letter=letter,
            letter_counts=letter_counts,
        )
