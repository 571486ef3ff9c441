from datetime import datetime
from typing import Iterable

from sqlalchemy import String, cast, delete, func, literal_column, null, or_, select, union_all, update
from sqlalchemy.ext.asyncio import AsyncSession

from alchemy.domain.keys import ADMIN_SENTINEL, element_identity
from alchemy.models.schema_models import CombinationSchema
from alchemy.models.schemas import Combination, ElementGlyph

# Helpers in this module never commit. The service layer owns transactions.


def _mentions(identity: str):
    return or_(
        func.lower(Combination.input_a) == identity,
        func.lower(Combination.input_b) == identity,
        func.lower(Combination.result_name) == identity,
    )


def _is_pair_row():
    return Combination.input_a != ADMIN_SENTINEL


def _first_letter(name):
    return func.upper(func.substr(name, literal_column("1"), literal_column("1")))


def _known_elements(search: str):
    """Subquery of distinct elements as ``(name, glyph)``

    Each identity keeps the casing and glyph of its earliest result row.
    With a search, names seen only as inputs of pair rows are included
    too, after every result name.
    """
    parts = [
        select(
            Combination.result_name.label("name"),
            Combination.result_glyph.label("glyph"),
            literal_column("0").label("rank"),
            Combination.created_at.label("created_at"),
        )
    ]
    if search:
        for column in (Combination.input_a, Combination.input_b):
            parts.append(
                select(
                    column.label("name"),
                    cast(null(), String).label("glyph"),
                    literal_column("1").label("rank"),
                    Combination.created_at.label("created_at"),
                ).where(_is_pair_row())
            )
    candidates = (union_all(*parts) if len(parts) > 1 else parts[0]).subquery()

    position = (
        func.row_number()
        .over(
            partition_by=func.lower(candidates.c.name),
            order_by=(candidates.c.rank, candidates.c.created_at),
        )
        .label("position")
    )
    ranked = select(candidates.c.name, candidates.c.glyph, position).subquery()
    stmt = select(ranked.c.name, ranked.c.glyph).where(ranked.c.position == 1)
    if search:
        stmt = stmt.where(func.lower(ranked.c.name).contains(search, autoescape=True))
    return stmt.subquery()


class ReadData:
    @staticmethod
    async def read_combination(key: str, session: AsyncSession) -> CombinationSchema | None:
        """Read a pair row by its combination key

        Args:
            key (str): Normalized combination key
            session (AsyncSession): Open session

        Returns:
            CombinationSchema | None: The row, or None when absent
        """
        stmt = select(Combination).where(Combination.combination_key == key).where(_is_pair_row())
        result = await session.execute(stmt)
        row = result.scalars().first()
        if row is None:
            return None
        return CombinationSchema.model_validate(row)

    @staticmethod
    async def read_any_row_by_key(key: str, session: AsyncSession) -> CombinationSchema | None:
        """Read a row by key, placeholders included."""
        stmt = select(Combination).where(Combination.combination_key == key)
        result = await session.execute(stmt)
        row = result.scalars().first()
        if row is None:
            return None
        return CombinationSchema.model_validate(row)

    @staticmethod
    async def read_combinations(keys: Iterable[str], session: AsyncSession) -> list[CombinationSchema]:
        """Read every pair row whose key is in ``keys``

        Args:
            keys (Iterable[str]): Normalized combination keys
            session (AsyncSession): Open session

        Returns:
            list[CombinationSchema]: Rows found, in no particular order
        """
        keys = list(set(keys))
        if not keys:
            return []
        stmt = select(Combination).where(Combination.combination_key.in_(keys)).where(_is_pair_row())
        result = await session.execute(stmt)
        return [CombinationSchema.model_validate(row) for row in result.scalars().all()]

    @staticmethod
    async def read_canonical_glyphs(names: Iterable[str], session: AsyncSession) -> dict[str, str]:
        """Canonical glyph of each element name

        The claimed glyph in ``element_glyphs`` wins. Elements without a
        claim fall back to the earliest row producing them.

        Args:
            names (Iterable[str]): Element names in any casing
            session (AsyncSession): Open session

        Returns:
            dict[str, str]: element identity -> glyph, for names with at least one row
        """
        identities = list({element_identity(name) for name in names})
        if not identities:
            return {}
        stmt = select(ElementGlyph.identity, ElementGlyph.glyph).where(ElementGlyph.identity.in_(identities))
        result = await session.execute(stmt)
        glyphs: dict[str, str] = {identity: glyph for identity, glyph in result.all()}

        unclaimed = [identity for identity in identities if identity not in glyphs]
        if not unclaimed:
            return glyphs
        stmt = (
            select(Combination.result_name, Combination.result_glyph)
            .where(func.lower(Combination.result_name).in_(unclaimed))
            .order_by(Combination.created_at, Combination.id)
        )
        result = await session.execute(stmt)
        for result_name, result_glyph in result.all():
            glyphs.setdefault(element_identity(result_name), result_glyph)
        return glyphs

    @staticmethod
    async def read_claimed_glyph(identity: str, session: AsyncSession) -> str | None:
        """Glyph claimed in ``element_glyphs`` for an element identity."""
        stmt = select(ElementGlyph.glyph).where(ElementGlyph.identity == identity)
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_canonical_glyph(name: str, session: AsyncSession) -> str | None:
        glyphs = await ReadData.read_canonical_glyphs([name], session)
        return glyphs.get(element_identity(name))

    @staticmethod
    async def read_display_name(name: str, session: AsyncSession) -> str | None:
        """Display casing of the earliest row producing ``name``."""
        stmt = (
            select(Combination.result_name)
            .where(func.lower(Combination.result_name) == element_identity(name))
            .order_by(Combination.created_at, Combination.id)
            .limit(1)
        )
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_rows_mentioning(
        name: str, session: AsyncSession, for_update: bool = False
    ) -> list[Combination]:
        """Rows in which ``name`` appears as either input or as the result

        Args:
            name (str): Element name in any casing
            session (AsyncSession): Open session
            for_update (bool): Lock the rows until the transaction ends

        Returns:
            list[Combination]: ORM rows, attached to ``session``
        """
        stmt = select(Combination).where(_mentions(element_identity(name)))
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def read_rows_producing(
        name: str, session: AsyncSession, for_update: bool = False
    ) -> list[Combination]:
        stmt = select(Combination).where(func.lower(Combination.result_name) == element_identity(name))
        if for_update:
            stmt = stmt.with_for_update()
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def read_rows_by_keys_for_update(keys: Iterable[str], session: AsyncSession) -> list[Combination]:
        keys = list(set(keys))
        if not keys:
            return []
        stmt = select(Combination).where(Combination.combination_key.in_(keys)).with_for_update()
        result = await session.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def read_pair_row_for_update(key: str, session: AsyncSession) -> Combination | None:
        stmt = select(Combination).where(Combination.combination_key == key).where(_is_pair_row()).with_for_update()
        result = await session.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def read_top_combinations(limit: int, session: AsyncSession) -> list[CombinationSchema]:
        """Most used pair rows, placeholders excluded

        Args:
            limit (int): Maximum number of rows
            session (AsyncSession): Open session

        Returns:
            list[CombinationSchema]: Rows by descending use_count
        """
        stmt = (
            select(Combination)
            .where(_is_pair_row())
            .order_by(Combination.use_count.desc(), Combination.created_at)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return [CombinationSchema.model_validate(row) for row in result.scalars().all()]

    @staticmethod
    async def read_nearby_combinations(
        names: Iterable[str], limit: int, session: AsyncSession
    ) -> list[CombinationSchema]:
        """Most used pair rows touching any of ``names``."""
        identities = list({element_identity(name) for name in names})
        if not identities:
            return []
        stmt = (
            select(Combination)
            .where(_is_pair_row())
            .where(
                or_(
                    func.lower(Combination.input_a).in_(identities),
                    func.lower(Combination.input_b).in_(identities),
                    func.lower(Combination.result_name).in_(identities),
                )
            )
            .order_by(Combination.use_count.desc(), Combination.created_at)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return [CombinationSchema.model_validate(row) for row in result.scalars().all()]

    @staticmethod
    async def read_all_pair_combinations(session: AsyncSession) -> list[CombinationSchema]:
        stmt = select(Combination).where(_is_pair_row()).order_by(Combination.created_at, Combination.id)
        result = await session.execute(stmt)
        return [CombinationSchema.model_validate(row) for row in result.scalars().all()]

    @staticmethod
    async def read_ways_to_create(name: str, session: AsyncSession) -> list[CombinationSchema]:
        stmt = (
            select(Combination)
            .where(func.lower(Combination.result_name) == element_identity(name))
            .where(_is_pair_row())
            .order_by(Combination.use_count.desc(), Combination.created_at)
        )
        result = await session.execute(stmt)
        return [CombinationSchema.model_validate(row) for row in result.scalars().all()]

    @staticmethod
    async def read_used_in(name: str, limit: int, session: AsyncSession) -> list[CombinationSchema]:
        identity = element_identity(name)
        stmt = (
            select(Combination)
            .where(_is_pair_row())
            .where(
                or_(
                    func.lower(Combination.input_a) == identity,
                    func.lower(Combination.input_b) == identity,
                )
            )
            .order_by(Combination.use_count.desc(), Combination.created_at)
            .limit(limit)
        )
        result = await session.execute(stmt)
        return [CombinationSchema.model_validate(row) for row in result.scalars().all()]

    @staticmethod
    async def read_element_page(
        letter: str, search: str, offset: int, limit: int, session: AsyncSession
    ) -> tuple[list[tuple[str, str | None]], int]:
        """One page of known elements, ordered case-insensitively

        Args:
            letter (str): ``A``-``Z``, or ``all`` for no first-letter filter
            search (str): Lowercased substring filter, empty for none
            offset (int): Number of elements to skip
            limit (int): Page size
            session (AsyncSession): Open session

        Returns:
            tuple[list[tuple[str, str | None]], int]: ``(name, glyph)`` pairs of the page and the
            number of matching elements. Input-only elements have no glyph.
        """
        elements = _known_elements(search)
        stmt = select(elements.c.name, elements.c.glyph)
        if letter != "all":
            stmt = stmt.where(_first_letter(elements.c.name) == letter)
        result = await session.execute(select(func.count()).select_from(stmt.subquery()))
        total = result.scalar_one()
        stmt = stmt.order_by(func.lower(elements.c.name), elements.c.name).offset(offset).limit(limit)
        result = await session.execute(stmt)
        return [(name, glyph) for name, glyph in result.all()], total

    @staticmethod
    async def read_letter_counts(search: str, session: AsyncSession) -> dict[str, int]:
        elements = _known_elements(search)
        first = _first_letter(elements.c.name)
        result = await session.execute(select(first, func.count()).group_by(first))
        return {letter: count for letter, count in result.all() if letter and "A" <= letter <= "Z"}


class CreateData:
    @staticmethod
    async def add_combination(row: CombinationSchema, session: AsyncSession) -> CombinationSchema:
        """Add a combination row and flush it

        A duplicate key raises ``IntegrityError`` at flush time.

        Args:
            row (CombinationSchema): Row to insert; ``id`` and ``created_at`` are filled in
            session (AsyncSession): Session inside an open transaction

        Returns:
            CombinationSchema: The inserted row
        """
        combination = Combination(**row.model_dump(exclude_none=True))
        session.add(combination)
        await session.flush()
        return CombinationSchema.model_validate(combination)

    @staticmethod
    async def add_element_glyph(identity: str, glyph: str, session: AsyncSession) -> None:
        """Claim the glyph of an element. An existing claim raises ``IntegrityError`` at flush time."""
        session.add(ElementGlyph(identity=identity, glyph=glyph))
        await session.flush()


class UpdateData:
    @staticmethod
    async def add_use_count(key: str, amount: int, last_used_at: datetime, session: AsyncSession) -> int:
        """Increment use_count of one row

        Args:
            key (str): Combination key
            amount (int): Number of lookups to add
            last_used_at (datetime): Time of the latest lookup
            session (AsyncSession): Session inside an open transaction

        Returns:
            int: Number of rows updated (0 when the row has since been deleted)
        """
        stmt = (
            update(Combination)
            .where(Combination.combination_key == key)
            .values(use_count=Combination.use_count + amount, last_used_at=last_used_at)
        )
        result = await session.execute(stmt)
        return result.rowcount

    @staticmethod
    async def set_glyph_for_result(name: str, glyph: str, session: AsyncSession) -> int:
        stmt = (
            update(Combination)
            .where(func.lower(Combination.result_name) == element_identity(name))
            .values(result_glyph=glyph)
        )
        result = await session.execute(stmt)
        return result.rowcount

    @staticmethod
    async def set_element_glyph(identity: str, glyph: str, session: AsyncSession) -> None:
        stmt = update(ElementGlyph).where(ElementGlyph.identity == identity).values(glyph=glyph)
        result = await session.execute(stmt)
        if result.rowcount == 0:
            await CreateData.add_element_glyph(identity, glyph, session)


class DeleteData:
    @staticmethod
    async def delete_rows(rows: list[Combination], session: AsyncSession) -> int:
        for row in rows:
            await session.delete(row)
        await session.flush()
        return len(rows)

    @staticmethod
    async def delete_element_glyph(identity: str, session: AsyncSession) -> int:
        result = await session.execute(delete(ElementGlyph).where(ElementGlyph.identity == identity))
        return result.rowcount
