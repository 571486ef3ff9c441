from datetime import datetime

from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.schema import Column
from sqlalchemy.types import DateTime, Integer, String, Uuid
from uuid6 import uuid7


class Base(DeclarativeBase):
    pass


class Combination(Base):
    """One stored pair -> result mapping.

    ``combination_key`` is the normalized unordered pair. Admin placeholder
    rows use ``_ADMIN``/``_DEFINED`` as inputs and a ``_admin_<slug>`` key.
    """

    __tablename__ = "combinations"
    id = Column(Uuid, primary_key=True, default=uuid7)
    combination_key = Column(String(255), unique=True, index=True, nullable=False)
    input_a = Column("element_a", String(100), nullable=False)
    input_b = Column("element_b", String(100), nullable=False)
    result_name = Column("result_element", String(100), index=True, nullable=False)
    result_glyph = Column("result_emoji", String(32), nullable=False)
    origin = Column(String(32), nullable=False)
    discovered_by = Column(String(255), nullable=True)
    use_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=datetime.now)
    last_used_at = Column(DateTime, nullable=True)


class ElementGlyph(Base):
    """First-writer glyph of an element, keyed by its lowercased name.

    Every write producing an element claims its glyph here first, so
    concurrent creators of one element all store the same glyph.
    """

    __tablename__ = "element_glyphs"
    identity = Column(String(100), primary_key=True)
    glyph = Column(String(32), nullable=False)
    created_at = Column(DateTime, default=datetime.now)
