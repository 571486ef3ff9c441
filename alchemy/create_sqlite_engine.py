import pathlib

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

file_path = pathlib.Path(__file__).parents[1]
file_path /= "./alchemy.sqlite3"
sqlite_url = f"sqlite+aiosqlite:///{file_path}"


def create_sqlite_engine(url: str = sqlite_url) -> AsyncEngine:
    """Create an aiosqlite engine.

    In-memory databases share one connection so every session sees the same tables.
    """
    if url.endswith(":memory:"):
        return create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(url=url, echo=False)
