from sqlalchemy.ext.asyncio import create_async_engine

from alchemy.create_sqlite_engine import create_sqlite_engine, sqlite_url
from alchemy.load_secrets import user, password, host, port, db_name, database_url

POSTGRES_DATABASE_URL = (
    f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db_name}"
)

# DATABASE_URL wins; without any postgres settings fall back to the local sqlite file.
if database_url:
    DATABASE_URL = database_url
elif host:
    DATABASE_URL = POSTGRES_DATABASE_URL
else:
    DATABASE_URL = sqlite_url

if DATABASE_URL.startswith("postgresql"):
    engine = create_async_engine(DATABASE_URL, pool_size=20, max_overflow=20)
else:
    engine = create_sqlite_engine(DATABASE_URL)
