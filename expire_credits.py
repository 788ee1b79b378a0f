import asyncio
import os

from patternpioneer.config import LOG_FORMAT, LOG_LEVEL
from patternpioneer.infra.logs import configure_logging
from patternpioneer.infra.sql import make_async_engine
from patternpioneer.model.credits import expire_old_credits


async def run(database_url: str) -> dict:
    engine, SessionAsync = make_async_engine(database_url)
    try:
        async with SessionAsync() as db:
            result = await expire_old_credits(db)
            await db.commit()
    finally:
        await engine.dispose()
    return result


if __name__ == '__main__':
    configure_logging(LOG_LEVEL, LOG_FORMAT)
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        raise SystemExit("DATABASE_URL is not set")

    result = asyncio.run(run(database_url))
    print(f'✅ expired {result["expired_count"]} grants '
          f'({result["credits_expired"]} credits)')
