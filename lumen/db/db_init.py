import asyncio
import sys

if sys.platform.startswith("win"):
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

from sqlalchemy.ext.asyncio import AsyncEngine
from lumen.db.database import get_engine
from lumen.db.models import Base


async def init_models(engine: AsyncEngine):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init():
    engine = get_engine()
    await init_models(engine)
    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init())
