import io
import os

# Settings are read at import time; point the app at a throwaway database with no AI keys
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test_bananagram.sqlite3"
os.environ["GEMINI_API_KEY"] = ""
os.environ["FAL_API_KEY"] = ""
os.environ["API_KEY"] = ""

import pytest
import pytest_asyncio
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool


@pytest.fixture(autouse=True, scope="session")
def setup_test_db():
    import asyncio

    from app.config import settings
    settings.api_key = ""
    settings.gemini_api_key = ""
    settings.fal_api_key = ""

    import app.models  # noqa: F401
    from app.database import Base, create_tables, engine

    async def _setup():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await create_tables()

    asyncio.run(_setup())


@pytest_asyncio.fixture
async def store(tmp_path):
    """A MediaStore on its own file database."""
    from app.database import Base
    from app.services.media_store import MediaStore

    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.sqlite3'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield MediaStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


@pytest.fixture
def make_image():
    def _make(width=64, height=48, fmt="PNG", color=(200, 120, 40), noise=False):
        if noise:
            image = Image.effect_noise((width, height), 80).convert("RGB")
        else:
            image = Image.new("RGB", (width, height), color)
        buffer = io.BytesIO()
        image.save(buffer, format=fmt)
        return buffer.getvalue()

    return _make
