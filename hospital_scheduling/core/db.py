from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from .config import settings
from .base import Base

engine = create_async_engine(settings.POSTGRES_DSN, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

async def get_session():
    async with SessionLocal() as session:
        yield session

def import_models():
    # Registers every table on Base.metadata
    from hospital_scheduling.modules.availability import models as _availability  # noqa: F401
    from hospital_scheduling.modules.scheduling import models as _scheduling  # noqa: F401
    from hospital_scheduling.modules.resources import models as _resources  # noqa: F401
    from hospital_scheduling.modules.appointments import models as _appointments  # noqa: F401
    from hospital_scheduling.modules.recurring import models as _recurring  # noqa: F401
    from hospital_scheduling.modules.waitlist import models as _waitlist  # noqa: F401
    from hospital_scheduling.modules.events import outbox as _outbox  # noqa: F401

async def init_models():
    ## In dev-only "create_all" mode, keep old behavior; otherwise, migrations own the schema.
    if settings.DB_MANAGE.lower() == "create_all":
        import_models()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
