from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from preturi import models
from preturi.config import settings
from preturi.core.database import engine, Base, async_session_maker
from preturi.core.errors import PreturiError
from preturi.core.logging_config import setup_logging, get_logger
from preturi.data.catalog import DEPARTMENTS, INSTRUMENTS, PARTS, SERVICES, default_pipelines
from preturi.api.service_files import router as service_files_router
from preturi.api.trays import router as trays_router
from preturi.api.items import router as items_router
from preturi.api.leads import router as leads_router

setup_logging()
logger = get_logger(__name__)


async def seed_catalog(session: AsyncSession) -> bool:
    """Заполнить справочники и pipeline со stage, если таблица pipelines пуста."""
    r = await session.execute(select(models.Pipeline).limit(1))
    if r.scalar_one_or_none() is not None:
        return False
    for d in DEPARTMENTS:
        session.add(models.Department(**d))
    await session.flush()
    for p in default_pipelines():
        session.add(models.Pipeline(id=p.id, name=p.name, department_id=p.department_id))
        for s in p.stages:
            session.add(models.Stage(id=s.id, pipeline_id=p.id, name=s.name, position=s.position))
    for i in INSTRUMENTS:
        session.add(models.Instrument(**i))
    await session.flush()
    for s in SERVICES:
        session.add(models.Service(**s))
    for p in PARTS:
        session.add(models.Part(**p))
    await session.commit()
    logger.info("Справочники заполнены: %s инструментов, %s услуг", len(INSTRUMENTS), len(SERVICES))
    return True


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Таблицы БД проверены/созданы")
    try:
        async with async_session_maker() as session:
            await seed_catalog(session)
    except Exception as e:
        logger.warning("Справочники: %s", e)
    yield
    await engine.dispose()


app = FastAPI(title="Preturi", version="1.0.0", lifespan=lifespan)


@app.exception_handler(PreturiError)
async def preturi_error_handler(request: Request, exc: PreturiError):
    logger.warning("%s %s отклонено: code=%s %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Необработанная ошибка: %s", exc)
    detail = "Внутренняя ошибка сервера"
    err_str = str(exc).lower()
    if "duplicate key" in err_str or "unique constraint" in err_str:
        detail = "Конфликт данных (дубликат). Обновите страницу и повторите."
    return JSONResponse(
        status_code=500,
        content={"detail": detail},
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(service_files_router)
app.include_router(trays_router)
app.include_router(items_router)
app.include_router(leads_router)


@app.get("/health")
def health():
    return {"status": "ok"}
