import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from fulfillment.presentation.api import router
from fulfillment.database import get_engine
from fulfillment.infrastructure.db_schema import metadata

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Управление жизненным циклом приложения"""
    try:
        async with get_engine().begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Таблицы созданы")
    except Exception as e:
        logger.error(f"Не удалось создать таблицы: {e}")

    yield

    logger.info("Приложение останавливается...")


app = FastAPI(
    title="Storefront Fulfillment",
    description="Акции, заказы и вебхуки платежного провайдера",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    return {"message": "Storefront Fulfillment работает"}


@app.get("/health")
async def health():
    return {"status": "healthy"}
