from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from framework.config import settings
from framework.database.manager import DatabaseManager
from framework.middleware.logging_md import LoggingMiddleware
from framework.logging.logger import LogConfig, get_logger
from framework.exceptions.errors import DataAccessError
from framework.exceptions.handler import BusinessException, global_exception_handler
import apps.models  # noqa: F401  register tables before create_all
from apps.starwars.api.router import router as starwars_router

# Initialize logging configuration
LogConfig.setup_logging()
logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    manager = DatabaseManager.get_instance()
    await manager.sql.connect()
    await manager.sql.create_all()
    if settings.CACHE_BACKEND.lower() == "redis":
        await manager.redis.connect()
    logger.info(f"{settings.APP_NAME} started ({settings.APP_ENV}, cache={settings.CACHE_BACKEND})")
    yield
    await manager.sql.disconnect()
    await manager.redis.disconnect()
    DatabaseManager.reset_instance()


app = FastAPI(
    title=settings.APP_NAME,
    description=settings.APP_DESCRIPTION,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

# Register global exception handlers
app.add_exception_handler(BusinessException, global_exception_handler)
app.add_exception_handler(RequestValidationError, global_exception_handler)
app.add_exception_handler(DataAccessError, global_exception_handler)
app.add_exception_handler(Exception, global_exception_handler)

app.add_middleware(LoggingMiddleware)

# Mount routers (prefix from config for easy override in private projects)
app.include_router(
    starwars_router,
    prefix=settings.API_V1_DATA_ACCESS_PREFIX,
    tags=["Data Access Example"]
)

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
