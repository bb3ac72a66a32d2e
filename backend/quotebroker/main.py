from fastapi import FastAPI, APIRouter, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
import logging
from quotebroker.config import settings
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from quotebroker.api import auth, symbols, quotes, streaming
from quotebroker.services.container import ServiceContainer, get_container
from quotebroker.services.errors import QuoteBrokerError

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

limiter = Limiter(key_func=get_remote_address)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle startup and shutdown events."""
    # Startup
    logger.info("Starting Questrade Quote Broker")
    logger.info("Initializing database...")
    from quotebroker.database.postgres_db import init_db
    init_db(settings.DATABASE_URL)
    logger.info("Database initialized")
    await get_container().startup()

    yield

    # Shutdown
    logger.info("Shutting down...")
    await get_container().shutdown()
    from quotebroker.database.postgres_db import close_db
    close_db()


app = FastAPI(
    title="Questrade Quote Broker",
    description="Credential management, symbol resolution, cached quotes and multiplexed quote streams for Questrade",
    version="1.0.0",
    lifespan=lifespan
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(QuoteBrokerError)
async def quote_broker_error_handler(request: Request, exc: QuoteBrokerError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


api_router = APIRouter(prefix="/api")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

api_router.include_router(auth.router)
api_router.include_router(symbols.router)
api_router.include_router(quotes.router)


@api_router.get("/stats")
async def service_stats(services: ServiceContainer = Depends(get_container)):
    return services.get_stats()


app.include_router(api_router)
app.include_router(streaming.router)

# Initialize Prometheus metrics instrumentation
Instrumentator().instrument(app).expose(app)

@app.get("/")
async def root():
    return {
        "message": "Questrade Quote Broker",
        "version": "1.0.0",
        "docs": "/docs"
    }

@app.get("/health")
async def health_check():
    from quotebroker.database.postgres_db import check_db
    database_ok = await run_in_threadpool(check_db)
    return {
        "status": "healthy" if database_ok else "degraded",
        "database": "ok" if database_ok else "unavailable",
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "quotebroker.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=True
    )
