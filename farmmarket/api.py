import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .cart import router as cart_router
from .database import Base, SessionLocal, engine
from .delivery import router as delivery_router
from .exceptions import FarmMarketError
from .main import app as user_router
from .order import router as order_router
from .payments import router as payment_router
from .reviews import router as review_router
from .storage import Storage
from .store import router as store_router
from .store import seed_categories

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

# Create database tables if they don't exist
Base.metadata.create_all(bind=engine)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = SessionLocal()
    try:
        seed_categories(Storage(db))
    finally:
        db.close()
    yield


app = FastAPI(
    title="Farm Marketplace",
    lifespan=lifespan,
)


@app.exception_handler(FarmMarketError)
async def farm_market_error_handler(request: Request, exc: FarmMarketError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


app.include_router(user_router, prefix="/users", tags=["users"])
app.include_router(store_router, tags=["store"])
app.include_router(cart_router)
app.include_router(order_router)
app.include_router(delivery_router)
app.include_router(payment_router)
app.include_router(review_router)
