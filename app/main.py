import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from app.database import close_db, init_db
from app.dependencies import install_realtime
from app.routers import ambulances, communications, emergency, hospitals, realtime

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting Emergency Connect dispatch...")
    await init_db()
    logger.info("Database initialized")
    yield
    await close_db()
    logger.info("Emergency Connect dispatch shut down")


app = FastAPI(
    title="Emergency Connect",
    description="Real-time dispatch between patients, ambulance crews and hospitals",
    version="0.1.0",
    lifespan=lifespan,
)
install_realtime(app)

app.include_router(emergency.router)
app.include_router(ambulances.router)
app.include_router(hospitals.router)
app.include_router(communications.router)
app.include_router(realtime.router)


@app.get("/health")
async def health():
    return {"status": "ok", "connected_clients": len(app.state.presence)}
