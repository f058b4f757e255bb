from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from database import init_db
from routes import router
import feed
import logging
import os

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger("messaging.main")

CORS_ORIGINS = [origin.strip() for origin in os.getenv("CORS_ORIGINS", "*").split(",") if origin.strip()]

app = FastAPI(
    title="Messaging Service API",
    description="Teacher/student direct messaging for the guitar lesson portal",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.on_event("startup")
async def startup_event():
    init_db()
    await feed.broker.start()
    logger.info("Messaging service started with %s", type(feed.broker).__name__)


@app.on_event("shutdown")
async def shutdown_event():
    await feed.broker.stop()


@app.get("/health")
def health_check():
    return {"status": "healthy", "service": "messaging-service"}
