# file: main.py

import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import CORS_ORIGINS, DEADLINE_CHECKER_ENABLED, DEADLINE_CHECK_INTERVAL_SECONDS
from app.controllers.auth import router as auth_router
from app.controllers.notification import router as notification_router
from app.controllers.push import router as push_router
from app.controllers.websocket import router as websocket_router
from app.database.connection import init_db
from app.services.deadline_service import start_deadline_checker, stop_deadline_checker

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Paper Slay API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router, prefix="/api", tags=["auth"])
app.include_router(notification_router, prefix="/api/notifications", tags=["notifications"])
app.include_router(push_router, prefix="/api", tags=["push"])
app.include_router(websocket_router)


@app.get("/")
async def root():
    return {"message": "Paper Slay API is running"}


@app.get("/api/health")
async def health_check():
    checker = getattr(app.state, "deadline_checker", None)
    return {
        "status": "healthy",
        "deadline_checker": bool(checker and not checker.done()),
    }


@app.on_event("startup")
async def startup_event():
    await init_db()
    app.state.deadline_checker = None
    if DEADLINE_CHECKER_ENABLED:
        app.state.deadline_checker = start_deadline_checker(DEADLINE_CHECK_INTERVAL_SECONDS)


@app.on_event("shutdown")
async def shutdown_event():
    await stop_deadline_checker(getattr(app.state, "deadline_checker", None))
