from __future__ import annotations

import os

from apscheduler.schedulers.background import BackgroundScheduler
from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

from database import init_db  # noqa: E402
from routers.auth import router as auth_router  # noqa: E402
from utils.logger import get_logger  # noqa: E402
from utils.otp_service import OTP_EXP_MIN, CodeLifecycleManager  # noqa: E402
from utils.otp_store import build_code_store  # noqa: E402


OTP_SWEEP_MIN = int(os.getenv("OTP_SWEEP_MINUTES", "5"))

logger = get_logger(__name__)

app = FastAPI(title="OTP Verification Backend")

init_db()

# One code store per process, shared by every request handler.
app.state.otp_manager = CodeLifecycleManager(
    build_code_store(os.getenv("REDIS_URL")),
    ttl_seconds=OTP_EXP_MIN * 60,
)

app.include_router(auth_router, prefix="/api")


def _sweep_expired_codes() -> int:
    """Evict codes that were requested but never verified."""
    return app.state.otp_manager.sweep()


@app.on_event("startup")
def _start_scheduler():
    sched = BackgroundScheduler(timezone=os.getenv("TZ", "UTC"))
    sched.add_job(_sweep_expired_codes, "interval", minutes=OTP_SWEEP_MIN, id="otp_sweep", replace_existing=True)
    sched.start()
    app.state._scheduler = sched
    logger.info("OTP sweep scheduled every %d minutes", OTP_SWEEP_MIN)


@app.on_event("shutdown")
def _stop_scheduler():
    sched = getattr(app.state, "_scheduler", None)
    if sched:
        sched.shutdown(wait=False)


@app.get("/")
def root():
    return {"status": "Backend running"}


@app.get("/api/health")
def health():
    return {"status": "healthy", "service": "otp-verification"}
