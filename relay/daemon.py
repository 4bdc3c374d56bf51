"""Listener daemon: Telegram polling, maintenance loop and a status API."""

import asyncio
import logging
import signal
import sys
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from .approvals import Relay
from .config import settings
from .control import Mode, SkillProfile
from .factory import build_relay
from .filestore import LockTimeoutError
from .telegram_bot import TelegramBot

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class ControlPatch(BaseModel):
    """Input model for control state changes."""

    mode: Mode | None = None
    selected_agent: str | None = None
    selected_skill_profile: SkillProfile | None = None


class TakeoverInput(BaseModel):
    """Input model for starting a takeover."""

    goal: str
    session_id: str = ""


async def maintenance_loop(relay: Relay, interval: float) -> None:
    """Sweep expired requests and check for stalls until cancelled."""
    while True:
        try:
            result = await relay.run_maintenance()
            if result.expired:
                logger.info(f"Swept {len(result.expired)} expired request(s)")
        except LockTimeoutError as e:
            logger.error(f"Maintenance skipped: {e}")
        except Exception:
            logger.exception("Maintenance iteration failed")
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    # Startup
    logger.info("Starting agent relay...")
    bot = TelegramBot(settings.telegram_bot_token, settings.telegram_chat_id)
    relay = build_relay(settings, bot)
    bot.relay = relay
    await bot.initialize(polling=True)
    task = asyncio.create_task(maintenance_loop(relay, settings.maintenance_interval))
    app.state.relay = relay
    logger.info(
        f"Relay listening on http://{settings.bridge_host}:{settings.bridge_port}"
    )

    yield

    # Shutdown
    logger.info("Shutting down...")
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    await bot.shutdown()
    await relay.agent.aclose()


app = FastAPI(
    title="Agent Relay",
    description="Permission and question relay between a coding agent and Telegram",
    lifespan=lifespan,
)


def _relay() -> Relay:
    return app.state.relay


# Store-backed handlers are sync so FastAPI runs them in its threadpool

@app.get("/health")
def health():
    """Health check endpoint."""
    state = _relay().control.load()
    return {
        "status": "ok",
        "pending": _relay().pending.count(),
        "mode": state.mode.value,
        "takeover_active": state.takeover_active,
        "blocked": state.blocked,
    }


@app.get("/pending")
def pending():
    """Snapshot of pending requests (read without the store lock)."""
    return [request.to_dict() for request in _relay().pending.all()]


@app.get("/control")
def get_control():
    return _relay().control.load().to_dict()


@app.post("/control")
def patch_control(data: ControlPatch):
    patch = data.model_dump(exclude_none=True, mode="json")
    try:
        return _relay().control.update(**patch).to_dict()
    except LockTimeoutError as e:
        raise HTTPException(status_code=503, detail=str(e))


@app.post("/takeover")
async def start_takeover(data: TakeoverInput):
    message = await _relay().start_takeover(data.goal, session_id=data.session_id)
    return {"message": message, "control": _relay().control.load().to_dict()}


@app.delete("/takeover")
def stop_takeover():
    return _relay().control.stop_takeover().to_dict()


def main():
    """Entry point for the daemon."""

    def handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        sys.exit(0)

    if not settings.telegram_bot_token or not settings.telegram_chat_id:
        logger.error("TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID must be set")
        sys.exit(1)

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    uvicorn.run(
        app,
        host=settings.bridge_host,
        port=settings.bridge_port,
        log_level="info",
    )


if __name__ == "__main__":
    main()
