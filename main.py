import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import Settings
from copilot.orchestrator import Orchestrator
from copilot.router import router as copilot_router

logging.basicConfig(level=getattr(logging, Settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    for problem in Settings.validate():
        logger.warning(f"Configuration: {problem}")

    orchestrator = Orchestrator.from_settings(Settings).open()
    app.state.orchestrator = orchestrator
    try:
        yield
    finally:
        await orchestrator.close()
        app.state.orchestrator = None


# Start the FastAPI application
app = FastAPI(
    title="Echo Copilot Service",
    description="Encrypted session store with live transcription and resilient AI suggestions.",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS (overlay UI connects from localhost)
origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://localhost:8000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(copilot_router)


@app.get("/")
async def root():
    """
    Service info
    """
    return {
        "status": "running",
        "service": "Echo Copilot Service",
        "version": "1.0.0"
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="127.0.0.1", port=8000)
