import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.school_module import init_school_module, router as school_router
from backend.school_module.config import settings

# Configure Logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    try:
        logger.info("Initializing school module...")
        init_school_module()
        logger.info("School module initialized.")
    except Exception as e:
        logger.error(f"Startup school module error: {e}")
    yield
    logger.info("Shutting down...")


app = FastAPI(title="School Administration API", lifespan=lifespan)

# --- CORS Configuration ---
origins = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:8000,http://127.0.0.1:8000").split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(school_router)


@app.get("/health")
def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    reload_enabled = os.getenv("BACKEND_RELOAD", "false").lower() == "true"
    backend_host = os.getenv("BACKEND_HOST", "127.0.0.1")
    backend_port = int(os.getenv("BACKEND_PORT", "8000"))
    try:
        uvicorn.run(app, host=backend_host, port=backend_port, reload=reload_enabled)
    except OSError as e:
        if "address already in use" in str(e).lower():
            print(f"[Startup Error] Port {backend_port} is already in use. Set BACKEND_PORT to another port.")
        raise
