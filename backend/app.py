import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from backend import runtime
from backend.routes import router
from script_kill.llm import LLM

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"


def create_app(data_dir: Path | None = None, llm: LLM | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    runtime.init_runtime(resolved, llm=llm)

    app = FastAPI(title="Script Kill")
    app.include_router(router, prefix="/api")
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
