# backend/main.py
import os
import sys
import logging
from dotenv import load_dotenv

logging.basicConfig(stream=sys.stdout, level=logging.INFO)
_log = logging.getLogger("env_loader")

# Candidate .env locations (in order)
#  - PROJECT_ROOT/.env
#  - BACKEND_DIR/.env
#  - current working directory .env
BASE_DIR = os.path.dirname(os.path.abspath(__file__))        # backend/
PROJECT_ROOT = os.path.dirname(BASE_DIR)                     # project root (parent of backend)
CWD = os.getcwd()

cand_paths = [
    os.path.join(PROJECT_ROOT, ".env"),
    os.path.join(BASE_DIR, ".env"),
    os.path.join(CWD, ".env"),
]

loaded_from = None
for p in cand_paths:
    if os.path.exists(p):
        load_dotenv(p, override=False)
        loaded_from = p
        _log.info("Loaded .env from: %s", p)
        break

if not loaded_from:
    # searches CWD + parents
    load_dotenv(override=False)

# ---------------------------------------------------------

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api import admin, ai, audio, interviews, ops
from core.config import settings
from core.errors import register_exception_handlers
from core.logging import setup_json_logging
from core.request_id import RequestIDMiddleware
from db.init_db import init_db
from services import model_provider

setup_json_logging()
_log.info("[ENV] AI_PROVIDER=%s, TTS_PROVIDER_CHAIN=%s", settings.ai_provider, settings.tts_provider_chain)

app = FastAPI(title="MockMate Interview Engine API")

app.include_router(ops.router)
app.include_router(interviews.router)
app.include_router(ai.router)
app.include_router(audio.router)
app.include_router(admin.router)

register_exception_handlers(app)

app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID", "X-TTS-Fallback", "X-TTS-Vendor", "Retry-After"],
)

init_db()
# fail at startup on a provider that cannot work
model_provider.get_provider()


@app.get("/health")
def health():
    return {"ok": True, "provider": model_provider.get_provider().name}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.listen_host, port=settings.listen_port)
