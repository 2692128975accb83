# backend/celery_app.py
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

for p in (
    os.path.join(PROJECT_ROOT, ".env"),
    os.path.join(BASE_DIR, ".env"),
    os.path.join(CWD, ".env"),
):
    if os.path.exists(p):
        load_dotenv(p, override=False)
        _log.info("Loaded .env from: %s", p)
        break
else:
    load_dotenv(override=False)

# ---------------------------------------------------------

from celery import Celery
from core.config import settings

logger = logging.getLogger("celery_app")

BROKER = settings.celery_broker_url or settings.redis_url or "redis://127.0.0.1:6379/0"
BACKEND = settings.celery_result_backend or settings.redis_url or BROKER

app = Celery(
    "mockmate_engine",
    broker=BROKER,
    backend=BACKEND,
    include=["tasks.transcribe"],
)

app.conf.task_acks_late = True
app.conf.worker_prefetch_multiplier = 1
app.conf.broker_connection_retry_on_startup = True

# results are read back by clients polling a queued transcription
app.conf.task_ignore_result = False
app.conf.result_backend = BACKEND
app.conf.result_expires = 3600 * 24
app.conf.result_extended = False
