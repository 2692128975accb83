# backend/api/ops.py
import logging

import redis
from fastapi import APIRouter

from core.config import settings
from services import model_provider, prompts

router = APIRouter(prefix="/ops", tags=["ops"])
logger = logging.getLogger("ops")


@router.get("/queue")
def queue_status():
    url = settings.celery_broker_url or settings.redis_url or "redis://127.0.0.1:6379/0"
    try:
        r = redis.Redis.from_url(url, socket_connect_timeout=0.5)
        r.ping()
        return {"redis": "online"}
    except redis.RedisError as exc:
        logger.info("redis unreachable: %s", exc)
        return {"redis": "offline"}


@router.get("/info")
def info():
    return {
        "provider": model_provider.get_provider().name,
        "promptsVersion": prompts.prompts_version(),
        "ttsChain": settings.tts_provider_chain,
    }
