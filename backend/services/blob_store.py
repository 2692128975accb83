# backend/services/blob_store.py
import hashlib
import logging
import uuid
from dataclasses import dataclass
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError

from core.config import settings
from core.errors import BackendUnavailable, NotFound
from core import s3_client

log = logging.getLogger(__name__)

KEY_PREFIX = "mockmate/"
_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}


@dataclass
class BlobHead:
    exists: bool
    size: int = 0
    mime: Optional[str] = None


def content_key(*parts: str) -> str:
    """sha256 hex over the joined parts; used for content-addressed cache keys."""
    h = hashlib.sha256()
    for p in parts:
        h.update((p or "").encode("utf-8"))
        h.update(b"\x00")
    return h.hexdigest()


def audio_extension(mime: Optional[str]) -> str:
    m = (mime or "").lower()
    if "mp4" in m or "m4a" in m:
        return "mp4"
    if "mpeg" in m or "mp3" in m:
        return "mp3"
    if "wav" in m:
        return "wav"
    if "ogg" in m:
        return "ogg"
    return "webm"


def recording_key(interview_id: str, question_index: int, mime: Optional[str]) -> str:
    return f"{KEY_PREFIX}interviews/{interview_id}/audio_q{question_index}_{uuid.uuid4().hex}.{audio_extension(mime)}"


def tts_key(cache_key: str) -> str:
    return f"{KEY_PREFIX}tts/{cache_key}.mp3"


def _is_missing(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    status = str(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))
    return code in _MISSING_CODES or status == "404"


class BlobStore:
    """
    Thin adapter over the S3 bucket. No retries here; callers decide.
    """

    def __init__(self, client=None, bucket: Optional[str] = None):
        self._client = client
        self.bucket = bucket or settings.blob_bucket

    @property
    def client(self):
        # resolved lazily so tests can swap core.s3_client.get_s3_client
        return self._client or s3_client.get_s3_client()

    def put(self, key: str, data: bytes, mime: Optional[str] = None) -> None:
        kwargs = {"Bucket": self.bucket, "Key": key, "Body": data}
        if mime:
            kwargs["ContentType"] = mime
        try:
            self.client.put_object(**kwargs)
        except (BotoCoreError, ClientError) as exc:
            raise BackendUnavailable(f"blob put failed for {key}: {exc}")

    def get(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                raise NotFound(f"blob not found: {key}")
            raise BackendUnavailable(f"blob get failed for {key}: {exc}")
        except BotoCoreError as exc:
            raise BackendUnavailable(f"blob get failed for {key}: {exc}")
        body = obj["Body"]
        return body.read() if hasattr(body, "read") else bytes(body)

    def head(self, key: str) -> BlobHead:
        try:
            meta = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _is_missing(exc):
                return BlobHead(exists=False)
            raise BackendUnavailable(f"blob head failed for {key}: {exc}")
        except BotoCoreError as exc:
            raise BackendUnavailable(f"blob head failed for {key}: {exc}")
        return BlobHead(exists=True, size=int(meta.get("ContentLength") or 0), mime=meta.get("ContentType"))

    def sign(self, key: str, ttl: Optional[int] = None) -> str:
        expires = int(ttl or settings.blob_sign_ttl_seconds)
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires,
            )
        except (BotoCoreError, ClientError) as exc:
            raise BackendUnavailable(f"blob sign failed for {key}: {exc}")

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise BackendUnavailable(f"blob delete failed for {key}: {exc}")


def key_from_signed_url(url: str) -> Optional[str]:
    """Recover the object key from a (possibly expired) presigned URL."""
    from urllib.parse import urlparse, unquote

    path = unquote(urlparse(url).path or "").lstrip("/")
    if not path:
        return None
    bucket = settings.blob_bucket
    # path-style: /<bucket>/<key>; virtual-host style: /<key>
    if path.startswith(bucket + "/"):
        path = path[len(bucket) + 1:]
    return path or None


def get_blob_store() -> BlobStore:
    return BlobStore()
