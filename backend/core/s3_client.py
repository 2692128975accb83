import boto3
from functools import lru_cache
from botocore.client import Config
from core.config import settings


@lru_cache()
def get_s3_client():
    """
    S3 client for the blob bucket. Path-style addressing keeps MinIO happy;
    credentials fall back to the default boto3 chain when not configured.
    """
    kwargs = {
        "region_name": settings.blob_region or "us-east-1",
        "config": Config(
            signature_version="s3v4",
            s3={"addressing_style": "path"},  # MinIO-friendly
        ),
    }
    if settings.blob_endpoint:
        kwargs["endpoint_url"] = settings.blob_endpoint  # e.g. http://127.0.0.1:9000
    if settings.blob_access_key and settings.blob_secret_key:
        kwargs["aws_access_key_id"] = settings.blob_access_key
        kwargs["aws_secret_access_key"] = settings.blob_secret_key

    return boto3.client("s3", **kwargs)
