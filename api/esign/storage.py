import io
import logging
from pathlib import PurePosixPath

from minio import Minio
from .config import MINIO_ENDPOINT, MINIO_ACCESS_KEY, MINIO_SECRET_KEY, MINIO_BUCKET, MINIO_SECURE

logger = logging.getLogger(__name__)

_client = Minio(
    MINIO_ENDPOINT,
    access_key=MINIO_ACCESS_KEY,
    secret_key=MINIO_SECRET_KEY,
    secure=MINIO_SECURE,
)

def ensure_bucket():
    if not _client.bucket_exists(MINIO_BUCKET):
        _client.make_bucket(MINIO_BUCKET)

def put_bytes(key: str, data: bytes, content_type: str = "application/octet-stream") -> str:
    ensure_bucket()
    _client.put_object(MINIO_BUCKET, key, io.BytesIO(data), length=len(data), content_type=content_type)
    logger.debug("stored %s (%d bytes)", key, len(data))
    return key

def get_bytes(key: str) -> bytes:
    resp = _client.get_object(MINIO_BUCKET, key)
    try:
        return resp.read()
    finally:
        resp.close()
        resp.release_conn()

def safe_filename(filename: str) -> str:
    name = PurePosixPath((filename or "").replace("\\", "/")).name
    return name if name not in ("", ".", "..") else "document.pdf"

def source_key(envelope_id, filename: str) -> str:
    return f"envelopes/{envelope_id}/source/{safe_filename(filename)}"

def final_key(envelope_id: int) -> str:
    return f"envelopes/{envelope_id}/final/{envelope_id}.signed.pdf"

def audit_key(envelope_id: int) -> str:
    return f"envelopes/{envelope_id}/final/{envelope_id}.audit.pdf"
