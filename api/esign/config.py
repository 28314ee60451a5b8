import os

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./esign.db")
MINIO_ENDPOINT = os.getenv("MINIO_ENDPOINT", "minio:9000")
MINIO_ACCESS_KEY = os.getenv("MINIO_ACCESS_KEY", "minioadmin")
MINIO_SECRET_KEY = os.getenv("MINIO_SECRET_KEY", "minioadmin")
MINIO_BUCKET = os.getenv("MINIO_BUCKET", "signing")
MINIO_SECURE = os.getenv("MINIO_SECURE", "0") == "1"
SECRET_KEY = os.getenv("SECRET_KEY", "devsecret")
ADMIN_ACCESS_TOKEN = os.getenv("ADMIN_ACCESS_TOKEN")
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
WORKER_QUEUE = os.getenv("WORKER_QUEUE", "signing")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

APP_URL = os.getenv("APP_URL", "http://localhost:3000").rstrip("/")
PRODUCT_NAME = os.getenv("PRODUCT_NAME", "Envelope Sign")
PRODUCT_ORGANIZATION = os.getenv("PRODUCT_ORGANIZATION", "Envelope Sign")
PRODUCT_COUNTRY = os.getenv("PRODUCT_COUNTRY", "US")
SIGNING_LOCATION = os.getenv("SIGNING_LOCATION", "Online")

# Signing material supplied by the operator; generated on first use when unset.
SIGNING_CERT_PEM = os.getenv("SIGNING_CERT_PEM")
SIGNING_KEY_PEM = os.getenv("SIGNING_KEY_PEM")
SIGNING_CHAIN_PEM = os.getenv("SIGNING_CHAIN_PEM")
SIGNING_KEY_SIZE = int(os.getenv("SIGNING_KEY_SIZE", "2048"))
SIGNING_CERT_VALIDITY_YEARS = int(os.getenv("SIGNING_CERT_VALIDITY_YEARS", "10"))
SIGNATURE_PLACEHOLDER_BYTES = int(os.getenv("SIGNATURE_PLACEHOLDER_BYTES", "8192"))

SMTP_TIMEOUT = float(os.getenv("SMTP_TIMEOUT", "10"))
NOTIFY_SEND_INTERVAL_MS = int(os.getenv("NOTIFY_SEND_INTERVAL_MS", "600"))
NOTIFY_MAX_ATTEMPTS = int(os.getenv("NOTIFY_MAX_ATTEMPTS", "2"))
NOTIFY_ASYNC = os.getenv("NOTIFY_ASYNC", "1") == "1"
