"""
Process configuration, read once from the environment.
"""
import os

DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

SECRET_KEY = os.getenv("JWT_SECRET", "supersecretkey")
ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60 * 24))

STORAGE_DIR = os.getenv("STORAGE_DIR", "/tmp/uploads")
STORAGE_BASE_URL = os.getenv("STORAGE_BASE_URL", "/uploads")

CAPACITY_ALERT_RATIO = float(os.getenv("CAPACITY_ALERT_RATIO", 0.9))
COMMUNITY_EVENT_POINTS = int(os.getenv("COMMUNITY_EVENT_POINTS", 50))
OTP_DIGITS = int(os.getenv("OTP_DIGITS", 6))
CAS_RETRIES = int(os.getenv("CAS_RETRIES", 5))

SMS_API_URL = os.getenv("SMS_API_URL")
SMS_API_KEY = os.getenv("SMS_API_KEY")
SMS_SENDER = os.getenv("SMS_SENDER", "EWASTE")

SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", 587))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASS = os.getenv("SMTP_PASS")
SMTP_TLS = os.getenv("SMTP_TLS", "1") not in ("0", "false", "False")
MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@localhost")

EXTERNAL_TIMEOUT_SECONDS = float(os.getenv("EXTERNAL_TIMEOUT_SECONDS", 10))
GEOCODER_USER_AGENT = os.getenv("GEOCODER_USER_AGENT", "ewaste_pickup_platform")

ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

MONTHLY_RESET_INTERVAL_SECONDS = int(os.getenv("MONTHLY_RESET_INTERVAL_SECONDS", 3600))
MONTHLY_RESET_STALE_SECONDS = int(os.getenv("MONTHLY_RESET_STALE_SECONDS", 1800))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))
