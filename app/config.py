# file: app/config.py

import os
from dotenv import load_dotenv

load_dotenv()

TESTING = os.getenv("TESTING", "False").lower() in ("1", "true", "yes")

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    DB_USER = os.getenv("DB_USER", "postgres")
    DB_PASSWORD = os.getenv("DB_PASSWORD", "")
    DB_HOST = os.getenv("DB_HOST", "localhost")
    DB_PORT = os.getenv("DB_PORT", "5432")
    DB_NAME = os.getenv("DB_NAME", "paperslay")
    DATABASE_URL = f"postgresql+asyncpg://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}"

SECRET_KEY = os.getenv("SECRET_KEY", "your-secret-key")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "43200"))

# Web Push (VAPID) key pair, base64url encoded
VAPID_PUBLIC_KEY = os.getenv("VAPID_PUBLIC_KEY", "")
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:admin@paperslay.app")

DEADLINE_CHECK_INTERVAL_SECONDS = int(os.getenv("DEADLINE_CHECK_INTERVAL_SECONDS", "3600"))
DEADLINE_CHECKER_ENABLED = os.getenv("DEADLINE_CHECKER_ENABLED", "True").lower() in ("1", "true", "yes") and not TESTING

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

# Origin the offline layer treats as same-origin
APP_ORIGIN = os.getenv("APP_ORIGIN", "http://localhost:5000")
