import logging
import os

from dotenv import load_dotenv

# Load environment variables from this file's directory so running uvicorn from repo root still works
ENV_PATH = os.path.join(os.path.dirname(__file__), ".env")
load_dotenv(dotenv_path=ENV_PATH)

# Environment
APP_ENV = os.getenv("APP_ENV", "development").lower()  # development | production
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Storage
DB_TYPE = os.getenv("DB_TYPE", "file")  # "file" or "mongodb"
DATA_DIR = os.getenv("DATA_DIR", "data")
MONGO_URI = os.getenv("MONGO_URI")
MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "campus_erp")

# Security
DEFAULT_SECRET_KEY = "your-secret-key-change-this-in-production"
SECRET_KEY = os.getenv("SECRET_KEY", DEFAULT_SECRET_KEY)
if APP_ENV != "development" and SECRET_KEY == DEFAULT_SECRET_KEY:
    raise ValueError("SECRET_KEY must be set in production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 24 * 7)))  # 7 days

# Bootstrap admin account, created on startup when missing
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")
ADMIN_NAME = os.getenv("ADMIN_NAME", "Administrator")

# HTTP
# In production you should set CORS_ORIGINS to a comma-separated list, e.g.
#   CORS_ORIGINS=https://yourdomain.com,https://www.yourdomain.com
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]
REQUEST_TIMEOUT_SECONDS = int(os.getenv("REQUEST_TIMEOUT_SECONDS", "30"))

# Generative AI
GENAI_MODEL = os.getenv("GENAI_MODEL", "gemini-2.5-flash")


def configure_logging():
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
