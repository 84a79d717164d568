import logging

from fastapi import HTTPException, Request, status

import config

logger = logging.getLogger(__name__)


def build_database():
    """Construct the storage backend selected by DB_TYPE. Called once per process."""
    if config.DB_TYPE == "mongodb":
        from mongodb_manager import MongoDBManager

        if not config.MONGO_URI:
            raise ValueError("MONGO_URI environment variable not set")

        db = MongoDBManager(mongo_uri=config.MONGO_URI, db_name=config.MONGO_DB_NAME)
        logger.info("✅ Using MongoDB for storage")
        return db

    from db_manager import DatabaseManager

    db = DatabaseManager(base_dir=config.DATA_DIR)
    logger.info("✅ Using file-based storage")
    return db


def get_db(request: Request):
    """FastAPI dependency returning the storage adapter built at startup"""
    db = getattr(request.app.state, "db", None)
    if db is None:
        init_error = getattr(request.app.state, "db_error", None)
        logger.error(f"❌ Storage backend unavailable: {init_error}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Server not configured. Please try again later.",
        )
    return db
