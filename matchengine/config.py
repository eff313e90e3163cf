"""
Configuration management for the project/product match engine.
"""

import os
from pathlib import Path
from typing import Dict, Any
from dotenv import load_dotenv

# Load environment variables from .env file
env_path = Path(__file__).parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

class Config:
    """Application configuration class."""

    # Database Configuration
    DB_HOST: str = os.getenv("DB_HOST", "localhost")
    DB_PORT: int = int(os.getenv("DB_PORT", 5432))
    DB_NAME: str = os.getenv("DB_NAME", "matches")
    DB_USER: str = os.getenv("DB_USER", "postgres")
    DB_PASSWORD: str = os.getenv("DB_PASSWORD", "postgres")

    # Matching Configuration
    EMBEDDING_DIM: int = int(os.getenv("EMBEDDING_DIM", 1536))
    TOP_N_PER_PROJECT: int = int(os.getenv("TOP_N_PER_PROJECT", 50))
    REBUILD_LOCK_KEY: int = int(os.getenv("REBUILD_LOCK_KEY", 724_100_001))

    # Display Configuration (reads only, never affects generation)
    MATCH_MIN_SCORE: int = int(os.getenv("MATCH_MIN_SCORE", 40))
    LIGHTBOX_MATCH_LIMIT: int = int(os.getenv("LIGHTBOX_MATCH_LIMIT", 5))
    DEFAULT_MATCH_LIMIT: int = int(os.getenv("DEFAULT_MATCH_LIMIT", 8))
    MAX_MATCH_LIMIT: int = int(os.getenv("MAX_MATCH_LIMIT", 50))

    # Worker Configuration
    WORKER_INTERVAL: int = int(os.getenv("WORKER_INTERVAL", 30))
    WORKER_ENABLED: bool = os.getenv("WORKER_ENABLED", "true").lower() == "true"

    # API Configuration
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", 8000))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @classmethod
    def get_db_config(cls) -> Dict[str, Any]:
        """Get database configuration as dictionary."""
        return {
            "host": cls.DB_HOST,
            "port": cls.DB_PORT,
            "dbname": cls.DB_NAME,
            "user": cls.DB_USER,
            "password": cls.DB_PASSWORD
        }

    @classmethod
    def get_all_config(cls) -> Dict[str, Any]:
        """Get all configuration as dictionary."""
        return {
            "db_host": cls.DB_HOST,
            "db_port": cls.DB_PORT,
            "db_name": cls.DB_NAME,
            "db_user": cls.DB_USER,
            "embedding_dim": cls.EMBEDDING_DIM,
            "top_n_per_project": cls.TOP_N_PER_PROJECT,
            "rebuild_lock_key": cls.REBUILD_LOCK_KEY,
            "match_min_score": cls.MATCH_MIN_SCORE,
            "lightbox_match_limit": cls.LIGHTBOX_MATCH_LIMIT,
            "default_match_limit": cls.DEFAULT_MATCH_LIMIT,
            "max_match_limit": cls.MAX_MATCH_LIMIT,
            "worker_interval": cls.WORKER_INTERVAL,
            "worker_enabled": cls.WORKER_ENABLED,
            "api_host": cls.API_HOST,
            "api_port": cls.API_PORT,
            "log_level": cls.LOG_LEVEL
        }

# Create global config instance
config = Config()
