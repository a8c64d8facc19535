"""
Environment settings for the CANSLIM Screener backend
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
ENV_PATH = Path(__file__).parent.parent / ".env"
load_dotenv(ENV_PATH)

DATA_DIR = Path(__file__).parent.parent / "data"


class Settings:
    # App settings
    APP_NAME = "CANSLIM Screener"
    VERSION = "1.0.0"
    DEBUG = os.getenv("DEBUG", "false").lower() == "true"

    # Environment overlay for config/{CANSLIM_ENV}.yaml
    CANSLIM_ENV = os.getenv("CANSLIM_ENV", "development")

    # Storage
    DATABASE_URL = os.getenv("DATABASE_URL", f"sqlite:///{DATA_DIR}/canslim.db")

    # Market data (provider tag overrides universe.provider in the yaml)
    PROVIDER = os.getenv("CANSLIM_PROVIDER", "")
    FMP_API_KEY = os.getenv("FMP_API_KEY", "")

    # CORS settings
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*").split(",")


settings = Settings()
