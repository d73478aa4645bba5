# config.py
# Settings read from the environment (.env supported)
import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("QUOTEFLOW_DATA_DIR", str(BASE_DIR / "data")))

OPENAI_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

AI_MAX_ATTEMPTS = int(os.getenv("AI_MAX_ATTEMPTS", "3"))
AI_BASE_DELAY = float(os.getenv("AI_BASE_DELAY", "1.0"))
# email generation is slower and more often overloaded
EMAIL_MAX_ATTEMPTS = 4
EMAIL_BASE_DELAY = 2.0

PDF_MAX_BYTES = int(os.getenv("PDF_MAX_BYTES", str(10 * 1024 * 1024)))

EMAIL_FOOTER = os.getenv("EMAIL_FOOTER", "")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON") is not None

CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
