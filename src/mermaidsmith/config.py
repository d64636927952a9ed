"""Configuration loaded from environment variables."""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


# Paths
DATA_DIR: Path = Path(os.getenv("DATA_DIR", "./data"))

# API keys
GEMINI_API_KEY: str = os.getenv("GEMINI_API_KEY", "")

# Models
GEMINI_MODEL: str = os.getenv("GEMINI_MODEL", "gemini-2.0-flash-001")

# Server
HOST: str = os.getenv("HOST", "0.0.0.0")
PORT: int = int(os.getenv("PORT", "8000"))
LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

# Provider rate budget (per rolling window)
RATE_WINDOW_SECS: float = float(os.getenv("RATE_WINDOW_SECS", "60"))
TOKENS_PER_MINUTE: int = int(os.getenv("TOKENS_PER_MINUTE", "30000"))
REQUESTS_PER_MINUTE: int = int(os.getenv("REQUESTS_PER_MINUTE", "50"))
MIN_DELAY_SECS: float = float(os.getenv("MIN_DELAY_SECS", "1.0"))
MAX_DELAY_SECS: float = float(os.getenv("MAX_DELAY_SECS", "30.0"))
INITIAL_BACKOFF_SECS: float = float(os.getenv("INITIAL_BACKOFF_SECS", "2.0"))
PAUSE_BUFFER_SECS: float = float(os.getenv("PAUSE_BUFFER_SECS", "1.0"))

# Estimated token cost per call kind
VALIDATION_TOKENS: int = int(os.getenv("VALIDATION_TOKENS", "500"))
CATEGORY_TOKENS: int = int(os.getenv("CATEGORY_TOKENS", "700"))
GENERATION_TOKENS: int = int(os.getenv("GENERATION_TOKENS", "4000"))
TITLE_TOKENS: int = int(os.getenv("TITLE_TOKENS", "150"))

# Generation
MAX_ATTEMPTS: int = int(os.getenv("MAX_ATTEMPTS", "5"))
MAX_ANCESTOR_DEPTH: int = int(os.getenv("MAX_ANCESTOR_DEPTH", "50"))

# Credits
INITIAL_CREDITS: int = int(os.getenv("INITIAL_CREDITS", "10"))
DAILY_CREDITS: int = int(os.getenv("DAILY_CREDITS", "10"))
MONTHLY_CREDITS: int = int(os.getenv("MONTHLY_CREDITS", "500"))
ANONYMOUS_DAILY_LIMIT: int = int(os.getenv("ANONYMOUS_DAILY_LIMIT", "5"))

# Validator: "mmdc" (mermaid-cli render check) or "header" (declaration check only)
VALIDATOR: str = os.getenv("VALIDATOR", "mmdc")
MMDC_PATH: str = os.getenv("MMDC_PATH", "mmdc")
MMDC_TIMEOUT_SECS: float = float(os.getenv("MMDC_TIMEOUT_SECS", "30"))

# Derived paths
SQLITE_PATH: Path = Path(os.getenv("SQLITE_PATH", str(DATA_DIR / "mermaidsmith.db")))

# Billing webhook HMAC secret (empty disables the webhook)
WEBHOOK_SECRET: str = os.getenv("WEBHOOK_SECRET", "")
