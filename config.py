"""Application configuration loaded from environment variables."""

import os
from dotenv import load_dotenv

load_dotenv()


def _flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Central configuration for the field service workflow engine."""

    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./fieldservice.db")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    FRONTEND_URL: str = os.getenv("FRONTEND_URL", "http://localhost:3000")

    # Agreement scheduler
    AGREEMENT_EXPIRING_DAYS: int = int(os.getenv("AGREEMENT_EXPIRING_DAYS", "30"))
    AGREEMENT_LOOKAHEAD_DAYS: int = int(os.getenv("AGREEMENT_LOOKAHEAD_DAYS", "30"))
    AGREEMENT_VISIT_WINDOW_DAYS: int = int(os.getenv("AGREEMENT_VISIT_WINDOW_DAYS", "14"))
    AGREEMENT_DEFAULT_TERM_DAYS: int = int(os.getenv("AGREEMENT_DEFAULT_TERM_DAYS", "365"))
    AGREEMENT_SCHEDULER_ENABLED: bool = _flag("AGREEMENT_SCHEDULER_ENABLED")
    AGREEMENT_SCHEDULER_INTERVAL_MINUTES: int = int(os.getenv("AGREEMENT_SCHEDULER_INTERVAL_MINUTES", "60"))

    # Generated invoices
    INVOICE_DUE_DAYS: int = int(os.getenv("INVOICE_DUE_DAYS", "30"))
    INVOICE_PAYMENT_TERMS: str = os.getenv("INVOICE_PAYMENT_TERMS", "Net 30")

    SEQUENCE_WIDTH: int = int(os.getenv("SEQUENCE_WIDTH", "5"))


settings = Settings()
