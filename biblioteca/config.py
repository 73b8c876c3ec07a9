import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("LIBRARY_DB_TIMEOUT", "5"))

    # Loan settings
    default_loan_days: int = int(os.getenv("LIBRARY_DEFAULT_LOAN_DAYS", "14"))

    # Application settings
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()
    debug: bool = os.getenv("DEBUG", "False").lower() in ("true", "1", "yes")


settings = Settings()
