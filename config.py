import os
import logging
from enum import Enum
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel


class EncryptionMode(str, Enum):
    # permissive stores plaintext when no master key is configured
    PERMISSIVE = "permissive"
    STRICT = "strict"


class Settings(BaseModel):
    database_url: str = "sqlite:///./storefront.db"
    app_url: str = "http://localhost:5173"
    functions_base_url: str = "http://localhost:8001"
    credentials_encryption_key: Optional[str] = None
    encryption_mode: EncryptionMode = EncryptionMode.PERMISSIVE
    jwt_secret: Optional[str] = None
    jwt_audience: Optional[str] = "authenticated"
    gateway_timeout: float = 30.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from the process environment (and a local .env file)."""
        load_dotenv()

        values = {
            "database_url": os.getenv("DATABASE_URL"),
            "app_url": os.getenv("APP_URL"),
            "functions_base_url": os.getenv("FUNCTIONS_BASE_URL"),
            "credentials_encryption_key": os.getenv("CREDENTIALS_ENCRYPTION_KEY"),
            "encryption_mode": os.getenv("CREDENTIALS_ENCRYPTION_MODE"),
            "jwt_secret": os.getenv("JWT_SECRET"),
            "jwt_audience": os.getenv("JWT_AUDIENCE"),
            "gateway_timeout": os.getenv("PAYMENT_GATEWAY_TIMEOUT"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v})

    @property
    def app_base(self) -> str:
        return self.app_url.rstrip("/")

    def callback_url(self, provider_type: str) -> str:
        return f"{self.functions_base_url.rstrip('/')}/{provider_type}-payment"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
