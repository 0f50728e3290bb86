import os
from decimal import Decimal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Ruta absoluta al pos.db (raíz del proyecto)
BASE_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir, os.pardir))
DB_FILE = os.path.join(BASE_DIR, "pos.db")
ABS_URL = "sqlite:///" + DB_FILE.replace("\\", "/")


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", populate_by_name=True, extra="ignore")

    app_name: str = Field(default="POS Engine", alias="APP_NAME")
    app_env: str = Field(default="dev", alias="APP_ENV")
    app_version: str = Field(default="0.1.0", alias="APP_VERSION")
    database_url: str = Field(default=ABS_URL, alias="DATABASE_URL")
    currency: str = Field(default="BRL", alias="CURRENCY")
    tax_rate: Decimal = Field(default=Decimal("0.18"), alias="TAX_RATE")
    stock_policy: str = Field(default="enforce", alias="POS_STOCK_POLICY")  # enforce | bypass
    scan_min_length: int = Field(default=8, alias="SCAN_MIN_LENGTH")
    scan_max_length: int = Field(default=18, alias="SCAN_MAX_LENGTH")
    scan_idle_seconds: float = Field(default=5.0, alias="SCAN_IDLE_SECONDS")
    scan_history_size: int = Field(default=10, alias="SCAN_HISTORY_SIZE")
    idempotency_ttl_seconds: int = Field(default=3600, alias="IDEMPOTENCY_TTL_SECONDS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")


settings = Settings()
