import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/wms')
        # Comma-separated list of allowed CORS origins for the operator UI.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Conditional-write retries per transfer line before the transfer is failed.
        self.transfer_max_retries = max(0, _env_int("TRANSFER_MAX_RETRIES", 3))
        # An executing transfer whose claim is not renewed for this long can be resumed elsewhere.
        self.transfer_claim_ttl_seconds = max(1, _env_int("TRANSFER_CLAIM_TTL_SECONDS", 300))
        # Where picked stock is moved when a picking plan is executed.
        self.picking_destination_location = (
            os.getenv("PICKING_DESTINATION_LOCATION", "DISPATCH").strip() or "DISPATCH"
        )
        # Pack codes like L3-8GX6 expand to 6 x L3-8G when building needs.
        self.sku_multiplier_enabled = _env_flag("SKU_MULTIPLIER_ENABLED", True)

settings = Settings()
