import os
from decimal import Decimal, InvalidOperation
from typing import List


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _decimal(self, name: str, default: str) -> Decimal:
        raw = (os.getenv(name) or "").strip()
        try:
            return Decimal(raw or default)
        except InvalidOperation:
            return Decimal(default)

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.db_url = os.getenv('DATABASE_URL', 'postgresql://localhost/kasir')
        # Comma-separated list of allowed CORS origins for the admin/cashier web app.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Checkout policy. The sample currency has no subunit in practice.
        self.tax_rate = self._decimal("TAX_RATE", "0.10")
        self.points_earn_unit = self._decimal("POINTS_EARN_UNIT", "10000")
        self.point_value = self._decimal("POINT_VALUE", "1000")

settings = Settings()
