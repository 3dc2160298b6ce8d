import os
from typing import List, Optional

from pydantic import BaseModel, Field


class Settings(BaseModel):
    """Runtime configuration read from the environment"""
    database_url: Optional[str] = Field(None, description="MongoDB connection string")
    database_name: str = Field("storefront", description="MongoDB database name")
    bcrypt_rounds: int = Field(12, ge=4, le=31, description="bcrypt cost factor for password hashes")
    payment_webhook_secret: str = Field("", description="HMAC secret shared with the payment gateway")
    payment_currency: str = Field("INR", description="Currency sent to the payment gateway")
    reset_token_ttl_minutes: int = Field(60, ge=1, description="Password reset token lifetime")
    cors_allow_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = Field("INFO")

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("CORS_ALLOW_ORIGINS")
        return cls(
            database_url=os.getenv("DATABASE_URL") or None,
            database_name=os.getenv("DATABASE_NAME", "storefront"),
            bcrypt_rounds=int(os.getenv("BCRYPT_ROUNDS", "12")),
            payment_webhook_secret=os.getenv("PAYMENT_WEBHOOK_SECRET", ""),
            payment_currency=os.getenv("PAYMENT_CURRENCY", "INR"),
            reset_token_ttl_minutes=int(os.getenv("RESET_TOKEN_TTL_MINUTES", "60")),
            cors_allow_origins=[o.strip() for o in origins.split(",") if o.strip()] if origins else ["*"],
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )


settings = Settings.from_env()
