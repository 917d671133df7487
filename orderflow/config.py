import os


def _getenv(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _getenv_bool(name: str, default: bool = False) -> bool:
    raw = _getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = _getenv(name)
    if raw is None:
        return default
    return int(raw)


def _getenv_float(name: str, default: float) -> float:
    raw = _getenv(name)
    if raw is None:
        return default
    return float(raw)


class Settings:
    def __init__(self) -> None:
        self.environment = (_getenv("ENVIRONMENT", "development") or "development").lower()
        self.database_url = _getenv("DATABASE_URL", "sqlite:///./orderflow.db") or "sqlite:///./orderflow.db"
        self.secret_key = _getenv("SECRET_KEY")
        if self.secret_key is None:
            if self.is_production:
                raise RuntimeError("SECRET_KEY must be set in production")
            self.secret_key = "dev-secret-change-me"
        self.cors_allow_origins = _getenv("CORS_ALLOW_ORIGINS")
        self.log_level = (_getenv("LOG_LEVEL", "INFO") or "INFO").upper()
        self.host = _getenv("HOST", "0.0.0.0") or "0.0.0.0"
        self.port = _getenv_int("PORT", 8000)

        # KkiaPay (mobile money)
        self.kkiapay_api_url = _getenv("KKIAPAY_API_URL", "https://api.kkiapay.me") or "https://api.kkiapay.me"
        self.kkiapay_public_key = _getenv("KKIAPAY_PUBLIC_KEY")
        self.kkiapay_private_key = _getenv("KKIAPAY_PRIVATE_KEY")
        self.kkiapay_secret = _getenv("KKIAPAY_SECRET") or self.kkiapay_private_key
        self.kkiapay_sandbox = _getenv_bool("KKIAPAY_SANDBOX", default=(self.environment != "production"))

        # Mailgun
        self.mailgun_api_key = _getenv("MAILGUN_API_KEY")
        self.mailgun_domain = _getenv("MAILGUN_DOMAIN")
        self.email_from_name = _getenv("EMAIL_FROM_NAME", "Orderflow Store")
        self.email_from_address = _getenv(
            "EMAIL_FROM_ADDRESS",
            f"postmaster@{self.mailgun_domain}" if self.mailgun_domain else None,
        )
        self.mail_timeout = _getenv_float("MAIL_TIMEOUT_SECONDS", 10.0)

        # Settlement polling
        self.payment_poll_interval = _getenv_float("PAYMENT_POLL_INTERVAL_SECONDS", 3.0)
        self.payment_poll_timeout = _getenv_float("PAYMENT_POLL_TIMEOUT_SECONDS", 300.0)
        self.payment_provider_max_retries = _getenv_int("PAYMENT_PROVIDER_MAX_RETRIES", 3)
        self.payment_provider_backoff = _getenv_float("PAYMENT_PROVIDER_BACKOFF_SECONDS", 1.0)
        self.payment_sweep_interval = _getenv_float("PAYMENT_SWEEP_INTERVAL_SECONDS", 60.0)
        self.payment_sweep_min_age = _getenv_float("PAYMENT_SWEEP_MIN_AGE_SECONDS", 30.0)

        # Loyalty / commissions
        self.loyalty_points_per_amount = _getenv_int("LOYALTY_POINTS_PER_AMOUNT", 1000)
        self.loyalty_reward_ttl_days = _getenv_int("LOYALTY_REWARD_TTL_DAYS", 30)
        self.shipping_fee = _getenv_float("SHIPPING_FEE", 1000.0)
        self.default_commission_rate = _getenv_float("DEFAULT_COMMISSION_RATE", 0.10)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def resolved_cors_origins(self) -> list[str]:
        raw = self.cors_allow_origins
        if raw is None:
            return ["http://localhost:3000", "http://localhost:5173"]
        if raw.strip() == "*":
            return ["*"]
        return [o.strip() for o in raw.split(",") if o.strip()]


settings = Settings()
