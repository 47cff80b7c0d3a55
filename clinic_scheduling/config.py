# clinic_scheduling/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ===== App =====
    APP_NAME: str = "clinic_scheduling"
    ENV: str = "dev"
    # Facility local time; every date/time in the core is expressed in it
    TIMEZONE: str = "America/Mexico_City"

    # ===== DB =====
    # Local falls back to SQLite; production points DATABASE_URL at Postgres.
    DATABASE_URL: str = "sqlite:///./clinic_scheduling.db"

    DB_POOL_SIZE: int = 2
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800  # 30 min

    # ===== Scheduling =====
    # Bounded wait for the per-provider-day lock
    LOCK_TIMEOUT_SECONDS: float = 5.0
    MIN_SLOT_MINUTES: int = 5
    MAX_SLOT_MINUTES: int = 480
    # Booking window: minimum lead time and maximum horizon (0 disables the horizon)
    MIN_ADVANCE_HOURS: float = 0
    MAX_ADVANCE_DAYS: int = 90
    # How many free slots to suggest on a SchedulingConflict
    ALTERNATIVES_LIMIT: int = 3

    # ===== Jobs =====
    ENABLE_JOBS: bool = True
    # pending-payment appointments older than this are cancelled
    PENDING_PAYMENT_TTL_MIN: int = 30
    CLEANUP_INTERVAL_MIN: int = 5

    def model_post_init(self, __context) -> None:
        """Clamps the slot duration bounds so that MIN <= MAX, and the booking window to >= 0."""
        if self.MIN_SLOT_MINUTES < 1:
            self.MIN_SLOT_MINUTES = 1
        if self.MAX_SLOT_MINUTES < self.MIN_SLOT_MINUTES:
            self.MAX_SLOT_MINUTES = self.MIN_SLOT_MINUTES
        if self.MIN_ADVANCE_HOURS < 0:
            self.MIN_ADVANCE_HOURS = 0
        if self.MAX_ADVANCE_DAYS < 0:
            self.MAX_ADVANCE_DAYS = 0


settings = Settings()
