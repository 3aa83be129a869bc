import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_int_env(name: str, default: int) -> int:
    value = _get_env_var(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    value = _get_env_var(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_bool_env(name: str, default: bool) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or os.environ.get("TESTING", "").lower() in {
        "1",
        "true",
        "yes",
    }

    # Supabase Configuration (service role key: this service writes ledger tables)
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    FRONTEND_URL = _get_env_var("FRONTEND_URL", "http://localhost:5173")

    # Shared credential for scheduled maintenance runs
    MAINTENANCE_API_KEY = _get_env_var("MAINTENANCE_API_KEY")

    # Ledger policy
    DEFAULT_PURCHASE_EXPIRY_MONTHS = _get_int_env("DEFAULT_PURCHASE_EXPIRY_MONTHS", 120)
    ROLLOVER_FRACTION = _get_float_env("ROLLOVER_FRACTION", 0.5)
    USER_EXPIRY_WINDOW_DAYS = _get_int_env("USER_EXPIRY_WINDOW_DAYS", 7)
    ORG_EXPIRY_WINDOW_DAYS = _get_int_env("ORG_EXPIRY_WINDOW_DAYS", 30)
    NOTIFICATION_DEDUP_HOURS = _get_int_env("NOTIFICATION_DEDUP_HOURS", 24)
    CLEANUP_AGE_DAYS = _get_int_env("CLEANUP_AGE_DAYS", 90)
    FREE_PLAN_KEY = _get_env_var("FREE_PLAN_KEY", "free")

    # Scheduled maintenance
    ENABLE_SCHEDULED_MAINTENANCE = _get_bool_env("ENABLE_SCHEDULED_MAINTENANCE", False)
    MAINTENANCE_HOUR_UTC = _get_int_env("MAINTENANCE_HOUR_UTC", 2)
    EXPIRY_NOTIFICATION_HOUR_UTC = _get_int_env("EXPIRY_NOTIFICATION_HOUR_UTC", 3)

    # Logging
    LOG_LEVEL = _get_env_var("LOG_LEVEL", "INFO")
    LOG_FORMAT = _get_env_var("LOG_FORMAT", "plain")  # plain | json

    # Sentry Configuration
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENABLED = _get_bool_env("SENTRY_ENABLED", True)
    SENTRY_ENVIRONMENT = os.environ.get("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_TRACES_SAMPLE_RATE = _get_float_env("SENTRY_TRACES_SAMPLE_RATE", 0.1)
    SENTRY_RELEASE = os.environ.get("SENTRY_RELEASE", "0.1.0")

    @classmethod
    def validate(cls):
        """Validate that all required environment variables are set"""
        missing_vars = []

        if not cls.SUPABASE_URL:
            missing_vars.append("SUPABASE_URL")
        if not cls.SUPABASE_KEY:
            missing_vars.append("SUPABASE_KEY")

        if missing_vars:
            raise RuntimeError(
                f"Missing required environment variables: {', '.join(missing_vars)}\n"
                "Please create a .env file with the following variables:\n"
                "SUPABASE_URL=your_supabase_project_url\n"
                "SUPABASE_KEY=your_supabase_service_role_key\n"
                "STRIPE_SECRET_KEY=sk_...\n"
                "STRIPE_WEBHOOK_SECRET=whsec_...\n"
                "MAINTENANCE_API_KEY=shared_secret_for_cron (optional)"
            )

        return True

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Validate that all critical environment variables are set.

        Returns:
            tuple: (is_valid, missing_vars)
        """
        critical_vars = {
            "SUPABASE_URL": cls.SUPABASE_URL,
            "SUPABASE_KEY": cls.SUPABASE_KEY,
            "STRIPE_SECRET_KEY": cls.STRIPE_SECRET_KEY,
            "STRIPE_WEBHOOK_SECRET": cls.STRIPE_WEBHOOK_SECRET,
        }

        missing = [name for name, value in critical_vars.items() if not value]
        return len(missing) == 0, missing
