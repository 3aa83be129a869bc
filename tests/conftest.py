import os

# Config reads the environment at import time
os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test-service-role-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_123")
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_123"
os.environ["MAINTENANCE_API_KEY"] = "maint-secret-key"
os.environ["SENTRY_ENABLED"] = "false"

import pytest  # noqa: E402

from coachpay.config import supabase_config  # noqa: E402
from coachpay.services.stripe_gateway import StripeGateway  # noqa: E402
from tests.helpers.fake_supabase import FakeSupabase  # noqa: E402
from tests.helpers.stripe_events import WEBHOOK_SECRET  # noqa: E402


@pytest.fixture
def fake_db(monkeypatch):
    """Route every db module through an in-memory Supabase."""
    db = FakeSupabase()
    monkeypatch.setattr(supabase_config, "get_supabase_client", lambda: db)
    return db


@pytest.fixture
def gateway():
    return StripeGateway(api_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)
