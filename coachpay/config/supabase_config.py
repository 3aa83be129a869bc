"""
Supabase access for the billing service.

One process-wide client is built lazily. PostgREST traffic is routed through a
pooled HTTP/2 httpx client, and every db module goes through execute_with_retry,
which rebuilds the pool when the server drops an HTTP/2 connection under it.
"""

import logging
import os
import threading
import time

import httpx
from supabase import Client, create_client
from supabase.client import ClientOptions

from coachpay.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_client_lock = threading.Lock()

# A failed initialisation is not retried for this many seconds
INIT_FAILURE_BACKOFF = 60.0
_init_failure: tuple[Exception, float] | None = None

RETRY_DELAY_SECONDS = 0.1

HTTP2_RESET_MARKERS = (
    "streaminputs.send_headers",
    "streaminputs.recv_data",
    "connectioninputs.recv_data",
    "connectionstate.closed",
    "stream closed",
    "connection reset by peer",
    "goaway",
    "h2_error",
    "http2 error",
)


def _pool_limits() -> httpx.Limits:
    # Serverless hosts share the database connection budget across many instances
    if os.getenv("VERCEL") or os.getenv("AWS_LAMBDA_FUNCTION_NAME"):
        return httpx.Limits(max_connections=20, max_keepalive_connections=5, keepalive_expiry=30.0)
    return httpx.Limits(max_connections=50, max_keepalive_connections=20, keepalive_expiry=60.0)


def _build_client() -> Client:
    Config.validate()

    if not Config.SUPABASE_URL.startswith(("http://", "https://")):
        raise RuntimeError(f"SUPABASE_URL must be an http(s) URL, got '{Config.SUPABASE_URL}'")

    rest_url = f"{Config.SUPABASE_URL}/rest/v1"
    client = create_client(
        supabase_url=Config.SUPABASE_URL,
        supabase_key=Config.SUPABASE_KEY,
        options=ClientOptions(
            postgrest_client_timeout=30,
            schema="public",
            headers={"X-Client-Info": "coachpay/0.1"},
        ),
    )

    if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
        client.postgrest.session = httpx.Client(
            base_url=rest_url,
            headers={"apikey": Config.SUPABASE_KEY, "Authorization": f"Bearer {Config.SUPABASE_KEY}"},
            timeout=httpx.Timeout(30.0, connect=10.0),
            limits=_pool_limits(),
            http2=True,
        )
        logger.info(f"Supabase PostgREST pooled over HTTP/2 ({rest_url})")

    return client


def get_supabase_client() -> Client:
    """
    Return the shared Supabase client, building it on first use.

    Raises:
        RuntimeError: Configuration is missing, or a recent initialisation failed
    """
    global _supabase_client, _init_failure

    if _supabase_client is not None:
        return _supabase_client

    with _client_lock:
        if _supabase_client is not None:
            return _supabase_client

        if _init_failure is not None:
            error, failed_at = _init_failure
            waited = time.time() - failed_at
            if waited < INIT_FAILURE_BACKOFF:
                raise RuntimeError(
                    f"Supabase unavailable (retry in {int(INIT_FAILURE_BACKOFF - waited)}s): {error}"
                ) from error
            _init_failure = None

        try:
            _supabase_client = _build_client()
        except Exception as e:
            _init_failure = (e, time.time())
            logger.error(f"Failed to initialize Supabase client: {type(e).__name__}: {e}", exc_info=True)
            raise RuntimeError(f"Supabase client initialization failed: {e}") from e

        return _supabase_client


def _close_pooled_session(client: Client) -> None:
    session = getattr(getattr(client, "postgrest", None), "session", None)
    if session is not None and hasattr(session, "close"):
        session.close()


def test_connection() -> bool:
    """
    Check connectivity with a one-row read of the ledger table.

    Raises:
        RuntimeError: If the read fails
    """
    try:
        get_supabase_client().table("credit_batches").select("id").limit(1).execute()
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        raise RuntimeError(f"Database connection failed: {e}") from e

    logger.info("Database connection test successful")
    return True


def cleanup_supabase_client() -> None:
    """Close the connection pool on shutdown."""
    global _supabase_client

    with _client_lock:
        if _supabase_client is None:
            return
        try:
            _close_pooled_session(_supabase_client)
        except Exception as e:
            logger.warning(f"Error during Supabase client cleanup: {e}")
        _supabase_client = None

    logger.info("Supabase client cleanup completed")


def reset_supabase_client() -> bool:
    """
    Drop the cached client so the next call builds a fresh pool.

    Returns:
        True if a cached client was dropped
    """
    global _supabase_client, _init_failure

    with _client_lock:
        if _supabase_client is None:
            return False
        try:
            _close_pooled_session(_supabase_client)
        except Exception as e:
            logger.debug(f"Error closing pooled session during reset: {e}")
        _supabase_client = None
        _init_failure = None

    logger.info("Supabase client reset, next request opens a fresh pool")
    return True


def is_http2_protocol_error(error: Exception) -> bool:
    """True for transport errors caused by the server resetting an HTTP/2 connection."""
    if "protocolerror" in type(error).__name__.lower():
        return True

    message = str(error).lower()
    if any(marker in message for marker in HTTP2_RESET_MARKERS):
        return True

    # h2 state machine errors surface as "Invalid input ConnectionInputs..."
    return "invalid input" in message and ("state" in message or "inputs" in message)


def execute_with_retry(operation, max_retries: int = 2, operation_name: str = "database operation"):
    """
    Run `operation(client)`, retrying only on HTTP/2 protocol errors.

    PostgREST errors and empty conditional-update results are passed through
    unchanged: the callers decide what a lost compare-and-swap means.

    Args:
        operation: Callable taking the Supabase client
        max_retries: Extra attempts after the first one
        operation_name: Used in log messages
    """
    for attempt in range(max_retries + 1):
        try:
            return operation(get_supabase_client())
        except Exception as e:
            if attempt >= max_retries or not is_http2_protocol_error(e):
                raise
            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying"
            )
            reset_supabase_client()
            time.sleep(RETRY_DELAY_SECONDS)
