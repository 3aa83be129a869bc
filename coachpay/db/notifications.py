"""
In-app notification storage.

Delivery itself is handled by the create_notification RPC; this module only
checks recent history and hands notifications to it.
"""

import logging
from datetime import datetime
from typing import Any

from coachpay.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)


def has_recent_notification(user_id: str, title: str, since: datetime) -> bool:
    def _op(client):
        return (
            client.table("notifications")
            .select("id")
            .eq("user_id", user_id)
            .eq("title", title)
            .gte("created_at", since.isoformat())
            .limit(1)
            .execute()
        )

    result = execute_with_retry(_op, operation_name="has_recent_notification")
    return bool(result.data)


def create_notification(
    user_id: str,
    type_key: str,
    title: str,
    message: str,
    link: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Any:
    params = {
        "p_user_id": user_id,
        "p_type_key": type_key,
        "p_title": title,
        "p_message": message,
        "p_link": link,
        "p_metadata": metadata or {},
    }
    result = execute_with_retry(
        lambda client: client.rpc("create_notification", params).execute(),
        operation_name="create_notification",
    )
    return result.data
