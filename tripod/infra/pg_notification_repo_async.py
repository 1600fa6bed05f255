# tripod/infra/pg_notification_repo_async.py
"""
In-app notifications (the bell in the UI).
"""
from __future__ import annotations

from tripod.core.domain import Notification
from tripod.infra.db_resilience_async import safe_db_conn
from tripod.infra.pg_rows import command_count


def _row_to_notification(row) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        title=row["title"],
        message=row["message"],
        link=row["link"],
        is_read=row["is_read"],
        created_at=row["created_at"],
    )


class AsyncPostgresNotificationRepository:

    async def create(self, notification: Notification) -> Notification:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO notifications (user_id, type, title, message, link)
                VALUES ($1, $2, $3, $4, $5)
                RETURNING *
                """,
                notification.user_id,
                notification.type,
                notification.title,
                notification.message,
                notification.link,
            )
        return _row_to_notification(row)

    async def list_for_user(self, user_id: str, *, unread_only: bool = False, limit: int = 50) -> list[Notification]:
        unread = "AND NOT is_read" if unread_only else ""
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                f"SELECT * FROM notifications WHERE user_id = $1 {unread} ORDER BY created_at DESC LIMIT $2",
                user_id,
                limit,
            )
        return [_row_to_notification(r) for r in rows]

    async def mark_read(self, notification_id: str) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                "UPDATE notifications SET is_read = true WHERE id = $1",
                notification_id,
            )
        return command_count(result) > 0


_repo: AsyncPostgresNotificationRepository | None = None


def get_notification_repo() -> AsyncPostgresNotificationRepository:
    global _repo
    if _repo is None:
        _repo = AsyncPostgresNotificationRepository()
    return _repo
