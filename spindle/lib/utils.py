import os
from datetime import datetime, timezone
from typing import List
from uuid import uuid4

from ..common.config import MIGRATION_UPGRADES
from ..schemas.database import Migration


def get_migrations(migration_path: str = MIGRATION_UPGRADES) -> List[Migration]:
    migrations = []
    files = sorted(os.listdir(migration_path))
    for file in files:
        if file.endswith(".sql"):
            with open(os.path.join(migration_path, file), "r", encoding="utf-8") as f:
                sql = f.read()
            migrations.append(Migration(name=file, sql=sql))
    return migrations


def get_upgrade_migrations() -> List[Migration]:
    return get_migrations(MIGRATION_UPGRADES)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_id() -> str:
    """Generate a unique identifier using UUID4.

    Returns:
        Hexadecimal string representation of a UUID4
    """
    return uuid4().hex


def to_db_time(value: datetime) -> str:
    """Serialize a datetime for storage.

    All timestamps are stored as UTC ISO-8601 text with microseconds so that
    string comparison in SQL matches chronological order.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
