import sqlite3
from pathlib import Path

import allure

from image_relay.storage.repository import RelayRepository

pytestmark = [
    allure.epic("Persistence"),
    allure.feature("Schema Migrations"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrations.db"
    repository = RelayRepository(db_path)
    repository.init_schema()
    repository.init_schema()
    repository.close()

    connection = sqlite3.connect(db_path)
    try:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchall()
        assert version == [("20261017_0001",)]

        user = connection.execute(
            "SELECT user_id FROM users WHERE user_id = 'default_user'",
        ).fetchone()
        assert user is not None

        tables = connection.execute(
            """
            SELECT name
            FROM sqlite_master
            WHERE type = 'table' AND name != 'alembic_version'
            ORDER BY name
            """,
        ).fetchall()
        assert [row[0] for row in tables] == [
            "generated_artifacts",
            "generation_tasks",
            "provider_accounts",
            "uploaded_images",
            "users",
        ]
    finally:
        connection.close()
