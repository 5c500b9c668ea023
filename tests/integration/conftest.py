"""Integration test fixtures.

Applies migrations 0001-0003 against an ephemeral PostgreSQL database
provided by pytest-postgresql, plus seed helpers shared by the pipeline tests.
"""

from __future__ import annotations

import shutil
from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = sorted((PROJECT_ROOT / "migrations").glob("*.sql"))

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies all migrations for every test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(request):
    """Return (connection, dsn) with schema applied.

    Each test gets a fresh database via function scope so tests are isolated.
    The connection is left in non-autocommit mode and idle.
    """
    if not (shutil.which("pg_ctl") or shutil.which("pg_config")):
        pytest.skip("PostgreSQL server binaries not installed")
    postgresql = request.getfixturevalue("postgresql")
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            sql = migration.read_text(encoding="utf-8")
            conn.execute(sql)
        conn.autocommit = False
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

def insert_user(conn: psycopg.Connection, name: str, role: str = "sales") -> str:
    row = conn.execute(
        "INSERT INTO users (name, role) VALUES (%s, %s) RETURNING id", (name, role)
    ).fetchone()
    return str(row[0])


def insert_opportunity(
    conn: psycopg.Connection,
    external_id: str,
    stage: str,
    *,
    name: str = "Existing Co-",
    close_date: str | None = None,
    rating: str | None = None,
    next_step: str | None = None,
    user_id: str | None = None,
    notes: str | None = None,
) -> str:
    lead_id = conn.execute(
        "INSERT INTO lead (company_name, external_id, user_id) VALUES (%s, %s, %s) RETURNING id",
        (name.rstrip("-"), external_id, user_id),
    ).fetchone()[0]
    row = conn.execute(
        """
        INSERT INTO opportunity
            (lead_id, user_id, name, stage, expected_close_date, rating, next_step,
             notes, external_id)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING id
        """,
        (lead_id, user_id, name, stage, close_date, rating, next_step, notes, external_id),
    ).fetchone()
    return str(row[0])


def export_bytes(rows: list[tuple[str, ...]], encoding: str = "cp1252") -> bytes:
    """Semicolon export with the CRM's German header row.

    Each row: (opportunity name, stage, owner, external id[, close date]).
    """
    header = "Opportunity-Name;Phase;Schlusstermin;Opportunity-Inhaber;Unique Sign Up Link"
    lines = [header]
    for row in rows:
        name, stage, owner, ext_id = row[:4]
        close = row[4] if len(row) > 4 else ""
        link = f"https://signup.example.test/register?sfid={ext_id}" if ext_id else ""
        lines.append(f"{name};{stage};{close};{owner};{link}")
    return ("\r\n".join(lines) + "\r\n").encode(encoding)
