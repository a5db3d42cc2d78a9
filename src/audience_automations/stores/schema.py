"""Runtime schema bootstrap for the SQL stores.

All statements are idempotent and portable between SQLite and Postgres.
Timestamps are stored as ISO-8601 UTC text (see ``utils.to_iso``), JSON payloads
as text.
"""

from __future__ import annotations

import structlog
from sqlalchemy import text

logger = structlog.get_logger()


_DDL = (
    """
    CREATE TABLE IF NOT EXISTS audiences (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL DEFAULT '',
        known_properties_json TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contacts (
        id TEXT PRIMARY KEY,
        audience_id TEXT NOT NULL,
        email TEXT NOT NULL,
        first_name TEXT,
        last_name TEXT,
        status TEXT NOT NULL DEFAULT 'SUBSCRIBED',
        source TEXT,
        subscribed_at TEXT,
        unsubscribed_at TEXT,
        last_sent_broadcast_email_at TEXT,
        last_sent_automation_email_at TEXT,
        last_opened_broadcast_email_at TEXT,
        last_opened_automation_email_at TEXT,
        last_clicked_broadcast_email_link_at TEXT,
        last_clicked_automation_email_link_at TEXT,
        last_tracked_activity_from TEXT,
        last_tracked_activity_using_device TEXT,
        last_tracked_activity_using_browser TEXT,
        UNIQUE (audience_id, email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tags_on_contacts (
        contact_id TEXT NOT NULL,
        tag_id TEXT NOT NULL,
        PRIMARY KEY (contact_id, tag_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_properties (
        contact_id TEXT NOT NULL,
        audience_id TEXT NOT NULL,
        name TEXT NOT NULL,
        value_text TEXT,
        value_float REAL,
        value_boolean INTEGER,
        value_date TEXT,
        UNIQUE (contact_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS segments (
        id TEXT PRIMARY KEY,
        audience_id TEXT NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        filter_groups_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automations (
        id TEXT PRIMARY KEY,
        audience_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        status TEXT NOT NULL DEFAULT 'DRAFT'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_steps (
        id TEXT PRIMARY KEY,
        automation_id TEXT NOT NULL,
        type TEXT NOT NULL,
        subtype TEXT NOT NULL,
        parent_id TEXT,
        branch TEXT,
        status TEXT NOT NULL DEFAULT 'DRAFT',
        configuration_json TEXT NOT NULL DEFAULT '{}',
        email_id TEXT,
        tag_id TEXT,
        audience_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS contact_automation_steps (
        id TEXT PRIMARY KEY,
        contact_id TEXT NOT NULL,
        automation_step_id TEXT NOT NULL,
        status TEXT NOT NULL,
        output TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT,
        failed_at TEXT,
        UNIQUE (contact_id, automation_step_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS automation_jobs (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        payload_json TEXT NOT NULL,
        job_key TEXT,
        attempts INTEGER NOT NULL,
        attempts_made INTEGER NOT NULL DEFAULT 0,
        available_at TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'QUEUED',
        last_error TEXT,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_contacts_audience ON contacts(audience_id)",
    "CREATE INDEX IF NOT EXISTS idx_tags_on_contacts_tag ON tags_on_contacts(tag_id)",
    "CREATE INDEX IF NOT EXISTS idx_contact_properties_name ON contact_properties(audience_id, name)",
    "CREATE INDEX IF NOT EXISTS idx_automation_steps_parent ON automation_steps(parent_id)",
    "CREATE INDEX IF NOT EXISTS idx_automation_steps_automation ON automation_steps(automation_id)",
    """
    CREATE INDEX IF NOT EXISTS idx_contact_automation_steps_pending
        ON contact_automation_steps(automation_step_id, status, contact_id)
    """,
    "CREATE INDEX IF NOT EXISTS idx_automation_jobs_due ON automation_jobs(status, available_at)",
    "CREATE INDEX IF NOT EXISTS idx_automation_jobs_key ON automation_jobs(job_key, status)",
)


def ensure_schema(engine) -> None:
    """Ensure required tables and indexes exist (idempotent).

    Args:
        engine: SQLAlchemy engine bound to the target database.
    """

    with engine.begin() as conn:
        for statement in _DDL:
            conn.execute(text(statement))

    logger.info("automation_schema_ensured", tables=9)
