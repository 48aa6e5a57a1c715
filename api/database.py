from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def configure_database(db: Database = database):
    """
    Configure database-specific settings after connection.

    SQLite needs foreign keys switched on per connection for the assets
    cascade; PostgreSQL always enforces them.
    """
    if db.url.dialect == "sqlite":
        await db.execute("PRAGMA foreign_keys = ON")


jobs = sa.Table(
    "jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("owner_id", sa.String(128), nullable=False),
    sa.Column("input_source", sa.Text, nullable=False),
    sa.Column("requested_formats", sa.String(64), nullable=False),  # comma-separated, in submitted order
    sa.Column(
        "status",
        sa.String(20),
        sa.CheckConstraint(
            "status IN ('PENDING', 'DOWNLOADING', 'PROCESSING', 'UPLOADING', 'COMPLETED', 'FAILED', 'CANCELLED')",
            name="ck_jobs_status",
        ),
        nullable=False,
        default="PENDING",
    ),
    sa.Column(
        "progress",
        sa.Integer,
        sa.CheckConstraint("progress >= 0 AND progress <= 100", name="ck_jobs_progress"),
        nullable=False,
        default=0,
    ),
    sa.Column("error_text", sa.Text, nullable=True),
    # Bumped on every PENDING -> DOWNLOADING claim; identifies the run that owns the job
    sa.Column("attempt_number", sa.Integer, nullable=False, default=0, server_default="0"),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Index("ix_jobs_owner_id", "owner_id"),
    sa.Index("ix_jobs_status", "status"),
    sa.Index("ix_jobs_status_updated_at", "status", "updated_at"),
    sa.Index("ix_jobs_created_at", "created_at"),
)

# Output artifacts; rows go away with their job
assets = sa.Table(
    "assets",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
    sa.Column("job_id", sa.Integer, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
    sa.Column(
        "asset_type",
        sa.String(20),
        sa.CheckConstraint(
            "asset_type IN ('TRANSCODE_4K', 'TRANSCODE_1080', 'TRANSCODE_720', 'TRANSCODE_480', "
            "'GIF', 'THUMBNAIL', 'METADATA_JSON')",
            name="ck_assets_asset_type",
        ),
        nullable=False,
    ),
    sa.Column("storage_key", sa.String(512), nullable=False),
    sa.Column("size_bytes", sa.BigInteger, nullable=True),
    sa.Column("content_type", sa.String(64), nullable=False),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=utcnow),
    sa.Index("ix_assets_job_id", "job_id"),
)


def create_tables(database_url: str = DATABASE_URL):
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(database_url)
    metadata.create_all(engine)
    engine.dispose()
