"""Identity sync schema (workspaces, unified identities, events, sync jobs)

Revision ID: 20261016_0900
Revises:
Create Date: 2026-10-16

"""

from __future__ import annotations

from alembic import op

revision = "20261016_0900"
down_revision = None
branch_labels = None
depends_on = None


def _create_enum(name: str, values: list[str]) -> None:
    quoted = ",".join(f"'{v}'" for v in values)
    op.execute(
        f"""
DO $$ BEGIN
  CREATE TYPE {name} AS ENUM ({quoted});
EXCEPTION WHEN duplicate_object THEN NULL; END $$;
"""
    )


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")
    op.execute("CREATE EXTENSION IF NOT EXISTS citext;")

    _create_enum("identity_type", ["anonymous_id", "email", "customer_id", "phone"])
    _create_enum("event_status", ["pending", "processed", "failed", "synced"])
    _create_enum("destination_type", ["klaviyo"])
    _create_enum("sync_job_type", ["profile_upsert", "event_track"])
    _create_enum("sync_job_status", ["pending", "running", "completed", "failed"])

    op.execute(
        """
CREATE TABLE IF NOT EXISTS workspaces (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  name text NOT NULL,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS api_keys (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
  name text NOT NULL,
  key_hash bytea NOT NULL UNIQUE,
  scopes text[] NOT NULL DEFAULT '{}'::text[],
  expires_at timestamptz,
  revoked_at timestamptz,
  last_used_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute("CREATE INDEX IF NOT EXISTS api_keys_workspace_idx ON api_keys (workspace_id);")

    op.execute(
        """
CREATE TABLE IF NOT EXISTS users_unified (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
  primary_email citext,
  emails text[] NOT NULL DEFAULT '{}'::text[],
  phone text,
  customer_ids text[] NOT NULL DEFAULT '{}'::text[],
  anonymous_ids text[] NOT NULL DEFAULT '{}'::text[],
  traits jsonb NOT NULL DEFAULT '{}'::jsonb,
  computed jsonb NOT NULL DEFAULT '{}'::jsonb,
  synced_snapshot jsonb,
  last_synced_at timestamptz,
  first_seen_at timestamptz NOT NULL DEFAULT now(),
  last_seen_at timestamptz NOT NULL DEFAULT now(),
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS users_unified_workspace_primary_email_uniq
  ON users_unified (workspace_id, primary_email)
  WHERE primary_email IS NOT NULL;
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS users_unified_anonymous_ids_gin ON users_unified USING gin (anonymous_ids);"
    )
    op.execute("CREATE INDEX IF NOT EXISTS users_unified_emails_gin ON users_unified USING gin (emails);")
    op.execute(
        "CREATE INDEX IF NOT EXISTS users_unified_customer_ids_gin ON users_unified USING gin (customer_ids);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS users_unified_workspace_updated_idx ON users_unified (workspace_id, updated_at DESC);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS users_unified_last_seen_idx ON users_unified (last_seen_at DESC);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS identities (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
  unified_user_id uuid NOT NULL REFERENCES users_unified(id) ON DELETE CASCADE,
  identity_type identity_type NOT NULL,
  identity_value text NOT NULL,
  source text NOT NULL,
  confidence double precision NOT NULL DEFAULT 1.0,
  created_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (workspace_id, identity_type, identity_value)
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS identities_unified_user_idx ON identities (unified_user_id);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS events (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
  unified_user_id uuid REFERENCES users_unified(id) ON DELETE SET NULL,
  anonymous_id text,
  session_id text,
  event_type text NOT NULL,
  event_name text NOT NULL,
  properties jsonb NOT NULL DEFAULT '{}'::jsonb,
  context jsonb NOT NULL DEFAULT '{}'::jsonb,
  source text NOT NULL DEFAULT 'api',
  dedupe_key text,
  status event_status NOT NULL DEFAULT 'pending',
  event_time timestamptz NOT NULL DEFAULT now(),
  processed_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS events_workspace_dedupe_key_uniq
  ON events (workspace_id, dedupe_key)
  WHERE dedupe_key IS NOT NULL;
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS events_workspace_anonymous_idx ON events (workspace_id, anonymous_id);"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS events_unified_user_time_idx ON events (unified_user_id, event_time DESC);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS destinations (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
  type destination_type NOT NULL,
  name text NOT NULL,
  enabled boolean NOT NULL DEFAULT true,
  encrypted_credentials bytea,
  config jsonb NOT NULL DEFAULT '{}'::jsonb,
  last_sync_at timestamptz,
  last_error text,
  last_engagement_poll_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS destinations_workspace_idx ON destinations (workspace_id, enabled);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS sync_jobs (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
  destination_id uuid NOT NULL REFERENCES destinations(id) ON DELETE CASCADE,
  unified_user_id uuid NOT NULL REFERENCES users_unified(id) ON DELETE CASCADE,
  event_id uuid REFERENCES events(id) ON DELETE SET NULL,
  job_type sync_job_type NOT NULL,
  status sync_job_status NOT NULL DEFAULT 'pending',
  attempts int NOT NULL DEFAULT 0,
  max_attempts int NOT NULL DEFAULT 3,
  payload jsonb NOT NULL DEFAULT '{}'::jsonb,
  dedupe_key text,
  outcome text,
  last_error text,
  locked_by text,
  scheduled_at timestamptz NOT NULL DEFAULT now(),
  started_at timestamptz,
  completed_at timestamptz,
  created_at timestamptz NOT NULL DEFAULT now(),
  updated_at timestamptz NOT NULL DEFAULT now()
);
"""
    )
    op.execute(
        """
CREATE UNIQUE INDEX IF NOT EXISTS sync_jobs_dedupe_key_uniq
  ON sync_jobs (dedupe_key)
  WHERE dedupe_key IS NOT NULL;
"""
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS sync_jobs_due_idx ON sync_jobs (status, scheduled_at) WHERE status = 'pending';"
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS sync_jobs_identity_type_idx ON sync_jobs (unified_user_id, job_type, status);"
    )

    op.execute(
        """
CREATE TABLE IF NOT EXISTS predictive_signals (
  id uuid PRIMARY KEY DEFAULT gen_random_uuid(),
  workspace_id uuid NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
  unified_user_id uuid NOT NULL REFERENCES users_unified(id) ON DELETE CASCADE,
  signal_type text NOT NULL,
  confidence double precision NOT NULL,
  payload jsonb NOT NULL DEFAULT '{}'::jsonb,
  computed_at timestamptz NOT NULL DEFAULT now(),
  UNIQUE (workspace_id, unified_user_id, signal_type)
);
"""
    )


def downgrade() -> None:
    # No downgrade support (early-stage schema; breaking changes allowed).
    pass
