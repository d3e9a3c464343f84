"""
Hiro - Database Initialization
Creates all tables and indexes, then applies pending migrations.

Run: python -m hiro.db.init_db [db_path]
"""

import sqlite3
import sys

from hiro.config import DB_PATH
from hiro.db.migration_runner import run_migrations

SCHEMA_SQL = """
-- Tenants
CREATE TABLE IF NOT EXISTS organizations (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Connected Facebook pages (optionally linked to an Instagram business account)
CREATE TABLE IF NOT EXISTS facebook_pages (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    page_id TEXT NOT NULL,
    page_name TEXT,
    page_access_token TEXT NOT NULL,
    instagram_account_id TEXT,
    is_active INTEGER DEFAULT 1,
    last_synced_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(organization_id, page_id)
);

-- Pipelines and their ordered stages
CREATE TABLE IF NOT EXISTS pipelines (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    name TEXT NOT NULL,
    description TEXT,
    color TEXT DEFAULT '#3b82f6',
    icon TEXT,
    is_archived INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS pipeline_stages (
    id TEXT PRIMARY KEY,
    pipeline_id TEXT NOT NULL REFERENCES pipelines(id) ON DELETE CASCADE,
    name TEXT NOT NULL,
    description TEXT,
    color TEXT DEFAULT '#3b82f6',
    type TEXT NOT NULL DEFAULT 'IN_PROGRESS',
    stage_order INTEGER NOT NULL DEFAULT 0,
    lead_score_min INTEGER DEFAULT 0,
    lead_score_max INTEGER DEFAULT 100,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Contacts (one row per person per page)
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    facebook_page_id TEXT REFERENCES facebook_pages(id),
    messenger_psid TEXT,
    instagram_sid TEXT,
    first_name TEXT NOT NULL,
    last_name TEXT,
    has_messenger INTEGER DEFAULT 0,
    has_instagram INTEGER DEFAULT 0,
    tags TEXT DEFAULT '[]',
    pipeline_id TEXT REFERENCES pipelines(id),
    stage_id TEXT REFERENCES pipeline_stages(id),
    stage_entered_at TEXT,
    lead_score INTEGER DEFAULT 0,
    lead_status TEXT DEFAULT 'NEW',
    ai_context TEXT,
    ai_context_updated_at TEXT,
    last_interaction TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now')),
    UNIQUE(messenger_psid, facebook_page_id)
);

-- Conversation history kept per contact (inbound and outbound)
CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    campaign_id TEXT REFERENCES campaigns(id),
    content TEXT NOT NULL,
    platform TEXT NOT NULL DEFAULT 'MESSENGER',
    status TEXT NOT NULL DEFAULT 'SENT',
    message_tag TEXT,
    facebook_message_id TEXT,
    sender_name TEXT,
    is_from_business INTEGER DEFAULT 0,
    sent_at TEXT,
    failed_at TEXT,
    error_message TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contact_activities (
    id TEXT PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    type TEXT NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    from_stage_id TEXT,
    to_stage_id TEXT,
    user_id TEXT,
    metadata TEXT DEFAULT '{}',
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contact_groups (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    name TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS contact_group_members (
    group_id TEXT NOT NULL REFERENCES contact_groups(id) ON DELETE CASCADE,
    contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    PRIMARY KEY (group_id, contact_id)
);

-- Campaigns
CREATE TABLE IF NOT EXISTS templates (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    name TEXT NOT NULL,
    content TEXT NOT NULL,
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE TABLE IF NOT EXISTS campaigns (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organizations(id),
    facebook_page_id TEXT NOT NULL REFERENCES facebook_pages(id),
    template_id TEXT REFERENCES templates(id),
    name TEXT NOT NULL,
    platform TEXT NOT NULL DEFAULT 'MESSENGER',
    message_tag TEXT,
    status TEXT NOT NULL DEFAULT 'DRAFT',
    targeting_type TEXT NOT NULL DEFAULT 'ALL_CONTACTS',
    target_tags TEXT DEFAULT '[]',
    target_stage_ids TEXT DEFAULT '[]',
    target_contact_ids TEXT DEFAULT '[]',
    target_group_ids TEXT DEFAULT '[]',
    use_ai_personalization INTEGER DEFAULT 0,
    ai_messages_map TEXT,
    total_recipients INTEGER DEFAULT 0,
    sent_count INTEGER DEFAULT 0,
    failed_count INTEGER DEFAULT 0,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT DEFAULT (datetime('now')),
    updated_at TEXT DEFAULT (datetime('now'))
);

-- Background contact sync jobs
CREATE TABLE IF NOT EXISTS sync_jobs (
    id TEXT PRIMARY KEY,
    facebook_page_id TEXT NOT NULL REFERENCES facebook_pages(id),
    status TEXT NOT NULL DEFAULT 'PENDING',
    total_contacts INTEGER DEFAULT 0,
    synced_contacts INTEGER DEFAULT 0,
    failed_contacts INTEGER DEFAULT 0,
    errors TEXT,
    token_expired INTEGER DEFAULT 0,
    started_at TEXT,
    completed_at TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- LLM provider keys (encrypted at rest)
CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    name TEXT,
    encrypted_key TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ACTIVE',
    rate_limited_at TEXT,
    last_used_at TEXT,
    last_success_at TEXT,
    consecutive_failures INTEGER DEFAULT 0,
    total_requests INTEGER DEFAULT 0,
    failed_requests INTEGER DEFAULT 0,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_contacts_org ON contacts(organization_id);
CREATE INDEX IF NOT EXISTS idx_contacts_page ON contacts(facebook_page_id);
CREATE INDEX IF NOT EXISTS idx_contacts_stage ON contacts(stage_id);
CREATE INDEX IF NOT EXISTS idx_contacts_score ON contacts(lead_score);
CREATE INDEX IF NOT EXISTS idx_contacts_igsid ON contacts(instagram_sid, facebook_page_id);
CREATE INDEX IF NOT EXISTS idx_stages_pipeline ON pipeline_stages(pipeline_id, stage_order);
CREATE INDEX IF NOT EXISTS idx_messages_contact ON messages(contact_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_campaign ON messages(campaign_id, status);
CREATE INDEX IF NOT EXISTS idx_activities_contact ON contact_activities(contact_id, created_at);
CREATE INDEX IF NOT EXISTS idx_sync_jobs_page ON sync_jobs(facebook_page_id, created_at);
CREATE INDEX IF NOT EXISTS idx_api_keys_status ON api_keys(status, created_at);
"""


def init_db(db_path: str = None):
    """Create the schema and apply migrations. Idempotent."""
    path = db_path or DB_PATH
    conn = sqlite3.connect(path)
    conn.executescript(SCHEMA_SQL)
    conn.commit()
    conn.close()
    run_migrations(path, verbose=False)
    return path


if __name__ == "__main__":
    target = sys.argv[1] if len(sys.argv) > 1 else None
    print(f"Database initialized at {init_db(target)}")
