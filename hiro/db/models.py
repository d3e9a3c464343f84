"""
Hiro - Data Access Layer
CRUD operations for organizations, pages, pipelines, contacts, messages,
campaigns, sync jobs and API keys. Every function returns plain dicts with
JSON columns already decoded.
"""

import json
from typing import Optional

from hiro.db.connection import get_db, get_db_conn, gen_id, utcnow, row_to_dict, _safe_update

CONTACT_JSON = ("tags",)
CAMPAIGN_JSON = ("target_tags", "target_stage_ids", "target_contact_ids",
                 "target_group_ids", "ai_messages_map")
ACTIVITY_JSON = ("metadata",)
SYNC_JOB_JSON = ("errors",)


def _rows(rows, json_fields=()) -> list:
    return [row_to_dict(r, json_fields) for r in rows]


def _placeholders(values) -> str:
    return ",".join("?" for _ in values)


# ─── ORGANIZATIONS ─────────────────────────────────────────────

def create_organization(data: dict) -> dict:
    oid = data.get("id", gen_id("org"))
    now = utcnow()
    with get_db_conn() as conn:
        conn.execute(
            "INSERT INTO organizations (id, name, created_at, updated_at) VALUES (?,?,?,?)",
            (oid, data["name"], now, now),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM organizations WHERE id=?", (oid,)).fetchone()
    return dict(row)


def get_organization(org_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM organizations WHERE id=?", (org_id,)).fetchone()
    return dict(row) if row else None


# ─── FACEBOOK PAGES ────────────────────────────────────────────

def create_facebook_page(data: dict) -> dict:
    fid = data.get("id", gen_id("fbp"))
    now = utcnow()
    with get_db_conn() as conn:
        conn.execute("""
            INSERT INTO facebook_pages (id, organization_id, page_id, page_name,
                page_access_token, instagram_account_id, is_active, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?)
        """, (
            fid, data["organization_id"], data["page_id"], data.get("page_name"),
            data["page_access_token"], data.get("instagram_account_id"),
            int(data.get("is_active", 1)), now, now,
        ))
        conn.commit()
        row = conn.execute("SELECT * FROM facebook_pages WHERE id=?", (fid,)).fetchone()
    return dict(row)


def get_facebook_page(page_db_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM facebook_pages WHERE id=?", (page_db_id,)).fetchone()
    return dict(row) if row else None


def list_facebook_pages(organization_id: str = None, active_only: bool = True) -> list:
    query = "SELECT * FROM facebook_pages WHERE 1=1"
    params = []
    if organization_id:
        query += " AND organization_id=?"
        params.append(organization_id)
    if active_only:
        query += " AND is_active=1"
    query += " ORDER BY created_at"
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]


FACEBOOK_PAGE_UPDATABLE = {"page_name", "page_access_token", "instagram_account_id",
                           "is_active", "last_synced_at", "updated_at"}


def update_facebook_page(page_db_id: str, data: dict) -> Optional[dict]:
    data = {**data, "updated_at": utcnow()}
    return _safe_update("facebook_pages", page_db_id, data, FACEBOOK_PAGE_UPDATABLE)


# ─── PIPELINES & STAGES ────────────────────────────────────────

def create_pipeline(data: dict, stages: list = None) -> dict:
    """Create a pipeline and (optionally) its stages in one transaction."""
    pid = data.get("id", gen_id("pip"))
    now = utcnow()
    with get_db_conn() as conn:
        conn.execute("""
            INSERT INTO pipelines (id, organization_id, name, description, color, icon,
                created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?)
        """, (
            pid, data["organization_id"], data["name"], data.get("description"),
            data.get("color", "#3b82f6"), data.get("icon"), now, now,
        ))
        for i, stage in enumerate(stages or []):
            conn.execute("""
                INSERT INTO pipeline_stages (id, pipeline_id, name, description, color, type,
                    stage_order, lead_score_min, lead_score_max, created_at)
                VALUES (?,?,?,?,?,?,?,?,?,?)
            """, (
                stage.get("id", gen_id("stg")), pid, stage["name"], stage.get("description"),
                stage.get("color", "#3b82f6"), stage.get("type", "IN_PROGRESS"),
                stage.get("order", i), stage.get("lead_score_min", 0),
                stage.get("lead_score_max", 100), now,
            ))
        conn.commit()
    return get_pipeline(pid)


def get_pipeline(pipeline_id: str, with_stages: bool = True) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM pipelines WHERE id=?", (pipeline_id,)).fetchone()
    if not row:
        return None
    pipeline = dict(row)
    if with_stages:
        pipeline["stages"] = list_stages(pipeline_id)
    return pipeline


def list_pipelines(organization_id: str, include_archived: bool = False) -> list:
    query = "SELECT * FROM pipelines WHERE organization_id=?"
    if not include_archived:
        query += " AND is_archived=0"
    query += " ORDER BY created_at"
    with get_db_conn() as conn:
        rows = conn.execute(query, (organization_id,)).fetchall()
    return [dict(r) for r in rows]


def list_stages(pipeline_id: str) -> list:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM pipeline_stages WHERE pipeline_id=? ORDER BY stage_order, created_at",
            (pipeline_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def get_stage(stage_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM pipeline_stages WHERE id=?", (stage_id,)).fetchone()
    return dict(row) if row else None


STAGE_UPDATABLE = {"name", "description", "color", "type", "stage_order",
                   "lead_score_min", "lead_score_max"}


def update_stage(stage_id: str, data: dict) -> Optional[dict]:
    return _safe_update("pipeline_stages", stage_id, data, STAGE_UPDATABLE)


def set_stage_ranges(ranges: list) -> int:
    """Write [{stage_id, lead_score_min, lead_score_max}] in a single transaction."""
    with get_db_conn() as conn:
        for r in ranges:
            conn.execute(
                "UPDATE pipeline_stages SET lead_score_min=?, lead_score_max=? WHERE id=?",
                (r["lead_score_min"], r["lead_score_max"], r["stage_id"]),
            )
        conn.commit()
    return len(ranges)


def count_contacts_by_stage(pipeline_id: str) -> dict:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT stage_id, COUNT(*) AS n FROM contacts WHERE pipeline_id=? GROUP BY stage_id",
            (pipeline_id,),
        ).fetchall()
    return {r["stage_id"]: r["n"] for r in rows}


# ─── CONTACTS ──────────────────────────────────────────────────

def create_contact(data: dict) -> dict:
    cid = data.get("id", gen_id("con"))
    now = utcnow()
    with get_db_conn() as conn:
        conn.execute("""
            INSERT INTO contacts (id, organization_id, facebook_page_id, messenger_psid,
                instagram_sid, first_name, last_name, has_messenger, has_instagram, tags,
                pipeline_id, stage_id, stage_entered_at, lead_score, lead_status,
                ai_context, ai_context_updated_at, last_interaction, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            cid, data["organization_id"], data.get("facebook_page_id"),
            data.get("messenger_psid"), data.get("instagram_sid"),
            data["first_name"], data.get("last_name"),
            int(bool(data.get("has_messenger", False))),
            int(bool(data.get("has_instagram", False))),
            json.dumps(data.get("tags", [])),
            data.get("pipeline_id"), data.get("stage_id"), data.get("stage_entered_at"),
            data.get("lead_score", 0), data.get("lead_status", "NEW"),
            data.get("ai_context"), data.get("ai_context_updated_at"),
            data.get("last_interaction"), now, now,
        ))
        conn.commit()
        row = conn.execute("SELECT * FROM contacts WHERE id=?", (cid,)).fetchone()
    return row_to_dict(row, CONTACT_JSON)


def get_contact(contact_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM contacts WHERE id=?", (contact_id,)).fetchone()
    return row_to_dict(row, CONTACT_JSON)


def get_contacts_by_ids(contact_ids: list) -> list:
    if not contact_ids:
        return []
    with get_db_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM contacts WHERE id IN ({_placeholders(contact_ids)})",
            list(contact_ids),
        ).fetchall()
    return _rows(rows, CONTACT_JSON)


def find_contact_by_psid(facebook_page_id: str, psid: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute(
            "SELECT * FROM contacts WHERE facebook_page_id=? AND messenger_psid=?",
            (facebook_page_id, psid),
        ).fetchone()
    return row_to_dict(row, CONTACT_JSON)


def find_contact_by_instagram(facebook_page_id: str, sender_id: str) -> Optional[dict]:
    """Match a contact on the page by Instagram id or, failing that, Messenger PSID."""
    with get_db_conn() as conn:
        row = conn.execute("""
            SELECT * FROM contacts
            WHERE facebook_page_id=? AND (instagram_sid=? OR messenger_psid=?)
            ORDER BY CASE WHEN instagram_sid=? THEN 0 ELSE 1 END
            LIMIT 1
        """, (facebook_page_id, sender_id, sender_id, sender_id)).fetchone()
    return row_to_dict(row, CONTACT_JSON)


def list_contacts(organization_id: str, facebook_page_id: str = None, pipeline_id: str = None,
                  stage_id: str = None, lead_status: str = None, min_score: int = None,
                  max_score: int = None, tag: str = None, search: str = None,
                  has_ai_context: bool = None, limit: int = 100, offset: int = 0) -> list:
    query = "SELECT * FROM contacts WHERE organization_id=?"
    params = [organization_id]
    if facebook_page_id:
        query += " AND facebook_page_id=?"
        params.append(facebook_page_id)
    if pipeline_id:
        query += " AND pipeline_id=?"
        params.append(pipeline_id)
    if stage_id:
        query += " AND stage_id=?"
        params.append(stage_id)
    if lead_status:
        query += " AND lead_status=?"
        params.append(lead_status)
    if min_score is not None:
        query += " AND lead_score>=?"
        params.append(min_score)
    if max_score is not None:
        query += " AND lead_score<=?"
        params.append(max_score)
    if tag:
        query += " AND EXISTS (SELECT 1 FROM json_each(contacts.tags) WHERE json_each.value=?)"
        params.append(tag)
    if search:
        query += " AND (first_name LIKE ? OR last_name LIKE ?)"
        params.extend([f"%{search}%", f"%{search}%"])
    if has_ai_context is True:
        query += " AND ai_context IS NOT NULL"
    elif has_ai_context is False:
        query += " AND ai_context IS NULL"
    query += " ORDER BY last_interaction DESC, created_at DESC"
    if limit is not None:
        query += " LIMIT ? OFFSET ?"
        params.extend([limit, offset])
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return _rows(rows, CONTACT_JSON)


def list_contacts_for_analysis(organization_id: str = None, facebook_page_id: str = None,
                               without_context: bool = True, limit: int = None) -> list:
    """Contacts across organizations, optionally only those lacking ai_context."""
    query = "SELECT * FROM contacts WHERE 1=1"
    params = []
    if organization_id:
        query += " AND organization_id=?"
        params.append(organization_id)
    if facebook_page_id:
        query += " AND facebook_page_id=?"
        params.append(facebook_page_id)
    if without_context:
        query += " AND ai_context IS NULL"
    query += " ORDER BY created_at"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return _rows(rows, CONTACT_JSON)


def list_contacts_in_pipeline(pipeline_id: str) -> list:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM contacts WHERE pipeline_id=? ORDER BY created_at", (pipeline_id,)
        ).fetchall()
    return _rows(rows, CONTACT_JSON)


CONTACT_UPDATABLE = {"first_name", "last_name", "messenger_psid", "instagram_sid",
                     "has_messenger", "has_instagram", "tags", "pipeline_id", "stage_id",
                     "stage_entered_at", "lead_score", "lead_status", "ai_context",
                     "ai_context_updated_at", "last_interaction", "updated_at"}


def update_contact(contact_id: str, data: dict) -> Optional[dict]:
    data = dict(data)
    if "tags" in data and not isinstance(data["tags"], str):
        data["tags"] = json.dumps(data["tags"])
    for flag in ("has_messenger", "has_instagram"):
        if flag in data:
            data[flag] = int(bool(data[flag]))
    data["updated_at"] = utcnow()
    row = _safe_update("contacts", contact_id, data, CONTACT_UPDATABLE)
    return row_to_dict(row, CONTACT_JSON) if row else None


def upsert_messenger_contact(facebook_page_id: str, organization_id: str, psid: str,
                             data: dict) -> dict:
    """Create or update the contact keyed by (messenger_psid, facebook_page_id)."""
    existing = find_contact_by_psid(facebook_page_id, psid)
    if existing:
        return update_contact(existing["id"], data)
    return create_contact({
        **data,
        "organization_id": organization_id,
        "facebook_page_id": facebook_page_id,
        "messenger_psid": psid,
        "has_messenger": True,
    })


# ─── GROUPS ────────────────────────────────────────────────────

def create_contact_group(organization_id: str, name: str, contact_ids: list = None) -> dict:
    gid = gen_id("grp")
    with get_db_conn() as conn:
        conn.execute(
            "INSERT INTO contact_groups (id, organization_id, name, created_at) VALUES (?,?,?,?)",
            (gid, organization_id, name, utcnow()),
        )
        for cid in contact_ids or []:
            conn.execute(
                "INSERT OR IGNORE INTO contact_group_members (group_id, contact_id) VALUES (?,?)",
                (gid, cid),
            )
        conn.commit()
        row = conn.execute("SELECT * FROM contact_groups WHERE id=?", (gid,)).fetchone()
    return dict(row)


def get_group_contacts(group_ids: list) -> list:
    if not group_ids:
        return []
    with get_db_conn() as conn:
        rows = conn.execute(f"""
            SELECT c.* FROM contacts c
            JOIN contact_group_members m ON m.contact_id = c.id
            WHERE m.group_id IN ({_placeholders(group_ids)})
        """, list(group_ids)).fetchall()
    return _rows(rows, CONTACT_JSON)


# ─── MESSAGES ──────────────────────────────────────────────────

def create_message(data: dict) -> dict:
    mid = data.get("id", gen_id("msg"))
    with get_db_conn() as conn:
        conn.execute("""
            INSERT INTO messages (id, contact_id, campaign_id, content, platform, status,
                message_tag, facebook_message_id, sender_name, is_from_business,
                sent_at, failed_at, error_message, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            mid, data["contact_id"], data.get("campaign_id"), data["content"],
            data.get("platform", "MESSENGER"), data.get("status", "SENT"),
            data.get("message_tag"), data.get("facebook_message_id"),
            data.get("sender_name"), int(bool(data.get("is_from_business", False))),
            data.get("sent_at"), data.get("failed_at"), data.get("error_message"),
            data.get("created_at", utcnow()),
        ))
        conn.commit()
        row = conn.execute("SELECT * FROM messages WHERE id=?", (mid,)).fetchone()
    return dict(row)


def message_exists(facebook_message_id: str) -> bool:
    with get_db_conn() as conn:
        row = conn.execute(
            "SELECT 1 FROM messages WHERE facebook_message_id=? LIMIT 1", (facebook_message_id,)
        ).fetchone()
    return row is not None


def list_messages(contact_id: str, limit: int = None) -> list:
    """Messages for a contact, oldest first."""
    query = "SELECT * FROM messages WHERE contact_id=? ORDER BY created_at"
    params = [contact_id]
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]


def list_campaign_messages(campaign_id: str, status: str = None) -> list:
    query = """
        SELECT m.*, c.first_name, c.last_name, c.messenger_psid, c.instagram_sid
        FROM messages m JOIN contacts c ON c.id = m.contact_id
        WHERE m.campaign_id=?
    """
    params = [campaign_id]
    if status:
        query += " AND m.status=?"
        params.append(status)
    query += " ORDER BY m.created_at"
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]


MESSAGE_UPDATABLE = {"status", "facebook_message_id", "sent_at", "failed_at", "error_message"}


def update_message(message_id: str, data: dict) -> Optional[dict]:
    return _safe_update("messages", message_id, data, MESSAGE_UPDATABLE)


# ─── ACTIVITIES ────────────────────────────────────────────────

def create_activity(data: dict) -> dict:
    aid = gen_id("act")
    with get_db_conn() as conn:
        conn.execute("""
            INSERT INTO contact_activities (id, contact_id, type, title, description,
                from_stage_id, to_stage_id, user_id, metadata, created_at)
            VALUES (?,?,?,?,?,?,?,?,?,?)
        """, (
            aid, data["contact_id"], data["type"], data["title"], data.get("description"),
            data.get("from_stage_id"), data.get("to_stage_id"), data.get("user_id"),
            json.dumps(data.get("metadata", {})), utcnow(),
        ))
        conn.commit()
        row = conn.execute("SELECT * FROM contact_activities WHERE id=?", (aid,)).fetchone()
    return row_to_dict(row, ACTIVITY_JSON)


def list_activities(contact_id: str, limit: int = 50) -> list:
    with get_db_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM contact_activities WHERE contact_id=? "
            "ORDER BY created_at DESC LIMIT ?",
            (contact_id, limit),
        ).fetchall()
    return _rows(rows, ACTIVITY_JSON)


# ─── TEMPLATES ─────────────────────────────────────────────────

def create_template(data: dict) -> dict:
    tid = data.get("id", gen_id("tpl"))
    with get_db_conn() as conn:
        conn.execute(
            "INSERT INTO templates (id, organization_id, name, content, created_at) "
            "VALUES (?,?,?,?,?)",
            (tid, data["organization_id"], data["name"], data["content"], utcnow()),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM templates WHERE id=?", (tid,)).fetchone()
    return dict(row)


def get_template(template_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM templates WHERE id=?", (template_id,)).fetchone()
    return dict(row) if row else None


# ─── CAMPAIGNS ─────────────────────────────────────────────────

def create_campaign(data: dict) -> dict:
    cid = data.get("id", gen_id("cmp"))
    now = utcnow()
    ai_map = data.get("ai_messages_map")
    with get_db_conn() as conn:
        conn.execute("""
            INSERT INTO campaigns (id, organization_id, facebook_page_id, template_id, name,
                platform, message_tag, status, targeting_type, target_tags, target_stage_ids,
                target_contact_ids, target_group_ids, use_ai_personalization, ai_messages_map,
                created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            cid, data["organization_id"], data["facebook_page_id"], data.get("template_id"),
            data["name"], data.get("platform", "MESSENGER"), data.get("message_tag"),
            data.get("status", "DRAFT"), data.get("targeting_type", "ALL_CONTACTS"),
            json.dumps(data.get("target_tags", [])),
            json.dumps(data.get("target_stage_ids", [])),
            json.dumps(data.get("target_contact_ids", [])),
            json.dumps(data.get("target_group_ids", [])),
            int(bool(data.get("use_ai_personalization", False))),
            json.dumps(ai_map) if ai_map is not None else None,
            now, now,
        ))
        conn.commit()
    return get_campaign(cid)


def get_campaign(campaign_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM campaigns WHERE id=?", (campaign_id,)).fetchone()
    return row_to_dict(row, CAMPAIGN_JSON)


def get_campaign_status(campaign_id: str) -> Optional[str]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT status FROM campaigns WHERE id=?", (campaign_id,)).fetchone()
    return row["status"] if row else None


def list_campaigns(organization_id: str, status: str = None, limit: int = 100) -> list:
    query = "SELECT * FROM campaigns WHERE organization_id=?"
    params = [organization_id]
    if status:
        query += " AND status=?"
        params.append(status)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return _rows(rows, CAMPAIGN_JSON)


CAMPAIGN_UPDATABLE = {"name", "status", "message_tag", "template_id", "ai_messages_map",
                      "use_ai_personalization", "total_recipients", "sent_count",
                      "failed_count", "started_at", "completed_at", "updated_at"}


def update_campaign(campaign_id: str, data: dict) -> Optional[dict]:
    data = dict(data)
    if "ai_messages_map" in data and not isinstance(data["ai_messages_map"], (str, type(None))):
        data["ai_messages_map"] = json.dumps(data["ai_messages_map"])
    data["updated_at"] = utcnow()
    row = _safe_update("campaigns", campaign_id, data, CAMPAIGN_UPDATABLE)
    return row_to_dict(row, CAMPAIGN_JSON) if row else None


def increment_campaign_counts(campaign_id: str, sent: int = 0, failed: int = 0):
    """Atomically adjust sent/failed counters (deltas may be negative)."""
    with get_db_conn() as conn:
        conn.execute(
            "UPDATE campaigns SET sent_count = sent_count + ?, failed_count = failed_count + ?, "
            "updated_at=? WHERE id=?",
            (sent, failed, utcnow(), campaign_id),
        )
        conn.commit()


# ─── SYNC JOBS ─────────────────────────────────────────────────

def create_sync_job(facebook_page_id: str, status: str = "PENDING") -> dict:
    jid = gen_id("sync")
    with get_db_conn() as conn:
        conn.execute(
            "INSERT INTO sync_jobs (id, facebook_page_id, status, created_at) VALUES (?,?,?,?)",
            (jid, facebook_page_id, status, utcnow()),
        )
        conn.commit()
    return get_sync_job(jid)


def get_sync_job(job_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM sync_jobs WHERE id=?", (job_id,)).fetchone()
    return row_to_dict(row, SYNC_JOB_JSON)


def get_sync_job_status_value(job_id: str) -> Optional[str]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT status FROM sync_jobs WHERE id=?", (job_id,)).fetchone()
    return row["status"] if row else None


def find_active_sync_job(facebook_page_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("""
            SELECT * FROM sync_jobs
            WHERE facebook_page_id=? AND status IN ('PENDING', 'IN_PROGRESS')
            ORDER BY created_at DESC LIMIT 1
        """, (facebook_page_id,)).fetchone()
    return row_to_dict(row, SYNC_JOB_JSON)


def get_latest_sync_job(facebook_page_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute(
            "SELECT * FROM sync_jobs WHERE facebook_page_id=? ORDER BY created_at DESC LIMIT 1",
            (facebook_page_id,),
        ).fetchone()
    return row_to_dict(row, SYNC_JOB_JSON)


SYNC_JOB_UPDATABLE = {"status", "total_contacts", "synced_contacts", "failed_contacts",
                      "errors", "token_expired", "started_at", "completed_at"}


def update_sync_job(job_id: str, data: dict, keep_cancelled: bool = False) -> Optional[dict]:
    """Update a sync job row.

    With keep_cancelled, a status change is skipped when the job is already
    CANCELLED; the other fields are still written.
    """
    data = dict(data)
    if "errors" in data and not isinstance(data["errors"], (str, type(None))):
        data["errors"] = json.dumps(data["errors"])
    if "token_expired" in data:
        data["token_expired"] = int(bool(data["token_expired"]))
    status = data.pop("status", None) if keep_cancelled else None

    row = _safe_update("sync_jobs", job_id, data, SYNC_JOB_UPDATABLE)
    if status:
        with get_db_conn() as conn:
            conn.execute(
                "UPDATE sync_jobs SET status=? WHERE id=? AND status != 'CANCELLED'",
                (status, job_id),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM sync_jobs WHERE id=?", (job_id,)).fetchone()
    return row_to_dict(row, SYNC_JOB_JSON) if row else None


# ─── API KEYS ──────────────────────────────────────────────────

def create_api_key(name: str, encrypted_key: str, status: str = "ACTIVE") -> dict:
    kid = gen_id("key")
    with get_db_conn() as conn:
        conn.execute(
            "INSERT INTO api_keys (id, name, encrypted_key, status, created_at) VALUES (?,?,?,?,?)",
            (kid, name, encrypted_key, status, utcnow()),
        )
        conn.commit()
        row = conn.execute("SELECT * FROM api_keys WHERE id=?", (kid,)).fetchone()
    return dict(row)


def get_api_key(key_id: str) -> Optional[dict]:
    with get_db_conn() as conn:
        row = conn.execute("SELECT * FROM api_keys WHERE id=?", (key_id,)).fetchone()
    return dict(row) if row else None


def list_api_keys(status: str = None) -> list:
    query = "SELECT * FROM api_keys"
    params = []
    if status:
        query += " WHERE status=?"
        params.append(status)
    query += " ORDER BY created_at, rowid"
    with get_db_conn() as conn:
        rows = conn.execute(query, params).fetchall()
    return [dict(r) for r in rows]


API_KEY_UPDATABLE = {"name", "status", "rate_limited_at", "last_used_at", "last_success_at",
                     "consecutive_failures", "total_requests", "failed_requests"}


def update_api_key(key_id: str, data: dict) -> Optional[dict]:
    return _safe_update("api_keys", key_id, data, API_KEY_UPDATABLE)


def bump_api_key_counters(key_id: str, total: int = 0, failed: int = 0,
                          consecutive: Optional[int] = None, extra: dict = None) -> Optional[dict]:
    """Increment request counters; consecutive=None increments it, an int resets it."""
    sets = ["total_requests = total_requests + ?", "failed_requests = failed_requests + ?"]
    params = [total, failed]
    if consecutive is None:
        sets.append("consecutive_failures = consecutive_failures + 1")
    else:
        sets.append("consecutive_failures = ?")
        params.append(consecutive)
    for k, v in (extra or {}).items():
        if k in API_KEY_UPDATABLE:
            sets.append(f"{k} = ?")
            params.append(v)
    params.append(key_id)
    with get_db_conn() as conn:
        conn.execute(f"UPDATE api_keys SET {', '.join(sets)} WHERE id=?", params)
        conn.commit()
        row = conn.execute("SELECT * FROM api_keys WHERE id=?", (key_id,)).fetchone()
    return dict(row) if row else None


def delete_api_key(key_id: str) -> bool:
    with get_db_conn() as conn:
        cur = conn.execute("DELETE FROM api_keys WHERE id=?", (key_id,))
        conn.commit()
    return cur.rowcount > 0


# ─── STATS ─────────────────────────────────────────────────────

def table_counts() -> dict:
    tables = ["organizations", "facebook_pages", "contacts", "pipelines", "campaigns",
              "messages", "sync_jobs", "api_keys"]
    conn = get_db()
    try:
        return {t: conn.execute(f"SELECT COUNT(*) FROM {t}").fetchone()[0] for t in tables}
    finally:
        conn.close()
