"""
Unit tests for contact sync from Messenger and Instagram conversations.
"""

import pytest

from hiro.db import models
from hiro.facebook import sync
from hiro.facebook.client import FacebookApiError
from hiro.facebook.sync import (
    cancel_sync_job,
    get_latest_sync_job,
    get_sync_job_status,
    graph_time,
    participant_name,
    run_sync_job,
    split_name,
    start_background_sync,
    sync_contacts,
)


def _contacts(org):
    return {c["messenger_psid"] or c["instagram_sid"]: c
            for c in models.list_contacts(org["id"], limit=None)}


# ─── PARSING HELPERS ─────────────────────────────────────────

def test_split_name():
    assert split_name("Jane Mary Doe") == ("Jane", "Mary Doe")
    assert split_name("Cher") == ("Cher", None)
    assert split_name("  ") == (None, None)


def test_participant_name_fallbacks(make_conversation):
    named = make_conversation("P1", "Ana Lopez", ["hi"])
    assert participant_name(named, "P1", "Messenger") == ("Ana", "Lopez")

    anonymous = make_conversation("1234567890", None, ["hi"])
    assert participant_name(anonymous, "1234567890", "Messenger") == ("User 567890", None)
    assert participant_name(anonymous, "1234567890", "Instagram") == ("IG User 567890", None)

    ig = make_conversation("IGU1", None, ["hi"], page_id="IG1", username="ana.styles")
    assert participant_name(ig, "IGU1", "Instagram") == ("ana.styles", None)


def test_graph_time_normalizes_to_naive_utc():
    assert graph_time("2024-05-01T10:00:00+0000") == "2024-05-01T10:00:00"
    assert graph_time("2024-05-01T10:00:00+0200") == "2024-05-01T08:00:00"
    assert graph_time("2024-05-01T10:00:00Z") == "2024-05-01T10:00:00"
    assert graph_time("yesterday") is None
    assert graph_time(None) is None


# ─── MESSENGER ───────────────────────────────────────────────

def test_messenger_sync_creates_contacts(org, page, fake_graph, fake_gateway, make_conversation):
    client = fake_graph(messenger=[
        make_conversation("P1", "Ana Lopez", ["How much is the dress?", "It is 500"]),
        make_conversation("P2", "Bo", ["hello"]),
    ])
    gateway = fake_gateway(summary="Asked about the dress price.")

    result = sync_contacts(page["id"], client=client, gateway=gateway)

    assert result.success and result.synced == 2 and result.failed == 0
    contacts = _contacts(org)
    ana = contacts["P1"]
    assert (ana["first_name"], ana["last_name"]) == ("Ana", "Lopez")
    assert ana["has_messenger"] == 1
    assert ana["ai_context"] == "Asked about the dress price."
    assert ana["last_interaction"] == "2024-05-01T10:00:00"
    assert len(gateway.summarize_calls) == 2
    assert models.get_facebook_page(page["id"])["last_synced_at"] is not None


def test_messages_are_stored_once(org, page, fake_graph, fake_gateway, make_conversation):
    convo = make_conversation("P1", "Ana", ["hi", "hello, how can we help?", "price?"])
    client = fake_graph(messenger=[convo])

    sync_contacts(page["id"], client=client, gateway=fake_gateway())
    sync_contacts(page["id"], client=client, gateway=fake_gateway())

    contact = _contacts(org)["P1"]
    messages = models.list_messages(contact["id"])
    assert [m["content"] for m in messages] == ["hi", "hello, how can we help?", "price?"]
    assert [m["status"] for m in messages] == ["RECEIVED", "SENT", "RECEIVED"]
    assert messages[1]["is_from_business"] == 1
    assert messages[0]["platform"] == "MESSENGER"
    assert len(models.list_contacts(org["id"])) == 1


def test_no_summary_leaves_context_untouched(org, page, fake_graph, fake_gateway,
                                             make_conversation):
    client = fake_graph(messenger=[make_conversation("P1", "Ana", ["hi"])])
    sync_contacts(page["id"], client=client, gateway=fake_gateway(summary="First summary"))
    sync_contacts(page["id"], client=client, gateway=fake_gateway(summary=None))
    assert _contacts(org)["P1"]["ai_context"] == "First summary"


def test_summary_errors_do_not_fail_contact(org, page, fake_graph, fake_gateway,
                                            make_conversation):
    client = fake_graph(messenger=[make_conversation("P1", "Ana", ["hi"])])
    result = sync_contacts(page["id"], client=client,
                           gateway=fake_gateway(error=RuntimeError("LLM down")))
    assert result.synced == 1
    assert _contacts(org)["P1"]["ai_context"] is None


def test_analyze_false_skips_summaries(org, page, fake_graph, fake_gateway, make_conversation):
    gateway = fake_gateway()
    client = fake_graph(messenger=[make_conversation("P1", "Ana", ["hi"])])
    sync_contacts(page["id"], client=client, gateway=gateway, analyze=False)
    assert gateway.summarize_calls == []


def test_per_contact_failure_is_counted(org, page, fake_graph, fake_gateway, make_conversation,
                                        monkeypatch):
    real = models.upsert_messenger_contact

    def flaky(page_id, org_id, psid, data):
        if psid == "P2":
            raise ValueError("constraint failed")
        return real(page_id, org_id, psid, data)

    monkeypatch.setattr(models, "upsert_messenger_contact", flaky)
    client = fake_graph(messenger=[
        make_conversation("P1", "Ana", ["hi"]),
        make_conversation("P2", "Bo", ["hi"]),
        make_conversation("P3", "Cy", ["hi"]),
    ])

    result = sync_contacts(page["id"], client=client, gateway=fake_gateway())

    assert (result.synced, result.failed) == (2, 1)
    assert result.errors == [{"platform": "Messenger", "id": "P2",
                              "error": "constraint failed", "code": None}]


def test_unknown_page(test_db):
    with pytest.raises(LookupError):
        sync_contacts("fbp_missing")


# ─── INSTAGRAM ───────────────────────────────────────────────

def test_instagram_sync_merges_with_messenger_contact(org, page, fake_graph, fake_gateway,
                                                      make_conversation, make_contact):
    existing = make_contact(first_name="Ana", messenger_psid="U1")
    client = fake_graph(instagram=[
        make_conversation("U1", "Ana Lopez", ["hi from ig"], page_id="IG1"),
        make_conversation("U2", None, ["new here"], page_id="IG1", username="bo.shop"),
    ])

    result = sync_contacts(page["id"], client=client, gateway=fake_gateway())

    assert result.synced == 2
    merged = models.get_contact(existing["id"])
    assert merged["instagram_sid"] == "U1"
    assert merged["has_instagram"] == 1
    assert merged["has_messenger"] == 1

    new = models.find_contact_by_instagram(page["id"], "U2")
    assert new["first_name"] == "bo.shop"
    assert new["messenger_psid"] is None
    assert models.list_messages(new["id"])[0]["platform"] == "INSTAGRAM"


def test_instagram_skipped_without_linked_account(org, fake_graph, fake_gateway,
                                                  make_conversation):
    page = models.create_facebook_page({
        "organization_id": org["id"], "page_id": "PAGE2", "page_name": "No IG",
        "page_access_token": "tok",
    })
    client = fake_graph(instagram=[make_conversation("U1", "Ana", ["hi"], page_id="IG1")])
    assert sync_contacts(page["id"], client=client, gateway=fake_gateway()).synced == 0


# ─── TOKEN EXPIRY / JOBS ─────────────────────────────────────

class ExpiredTokenClient:
    def get_messenger_conversations(self, page_id, limit=100):
        raise FacebookApiError(190, "OAuthException", "Error validating access token")

    def get_instagram_conversations(self, ig_account_id, limit=100):
        raise FacebookApiError(190, "OAuthException", "Error validating access token")


def test_token_expiry_flags_result(page, fake_gateway):
    result = sync_contacts(page["id"], client=ExpiredTokenClient(), gateway=fake_gateway())

    assert result.token_expired is True
    assert result.synced == 0 and result.failed == 0
    assert result.errors[0]["code"] == 190
    assert models.get_facebook_page(page["id"])["last_synced_at"] is None


def test_run_sync_job_records_failure_on_token_expiry(page, fake_gateway):
    job = models.create_sync_job(page["id"])
    run_sync_job(job["id"], page["id"], client=ExpiredTokenClient(), gateway=fake_gateway())

    job = get_sync_job_status(job["id"])
    assert job["status"] == "FAILED"
    assert job["token_expired"] == 1
    assert job["errors"][0]["code"] == 190
    assert job["completed_at"] is not None


def test_background_sync_inline(page, fake_graph, fake_gateway, make_conversation):
    client = fake_graph(messenger=[make_conversation("P1", "Ana", ["hi"])])
    started = start_background_sync(page["id"], client=client, gateway=fake_gateway(),
                                    background=False)

    assert started["success"] is True
    job = get_sync_job_status(started["job_id"])
    assert job["status"] == "COMPLETED"
    assert (job["synced_contacts"], job["failed_contacts"], job["total_contacts"]) == (1, 0, 1)
    assert job["errors"] is None
    assert get_latest_sync_job(page["id"])["id"] == job["id"]


def test_background_sync_reuses_active_job(page):
    active = models.create_sync_job(page["id"], status="IN_PROGRESS")
    started = start_background_sync(page["id"], background=False)
    assert started == {"success": True, "job_id": active["id"],
                       "message": "Sync already in progress"}


def test_background_sync_unknown_page(test_db):
    with pytest.raises(LookupError):
        start_background_sync("fbp_missing")


def test_cancel_mid_run(page, fake_graph, fake_gateway, make_conversation):
    job = models.create_sync_job(page["id"])

    class CancellingGateway(fake_gateway):
        def summarize_conversation(self, messages, retries=2):
            cancel_sync_job(job["id"])
            return super().summarize_conversation(messages, retries)

    client = fake_graph(messenger=[
        make_conversation("P1", "Ana", ["hi"]),
        make_conversation("P2", "Bo", ["hi"]),
    ])
    result = run_sync_job(job["id"], page["id"], client=client, gateway=CancellingGateway())

    assert result.cancelled is True
    assert result.synced == 1
    assert get_sync_job_status(job["id"])["status"] == "CANCELLED"


def test_cancel_during_last_conversation_keeps_cancelled(page, fake_graph, fake_gateway,
                                                         make_conversation):
    job = models.create_sync_job(page["id"])

    class CancellingGateway(fake_gateway):
        def summarize_conversation(self, messages, retries=2):
            cancel_sync_job(job["id"])
            return super().summarize_conversation(messages, retries)

    client = fake_graph(messenger=[make_conversation("P1", "Ana", ["hi"])])
    result = run_sync_job(job["id"], page["id"], client=client, gateway=CancellingGateway())

    assert result.cancelled is True
    final = get_sync_job_status(job["id"])
    assert final["status"] == "CANCELLED"
    # Progress made before the cancel is still recorded
    assert final["synced_contacts"] == 1


def test_status_write_does_not_replace_cancelled(page):
    job = models.create_sync_job(page["id"])
    cancel_sync_job(job["id"])

    updated = models.update_sync_job(job["id"], {"status": "IN_PROGRESS", "synced_contacts": 3},
                                     keep_cancelled=True)

    assert updated["status"] == "CANCELLED"
    assert updated["synced_contacts"] == 3
    assert models.update_sync_job(job["id"], {"status": "FAILED"})["status"] == "FAILED"


def test_job_cancelled_before_start_does_not_run(page, fake_graph, fake_gateway,
                                                 make_conversation):
    job = models.create_sync_job(page["id"])
    cancel_sync_job(job["id"])
    gateway = fake_gateway()
    client = fake_graph(messenger=[make_conversation("P1", "Ana", ["hi"])])

    assert run_sync_job(job["id"], page["id"], client=client, gateway=gateway) is None
    assert gateway.summarize_calls == []
    assert get_sync_job_status(job["id"])["status"] == "CANCELLED"


def test_cancel_sync_job_errors(page):
    with pytest.raises(LookupError):
        cancel_sync_job("sync_missing")
    done = models.create_sync_job(page["id"], status="COMPLETED")
    with pytest.raises(ValueError):
        cancel_sync_job(done["id"])


def test_unexpected_error_fails_job(page, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(sync, "sync_contacts", boom)
    job = models.create_sync_job(page["id"])
    assert run_sync_job(job["id"], page["id"]) is None

    job = get_sync_job_status(job["id"])
    assert job["status"] == "FAILED"
    assert job["errors"] == [{"error": "database is locked"}]
