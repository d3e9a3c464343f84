"""
Unit tests for campaign targeting, batched sending and resends.
"""

import pytest

from hiro.campaigns.send import (
    OutgoingMessage,
    cancel_campaign,
    get_failed_messages,
    get_target_contacts,
    pause_campaign,
    render_template,
    resend_failed_messages,
    send_message_direct,
    send_messages,
    start_campaign,
)
from hiro.db import models


@pytest.fixture
def template(org):
    return models.create_template({"organization_id": org["id"], "name": "Promo",
                                   "content": "Hi {firstName}, our sale starts today!"})


@pytest.fixture
def make_campaign(org, page, template):
    def _make(**overrides):
        data = {
            "organization_id": org["id"],
            "facebook_page_id": page["id"],
            "name": "Weekend Sale",
            "template_id": template["id"],
            "platform": "MESSENGER",
            "targeting_type": "ALL_CONTACTS",
        }
        data.update(overrides)
        return models.create_campaign(data)
    return _make


def _factory(client):
    return lambda token: client


# ─── TEMPLATES / TARGETING ───────────────────────────────────

def test_render_template():
    contact = {"first_name": "Ana", "last_name": "Lopez"}
    assert render_template("Hi {firstName} {lastName} ({name})", contact) == \
        "Hi Ana Lopez (Ana Lopez)"
    assert render_template("Hi {name}", {"first_name": "Bo", "last_name": None}) == "Hi Bo"


def test_all_contacts_filtered_by_platform(make_campaign, make_contact):
    reachable = make_contact(first_name="Ana")
    make_contact(first_name="NoPsid", messenger_psid=None)
    make_contact(first_name="IgOnly", messenger_psid=None, has_messenger=False,
                 instagram_sid="IGU1", has_instagram=True)

    campaign = make_campaign()
    assert [c["id"] for c in get_target_contacts(campaign["id"])] == [reachable["id"]]

    ig = make_campaign(platform="INSTAGRAM")
    assert [c["first_name"] for c in get_target_contacts(ig["id"])] == ["IgOnly"]


def test_tag_targeting_deduplicates(make_campaign, make_contact):
    both = make_contact(first_name="Both", tags=["vip", "buyer"])
    vip = make_contact(first_name="Vip", tags=["vip"])
    make_contact(first_name="Other", tags=["cold"])

    campaign = make_campaign(targeting_type="TAGS", target_tags=["vip", "buyer"])
    ids = sorted(c["id"] for c in get_target_contacts(campaign["id"]))
    assert ids == sorted([both["id"], vip["id"]])


def test_stage_group_and_specific_targeting(org, pipeline, make_campaign, make_contact):
    stage = pipeline["stages"][2]
    staged = make_contact(pipeline_id=pipeline["id"], stage_id=stage["id"])
    grouped = make_contact()
    make_contact()
    group = models.create_contact_group(org["id"], "Regulars", [grouped["id"]])

    by_stage = make_campaign(targeting_type="PIPELINE_STAGES", target_stage_ids=[stage["id"]])
    assert [c["id"] for c in get_target_contacts(by_stage["id"])] == [staged["id"]]

    by_group = make_campaign(targeting_type="CONTACT_GROUPS", target_group_ids=[group["id"]])
    assert [c["id"] for c in get_target_contacts(by_group["id"])] == [grouped["id"]]

    specific = make_campaign(targeting_type="SPECIFIC_CONTACTS",
                             target_contact_ids=[staged["id"], grouped["id"]])
    assert len(get_target_contacts(specific["id"])) == 2


def test_unknown_campaign(test_db):
    with pytest.raises(LookupError):
        get_target_contacts("cmp_missing")
    with pytest.raises(LookupError):
        start_campaign("cmp_missing")


# ─── START / SEND ────────────────────────────────────────────

def test_start_campaign_sends_rendered_messages(make_campaign, make_contact, fake_graph):
    ana = make_contact(first_name="Ana", messenger_psid="P1")
    make_contact(first_name="Bo", messenger_psid="P2")
    campaign = make_campaign(message_tag="POST_PURCHASE_UPDATE")
    client = fake_graph()

    result = start_campaign(campaign["id"], background=False, client_factory=_factory(client))

    assert result == {"success": True, "queued": 2, "mode": "parallel-batches",
                      "message": "Messages are being sent in parallel batches"}
    sent = {s["recipient_id"]: s for s in client.sent}
    assert sent["P1"]["message"] == "Hi Ana, our sale starts today!"
    assert sent["P1"]["message_tag"] == "POST_PURCHASE_UPDATE"

    final = models.get_campaign(campaign["id"])
    assert final["status"] == "COMPLETED"
    assert (final["total_recipients"], final["sent_count"], final["failed_count"]) == (2, 2, 0)

    rows = models.list_campaign_messages(campaign["id"])
    assert {r["status"] for r in rows} == {"SENT"}
    assert {r["facebook_message_id"] for r in rows} == {"mid.P1", "mid.P2"}

    activity = models.list_activities(ana["id"])[0]
    assert activity["type"] == "CAMPAIGN_SENT"
    assert activity["description"] == "Hi Ana, our sale starts today!"


def test_ai_personalized_content_preferred(make_campaign, make_contact, fake_graph):
    ana = make_contact(first_name="Ana", messenger_psid="P1")
    make_contact(first_name="Bo", messenger_psid="P2")
    campaign = make_campaign(use_ai_personalization=True,
                             ai_messages_map={ana["id"]: "Ana, the blue dress is back!"})
    client = fake_graph()

    start_campaign(campaign["id"], background=False, client_factory=_factory(client))

    sent = {s["recipient_id"]: s["message"] for s in client.sent}
    assert sent == {"P1": "Ana, the blue dress is back!", "P2": "Hi Bo, our sale starts today!"}


def test_no_targets_completes_and_raises(make_campaign):
    campaign = make_campaign()
    with pytest.raises(ValueError, match="No target contacts"):
        start_campaign(campaign["id"], background=False)
    final = models.get_campaign(campaign["id"])
    assert final["status"] == "COMPLETED"
    assert final["total_recipients"] == 0


def test_failed_sends_are_recorded(make_campaign, make_contact, fake_graph):
    make_contact(first_name="Ana", messenger_psid="P1")
    make_contact(first_name="Bo", messenger_psid="P2")
    campaign = make_campaign()
    client = fake_graph(fail_for={"P2"}, send_error="OUTSIDE_24HR_WINDOW")

    start_campaign(campaign["id"], background=False, client_factory=_factory(client))

    final = models.get_campaign(campaign["id"])
    assert (final["sent_count"], final["failed_count"]) == (1, 1)
    failed = get_failed_messages(campaign["id"])
    assert len(failed) == 1
    assert failed[0]["first_name"] == "Bo"
    assert failed[0]["error_message"] == "OUTSIDE_24HR_WINDOW"
    assert failed[0]["failed_at"] is not None


def test_batches_cover_all_messages(make_campaign, make_contact, fake_graph):
    contacts = [make_contact() for _ in range(5)]
    campaign = make_campaign()
    models.update_campaign(campaign["id"], {"status": "SENDING"})
    client = fake_graph()
    outgoing = [OutgoingMessage(campaign["id"], c["id"], "MESSENGER", "hello", "page-token",
                                c["messenger_psid"]) for c in contacts]

    summary = send_messages(outgoing, client_factory=_factory(client), batch_size=2)

    assert summary == {"sent": 5, "failed": 0, "stopped": False}
    assert len(client.sent) == 5
    assert models.get_campaign(campaign["id"])["status"] == "COMPLETED"


def test_paused_campaign_stops_before_next_batch(make_campaign, make_contact, fake_graph):
    contact = make_contact()
    campaign = make_campaign()
    models.update_campaign(campaign["id"], {"status": "SENDING"})
    pause_campaign(campaign["id"])
    client = fake_graph()
    outgoing = [OutgoingMessage(campaign["id"], contact["id"], "MESSENGER", "hello",
                                "page-token", contact["messenger_psid"])]

    summary = send_messages(outgoing, client_factory=_factory(client))

    assert summary["stopped"] is True
    assert client.sent == []
    assert models.get_campaign(campaign["id"])["status"] == "PAUSED"


def test_send_without_recipient_fails(make_campaign, make_contact, fake_graph):
    contact = make_contact()
    campaign = make_campaign()
    client = fake_graph()
    outgoing = OutgoingMessage(campaign["id"], contact["id"], "MESSENGER", "hello",
                               "page-token", None)

    result = send_message_direct(outgoing, client)

    assert result == {"success": False, "error": "No recipient ID (PSID) available for contact"}
    assert client.sent == []
    assert models.get_campaign(campaign["id"])["failed_count"] == 1


def test_client_exception_becomes_failure(make_campaign, make_contact):
    contact = make_contact()
    campaign = make_campaign()

    class Broken:
        def send_messenger_message(self, *args, **kwargs):
            raise ConnectionError("network unreachable")

    outgoing = OutgoingMessage(campaign["id"], contact["id"], "MESSENGER", "hello",
                               "page-token", contact["messenger_psid"])
    assert send_message_direct(outgoing, Broken()) == {"success": False,
                                                       "error": "network unreachable"}


# ─── CONTROL / RESEND ────────────────────────────────────────

def test_pause_and_cancel_rules(make_campaign):
    campaign = make_campaign()
    with pytest.raises(ValueError):
        pause_campaign(campaign["id"])

    assert cancel_campaign(campaign["id"])["status"] == "CANCELLED"
    with pytest.raises(ValueError):
        cancel_campaign(campaign["id"])
    with pytest.raises(LookupError):
        pause_campaign("cmp_missing")


def test_resend_failed_messages(make_campaign, make_contact, fake_graph):
    make_contact(first_name="Ana", messenger_psid="P1")
    make_contact(first_name="Bo", messenger_psid="P2")
    campaign = make_campaign()
    start_campaign(campaign["id"], background=False,
                   client_factory=_factory(fake_graph(fail_for={"P1", "P2"})))
    assert models.get_campaign(campaign["id"])["failed_count"] == 2

    retry_client = fake_graph(fail_for={"P2"})
    result = resend_failed_messages(campaign["id"], client=retry_client)

    assert result == {"resent": 1, "stillFailed": 1}
    final = models.get_campaign(campaign["id"])
    assert (final["sent_count"], final["failed_count"]) == (1, 1)
    statuses = {m["first_name"]: m["status"] for m in models.list_campaign_messages(campaign["id"])}
    assert statuses == {"Ana": "SENT", "Bo": "FAILED"}
