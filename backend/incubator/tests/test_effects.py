import json
import uuid

import pytest
from prometheus_client import REGISTRY

from incubator import audit, effects, notify, pubsub
from incubator.dispatch import dispatch_effects
from incubator.services import requests
from incubator.tests.conftest import make_team, make_user, request_data

real_publish = pubsub.publish


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


def test_notify_effect_drops_blank_and_duplicate_recipients():
    built = effects.notify(["a@example.com", None, "", "a@example.com", "b@example.com"], "request_submitted", {})
    assert len(built) == 1
    assert built[0].recipients == ("a@example.com", "b@example.com")
    assert effects.notify([None], "request_submitted", {}) == []


def test_render_template_fills_missing_values_and_links_request():
    request_id = uuid.uuid4()
    subject, body = notify.render_template(
        "request_declined",
        {"request_number": "REQ-2026-0001", "title": "Chairs", "request_id": request_id},
    )
    assert subject == "Material Request Declined"
    assert body.startswith("REQ-2026-0001: Chairs was declined.")
    assert body.endswith(f"/requests/{request_id}")
    with pytest.raises(ValueError):
        notify.render_template("no_such_template", {})


@pytest.mark.asyncio
async def test_dispatch_delivers_email_and_events(published_events):
    team_id = uuid.uuid4()
    batch = effects.notify(
        ["lead@example.com"], "request_submitted", {"request_number": "REQ-2026-0002", "title": "Desks"}
    ) + effects.publish(team_id, "request_created", {"request_id": uuid.uuid4()})

    failed = await dispatch_effects(batch)

    assert failed == []
    assert [(to, subject) for to, subject, _ in notify.EMAIL_OUTBOX] == [
        ("lead@example.com", "Material Request Submitted")
    ]
    assert len(published_events) == 1
    channel, event, payload = published_events[0]
    assert channel == f"team:{team_id}"
    assert event == "request_created"
    assert isinstance(payload["request_id"], str)


@pytest.mark.asyncio
async def test_dispatch_failures_are_returned_not_raised(monkeypatch):
    async def broken_publish(channel, event, payload):
        raise ConnectionError("redis down")

    monkeypatch.setattr(pubsub, "publish", broken_publish)
    before = _sample("effect_dispatch_failures_total", kind="publish")
    publish_effect = effects.publish(uuid.uuid4(), "request_updated", {})[0]
    batch = [publish_effect] + effects.notify(["ok@example.com"], "request_cancelled", {})

    failed = await dispatch_effects(batch)

    assert failed == [publish_effect]
    assert len(notify.EMAIL_OUTBOX) == 1
    assert _sample("effect_dispatch_failures_total", kind="publish") == before + 1


@pytest.mark.asyncio
async def test_publish_serializes_event_envelope(monkeypatch):
    captured = []

    class Recorder:
        async def publish(self, channel, message):
            captured.append((channel, json.loads(message)))

    async def fake_get_redis():
        return Recorder()

    monkeypatch.setattr(pubsub, "get_redis", fake_get_redis)
    request_id = uuid.uuid4()

    await real_publish("team:abc", "request_submitted", {"request_id": request_id})

    channel, message = captured[0]
    assert channel == "team:abc"
    assert message["type"] == "request_submitted"
    assert message["data"] == {"request_id": str(request_id)}
    assert "timestamp" in message


def test_history_failure_does_not_abort_the_transition(db, monkeypatch):
    leader = make_user(db, "incubator", "Team Lead")
    team = make_team(db, leader=leader)

    def broken_sequence(db, request_id):
        raise RuntimeError("history table locked")

    monkeypatch.setattr(audit, "_next_sequence", broken_sequence)
    before = _sample("history_append_failures_total")

    result = requests.create_request(
        db, leader, request_data(team, [{"item_name": "Tape", "quantity": 2}])
    )

    assert result.request.status == "draft"
    assert result.request.id is not None
    assert _sample("history_append_failures_total") == before + 1
    assert audit.list_request_history(db, result.request.id) == []


def test_history_sequence_collision_is_retried(db, monkeypatch):
    leader = make_user(db, "incubator", "Team Lead")
    team = make_team(db, leader=leader)
    request = requests.create_request(
        db, leader, request_data(team, [{"item_name": "Tape", "quantity": 2}])
    ).request
    original = audit._next_sequence
    calls = []

    def stale_sequence(db, request_id):
        calls.append(request_id)
        if len(calls) == 1:
            # another writer already committed sequence 1
            return 1
        return original(db, request_id)

    monkeypatch.setattr(audit, "_next_sequence", stale_sequence)
    before = _sample("history_append_failures_total")

    entry = audit.record_request_history(db, request.id, "commented", leader.id, notes="second")

    assert entry is not None
    assert entry.sequence == 2
    assert len(calls) == 2
    assert [h.action for h in audit.list_request_history(db, request.id)] == ["created", "commented"]
    assert _sample("history_append_failures_total") == before
