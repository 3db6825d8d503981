import json

import pytest

from marksync.extensions import FEED_HUB_KEY, db
from marksync.models import User
from marksync.services.feed import (
    KEEPALIVE_FRAME,
    FeedHub,
    create_feed_ticket,
    iter_feed_stream,
    topic_for_owner,
    verify_feed_ticket,
)


def _parse_frame(frame: str):
    event, data = None, None
    for line in frame.strip().splitlines():
        if line.startswith("event: "):
            event = line[len("event: "):]
        elif line.startswith("data: "):
            data = json.loads(line[len("data: "):])
    return event, data


def test_topic_is_derived_from_owner():
    assert topic_for_owner(42) == "bookmarks-42"
    assert topic_for_owner(42) == topic_for_owner(42)


def test_row_events_are_filtered_by_owner():
    hub = FeedHub()
    mine = hub.open("bookmarks-1", 1)
    theirs = hub.open("bookmarks-2", 2)

    delivered = hub.publish_row(1, "INSERT", {"id": 5, "title": "x"})

    assert delivered == 1
    message = mine.queue.get_nowait()
    assert message.event == "INSERT"
    assert message.data == {"record": {"id": 5, "title": "x"}}
    assert theirs.queue.empty()


def test_publish_rejects_unknown_actions():
    hub = FeedHub()
    with pytest.raises(ValueError):
        hub.publish_row(1, "TRUNCATE", {})


def test_broadcast_skips_the_sender():
    hub = FeedHub()
    sender = hub.open("bookmarks-1", 1)
    peer = hub.open("bookmarks-1", 1)
    elsewhere = hub.open("bookmarks-2", 2)

    delivered = hub.broadcast("bookmarks-1", "ping", {"n": 1}, sender_id=sender.id)

    assert delivered == 1
    assert sender.queue.empty()
    assert elsewhere.queue.empty()
    message = peer.queue.get_nowait()
    assert message.event == "broadcast"
    assert message.data == {"event": "ping", "payload": {"n": 1}}


def test_close_removes_subscriber_and_ends_stream():
    hub = FeedHub()
    subscriber = hub.open("bookmarks-1", 1)
    assert hub.subscriber_count("bookmarks-1") == 1

    hub.close(subscriber)
    hub.close(subscriber)

    assert hub.subscriber_count() == 0
    assert subscriber.queue.get_nowait() is None
    assert hub.publish_row(1, "DELETE", {"id": 1}) == 0


def test_full_queue_drops_instead_of_blocking():
    hub = FeedHub(queue_size=1)
    subscriber = hub.open("bookmarks-1", 1)

    assert hub.publish_row(1, "INSERT", {"id": 1}) == 1
    assert hub.publish_row(1, "INSERT", {"id": 2}) == 0
    assert subscriber.dropped == 1


def test_feed_ticket_round_trip_and_tampering():
    ticket = create_feed_ticket("secret", 3, "bookmarks-3")

    assert verify_feed_ticket("secret", ticket, max_age=60) == {
        "user_id": 3,
        "topic": "bookmarks-3",
    }
    assert verify_feed_ticket("other-secret", ticket, max_age=60) is None
    assert verify_feed_ticket("secret", ticket + "x", max_age=60) is None
    assert verify_feed_ticket("secret", "", max_age=60) is None

    foreign = create_feed_ticket("secret", 3, "bookmarks-4")
    assert verify_feed_ticket("secret", foreign, max_age=60) is None


def test_stream_acknowledges_then_relays_and_closes():
    hub = FeedHub()
    stream = iter_feed_stream(hub, "bookmarks-1", 1, keepalive_seconds=0.01)

    event, data = _parse_frame(next(stream))
    assert event == "subscribed"
    assert data["topic"] == "bookmarks-1"
    assert hub.subscriber_count("bookmarks-1") == 1

    assert next(stream) == KEEPALIVE_FRAME

    hub.publish_row(1, "UPDATE", {"id": 9, "title": "new"})
    event, data = _parse_frame(next(stream))
    assert event == "UPDATE"
    assert data == {"record": {"id": 9, "title": "new"}}

    stream.close()
    assert hub.subscriber_count() == 0


def _user_with_token(client, app, username="u1"):
    with app.app_context():
        user = User(username=username, is_active=True)
        user.set_password("secret")
        db.session.add(user)
        db.session.commit()
        user_id = user.id
    response = client.post(
        "/api/v1/auth/token", json={"username": username, "password": "secret"}
    )
    return {"Authorization": f"Bearer {response.get_json()['token']}"}, user_id


def test_subscribe_endpoint_issues_ticket_for_own_topic_only(client, app):
    auth, user_id = _user_with_token(client, app)

    response = client.post(
        "/api/v1/feed/subscribe", headers=auth, json={"topic": f"bookmarks-{user_id}"}
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["topic"] == f"bookmarks-{user_id}"
    assert body["ticket"]

    response = client.post(
        "/api/v1/feed/subscribe", headers=auth, json={"topic": "bookmarks-999"}
    )
    assert response.status_code == 403

    response = client.post("/api/v1/feed/subscribe", json={})
    assert response.status_code == 401


def test_stream_endpoint_rejects_bad_ticket(client):
    response = client.get("/api/v1/feed/stream?ticket=forged")
    assert response.status_code == 403
    assert response.get_json() == {"error": "invalid or expired ticket"}


def test_stream_endpoint_starts_with_handshake_event(client, app):
    auth, user_id = _user_with_token(client, app)
    ticket = client.post(
        "/api/v1/feed/subscribe", headers=auth, json={}
    ).get_json()["ticket"]

    response = client.get(f"/api/v1/feed/stream?ticket={ticket}")
    assert response.status_code == 200
    assert response.mimetype == "text/event-stream"

    chunks = iter(response.response)
    first = next(chunks)
    if isinstance(first, bytes):
        first = first.decode("utf-8")
    event, data = _parse_frame(first)
    assert event == "subscribed"
    assert data["topic"] == f"bookmarks-{user_id}"

    hub = app.extensions[FEED_HUB_KEY]
    assert hub.subscriber_count(f"bookmarks-{user_id}") == 1
    response.close()
    assert hub.subscriber_count() == 0


def test_broadcast_endpoint(client, app):
    auth, user_id = _user_with_token(client, app)
    hub = app.extensions[FEED_HUB_KEY]
    listener = hub.open(f"bookmarks-{user_id}", user_id)

    response = client.post(
        "/api/v1/feed/broadcast",
        headers=auth,
        json={
            "topic": f"bookmarks-{user_id}",
            "event": "bookmark-added",
            "payload": {"id": 1},
        },
    )
    assert response.status_code == 200
    assert response.get_json()["delivered"] == 1
    assert listener.queue.get_nowait().data == {
        "event": "bookmark-added",
        "payload": {"id": 1},
    }

    response = client.post(
        "/api/v1/feed/broadcast",
        headers=auth,
        json={"topic": "bookmarks-999", "event": "x"},
    )
    assert response.status_code == 403

    response = client.post(
        "/api/v1/feed/broadcast", headers=auth, json={"topic": "", "event": ""}
    )
    assert response.status_code == 400
