from sqlalchemy import select
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from rendezvous.modules.connections import service as connections
from rendezvous.modules.notifications import service as notifications
from rendezvous.modules.notifications.models import Notification
from rendezvous.modules.notifications.service import NotificationEmitter

from .conftest import ALICE, BOB, CAROL, as_user


def _always_failing(**kwargs):
    raise SQLAlchemyError("notifications table unavailable")


def test_failed_notification_is_swallowed(session, users, monkeypatch):
    monkeypatch.setattr(notifications, "Notification", _always_failing)
    emitter = NotificationEmitter(max_attempts=3)

    assert emitter.notify(session, BOB, "contact_request", "t", "m") is None


def test_notification_failure_keeps_the_triggering_write(session, users, directory, monkeypatch):
    monkeypatch.setattr(notifications, "Notification", _always_failing)

    connection_id = connections.send_contact_request(
        session, ALICE, BOB, directory, NotificationEmitter(max_attempts=2)
    )

    session.expire_all()
    status = connections.check_connection_status(session, ALICE, BOB)
    assert status["connectionId"] == connection_id
    assert status["status"] == "pending"

    assert session.execute(select(Notification)).scalars().all() == []


def test_notification_retried_until_attempts_exhausted(session, users, monkeypatch):
    attempts = []

    def flaky(**kwargs):
        attempts.append(kwargs["user_id"])
        if len(attempts) == 1:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return Notification(**kwargs)

    monkeypatch.setattr(notifications, "Notification", flaky)

    notification_id = NotificationEmitter(max_attempts=2).notify(
        session, BOB, "contact_request", "New Contact Request", "hello", {"connectionId": 7}
    )

    assert notification_id is not None
    assert attempts == [BOB, BOB]


def test_read_side(session, users, emitter):
    first = emitter.notify(session, BOB, "contact_request", "one", "first")
    second = emitter.notify(session, BOB, "service_inquiry", "two", "second", {"serviceId": "svc"})
    emitter.notify(session, CAROL, "contact_request", "other", "not bob's")

    listed = notifications.list_notifications(session, BOB)
    assert [n["id"] for n in listed] == [second, first]
    assert listed[0]["data"] == {"serviceId": "svc"}
    assert notifications.unread_count(session, BOB) == 2

    notifications.mark_read(session, BOB, first)
    assert notifications.unread_count(session, BOB) == 1

    assert notifications.mark_all_read(session, BOB) == 1
    assert notifications.unread_count(session, BOB) == 0
    assert notifications.unread_count(session, CAROL) == 1


def test_notification_routes(client, session, users, emitter):
    mine = emitter.notify(session, BOB, "contact_request", "New Contact Request", "hi")
    theirs = emitter.notify(session, CAROL, "contact_request", "New Contact Request", "hi")

    listed = client.get("/v1/notifications", headers=as_user(BOB))
    assert listed.status_code == 200
    assert [n["id"] for n in listed.json()["notifications"]] == [mine]

    assert client.get("/v1/notifications/unread-count", headers=as_user(BOB)).json() == {"unread": 1}

    # someone else's notification looks missing
    assert client.put(f"/v1/notifications/{theirs}/read", headers=as_user(BOB)).status_code == 404
    assert client.delete(f"/v1/notifications/{theirs}", headers=as_user(BOB)).status_code == 404

    assert client.put(f"/v1/notifications/{mine}/read", headers=as_user(BOB)).status_code == 200
    assert client.get("/v1/notifications/unread-count", headers=as_user(BOB)).json() == {"unread": 0}

    assert client.put("/v1/notifications/read-all", headers=as_user(CAROL)).json()["updated"] == 1

    assert client.delete(f"/v1/notifications/{mine}", headers=as_user(BOB)).status_code == 200
    assert client.get("/v1/notifications", headers=as_user(BOB)).json()["notifications"] == []


def test_created_at_is_naive_utc_like_other_tables(session, users, emitter):
    assert Notification.__table__.c.created_at.type.timezone is False

    notification_id = emitter.notify(session, BOB, "contact_request", "t", "m")
    session.expire_all()
    assert session.get(Notification, notification_id).created_at.tzinfo is None
