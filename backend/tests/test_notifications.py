from conftest import HDR, RESEARCHER
from models import Notification

def test_notification_is_stored(client, db):
    r = client.post("/notifications", json={"message": "Survey Flow got a new response"}, headers=HDR)
    assert r.status_code == 200
    assert r.json() == {"success": True}
    row = db.query(Notification).filter_by(user_id=RESEARCHER).order_by(Notification.id.desc()).first()
    assert row.message == "Survey Flow got a new response"
    assert row.type == "info"

def test_notification_keeps_given_type(client, db):
    client.post("/notifications", json={"message": "Analysis ready", "type": "success"}, headers=HDR)
    row = db.query(Notification).filter_by(message="Analysis ready").one()
    assert row.type == "success"

def test_notification_without_message(client, db):
    before = db.query(Notification).count()
    for body in ({}, {"message": ""}, {"message": "   ", "type": "warning"}):
        r = client.post("/notifications", json=body, headers=HDR)
        assert r.status_code == 200 and r.json() == {"success": False}
    assert db.query(Notification).count() == before

def test_notification_storage_failure_is_swallowed(client, test_engine):
    # missing table is the usual way this store goes away
    Notification.__table__.drop(test_engine)
    try:
        r = client.post("/notifications", json={"message": "lost"}, headers=HDR)
        assert r.status_code == 200
        assert r.json() == {"success": False}
    finally:
        Notification.__table__.create(test_engine)

def test_notification_requires_auth(client):
    assert client.post("/notifications", json={"message": "x"}).status_code == 401
