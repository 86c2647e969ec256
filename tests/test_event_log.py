from dataclasses import replace

from fleetctl import alerts, db


def test_events_are_newest_first_and_filtered():
    db.log_event("info", "first", instance_id="i-1", domain="zone-a")
    db.log_event("WARN", "second")
    db.log_event("INFO", "third")

    rows = db.latest_events(limit=2)
    assert [r["message"] for r in rows] == ["third", "second"]
    info = db.latest_events(level="info")
    assert [r["message"] for r in info] == ["third", "first"]
    assert info[1]["instance_id"] == "i-1"
    assert info[1]["domain"] == "zone-a"


def test_directory_db_path_gets_a_file_inside(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=str(tmp_path)))
    db.init_db()
    db.log_event("INFO", "hello")
    assert (tmp_path / "fleet.db").exists()


def test_fatal_alert_is_recorded_without_email():
    alerts.fatal_alert("Delete failed", instance_id="i-9", domain="zone-c")
    rows = db.latest_events(level="ALERT")
    assert len(rows) == 1
    assert rows[0]["instance_id"] == "i-9"


def test_email_failure_is_logged_not_raised(monkeypatch):
    configured = replace(
        alerts.settings,
        enable_email=True,
        smtp_host="smtp.invalid",
        smtp_port=587,
        smtp_user="u",
        smtp_password="p",
        email_from="fleet@example.com",
        email_to="ops@example.com",
    )
    monkeypatch.setattr(alerts, "settings", configured)

    def refuse(host, port):
        raise OSError("connection refused")

    monkeypatch.setattr(alerts.smtplib, "SMTP", refuse)

    assert alerts.send_email("subject", "body") is False
    warns = db.latest_events(level="WARN")
    assert any("Alert email not sent" in w["message"] for w in warns)


def test_email_disabled_by_default():
    assert alerts.send_email("subject", "body") is False
