# tests/test_agenda.py
from datetime import date, datetime, time, timedelta, timezone

from sqlalchemy import select

from app.core.timeutils import paris_today
from app.db.models import AgendaEvent, AgendaReminder, AgendaReminderLog, Notification
from app.services.agenda_daily_summary import run_agenda_daily_summary
from app.services.agenda_reminders import build_reminder_message, run_agenda_reminders
from tests.conftest import API


def _event(db, user_id, **kw):
    values = dict(
        user_id=user_id,
        title="Appeler le fournisseur",
        description="",
        event_date=date(2026, 10, 20),
        event_time=time(10, 0),
        source="rdv",
        status="a_faire",
        important=False,
        custom_reminders=["24h", "2h", "now"],
    )
    values.update(kw)
    ev = AgendaEvent(**values)
    db.add(ev)
    db.commit()
    return ev


def test_create_event_schedules_reminders(client, rpc, shop_user):
    user_id, headers = shop_user
    resp = client.post(
        f"{API}/agenda-events-create",
        json={"title": "  Livraison  ", "event_date": "2026-10-20", "event_time": "09:30", "source": "roadmap"},
        headers=headers,
    )
    assert resp.status_code == 201
    event = resp.json()["event"]
    assert event["title"] == "Livraison"
    assert event["status"] == "a_faire"
    assert event["custom_reminders"] == ["24h", "2h", "now"]
    assert rpc.calls == [("create_agenda_reminders", {"p_event_id": event["id"]})]


def test_create_event_validation(client, shop_user):
    _, headers = shop_user
    resp = client.post(f"{API}/agenda-events-create", json={"title": "x"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "title, event_date et source sont obligatoires"

    resp = client.post(
        f"{API}/agenda-events-create",
        json={"title": "x", "event_date": "2026-10-20", "source": "autre"},
        headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json()["error"]["message"] == "source doit être roadmap ou rdv"


def test_list_only_returns_own_events(client, db, shop_user, make_user):
    user_id, headers = shop_user
    other_id, _ = make_user()
    _event(db, user_id, title="Le mien")
    _event(db, other_id, title="Pas le mien")

    resp = client.get(f"{API}/agenda-events-list", headers=headers)
    assert resp.status_code == 200
    assert [e["title"] for e in resp.json()["events"]] == ["Le mien"]


def test_delete_other_user_event_is_404(client, db, shop_user, make_user):
    _, headers = shop_user
    other_id, _ = make_user()
    ev = _event(db, other_id)

    resp = client.delete(f"{API}/agenda-events-delete?id={ev.id}", headers=headers)
    assert resp.status_code == 404
    assert resp.json()["error"]["message"] == "Événement non trouvé"


def test_reminders_run_delivers_and_schedules_single_retry(db, shop_user):
    user_id, _ = shop_user
    now = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
    ev = _event(db, user_id, important=True)
    db.add(AgendaReminder(event_id=ev.id, run_at=now - timedelta(minutes=1), type="2h"))
    db.add(AgendaReminder(event_id=ev.id, run_at=now + timedelta(hours=3), type="now"))
    db.commit()

    result = run_agenda_reminders(db, now=now)
    assert result == {"ok": True, "processed": 1, "errors": 0, "total": 1}

    notif = db.execute(select(Notification)).scalar_one()
    assert notif.title == "Rappel 2h : Appeler le fournisseur"
    assert notif.severity == "urgent"
    assert notif.meta["is_important_reminder"] is True

    retries = db.execute(select(AgendaReminder).where(AgendaReminder.type == "retry_15m")).scalars().all()
    assert len(retries) == 1

    # la relance livrée ne crée pas de nouvelle relance
    result = run_agenda_reminders(db, now=now + timedelta(minutes=20))
    assert result["processed"] == 1
    retries = db.execute(select(AgendaReminder).where(AgendaReminder.type == "retry_15m")).scalars().all()
    assert len(retries) == 1
    assert db.execute(select(AgendaReminderLog)).scalars().all()


def test_reminders_skip_done_events(db, shop_user):
    user_id, _ = shop_user
    now = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
    ev = _event(db, user_id, status="fait")
    db.add(AgendaReminder(event_id=ev.id, run_at=now - timedelta(minutes=1), type="24h"))
    db.commit()

    result = run_agenda_reminders(db, now=now)
    assert result["processed"] == 0
    assert db.execute(select(Notification)).first() is None
    assert db.execute(select(AgendaReminder)).scalar_one().delivered is True


def test_reminder_message_for_task():
    ev = AgendaEvent(title="Inventaire", source="roadmap", event_date=date(2026, 10, 20), event_time=None)
    title, message = build_reminder_message("24h", ev)
    assert title == "Rappel 24h : Inventaire"
    assert message == "Votre tâche est prévu(e) demain (2026-10-20)"


def test_reminder_action_fait_is_idempotent(client, db, shop_user):
    user_id, headers = shop_user
    ev = _event(db, user_id)
    db.add(AgendaReminder(event_id=ev.id, run_at=datetime.now(timezone.utc) + timedelta(hours=1), type="now"))
    db.commit()

    for _ in range(2):
        resp = client.post(
            f"{API}/agenda-reminder-action",
            json={"event_id": str(ev.id), "action": "fait"},
            headers=headers,
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == 'Action "fait" effectuée avec succès'

    db.expire_all()
    assert db.get(AgendaEvent, ev.id).status == "fait"
    assert db.execute(select(AgendaReminder)).first() is None


def test_reminder_action_reporte_adds_retry(client, db, shop_user):
    user_id, headers = shop_user
    ev = _event(db, user_id)

    resp = client.post(
        f"{API}/agenda-reminder-action",
        json={"event_id": str(ev.id), "action": "reporte"},
        headers=headers,
    )
    assert resp.status_code == 200
    reminders = db.execute(select(AgendaReminder)).scalars().all()
    assert [r.type for r in reminders] == ["retry_15m"]


def test_daily_summary_once_per_day(db, shop_user):
    user_id, _ = shop_user
    today = paris_today()
    _event(db, user_id, event_date=today)
    _event(db, user_id, event_date=today, title="Déjà fait", status="fait")

    first = run_agenda_daily_summary(db)
    second = run_agenda_daily_summary(db)
    assert first["summaries_sent"] == 1
    assert second["summaries_sent"] == 0

    notif = db.execute(select(Notification)).scalar_one()
    assert notif.meta["event_count"] == 1


def test_daily_summary_action_reporter(client, db, rpc, shop_user):
    user_id, headers = shop_user
    ev = _event(db, user_id)

    resp = client.post(
        f"{API}/agenda-daily-summary-action",
        json={"event_ids": [str(ev.id)], "action": "reporter"},
        headers=headers,
    )
    body = resp.json()
    assert resp.status_code == 200
    assert body["updated"] == 1
    assert body["message"] == "1 tâche(s) reportée(s) à demain"
    db.expire_all()
    assert db.get(AgendaEvent, ev.id).event_date == date(2026, 10, 21)
    assert rpc.names() == ["create_agenda_reminders"]


def test_reminders_run_caps_batch_at_100(db, shop_user):
    user_id, _ = shop_user
    now = datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
    ev = _event(db, user_id)
    for i in range(105):
        db.add(AgendaReminder(event_id=ev.id, run_at=now - timedelta(minutes=i + 1), type="24h"))
    db.commit()

    result = run_agenda_reminders(db, now=now)
    assert result["processed"] == 100
    assert result["total"] == 100
    pending = db.execute(
        select(AgendaReminder).where(AgendaReminder.delivered.is_(False), AgendaReminder.run_at <= now)
    ).scalars().all()
    assert len(pending) == 5


def test_update_event_done_drops_pending_reminders(client, db, rpc, shop_user):
    user_id, headers = shop_user
    ev = _event(db, user_id)
    db.add(AgendaReminder(event_id=ev.id, run_at=datetime.now(timezone.utc) + timedelta(hours=1), type="2h"))
    db.commit()

    resp = client.put(f"{API}/agenda-events-update", json={"id": str(ev.id), "status": "fait"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["event"]["status"] == "fait"
    assert db.execute(select(AgendaReminder)).first() is None
    assert rpc.calls == []


def test_update_event_date_regenerates_reminders(client, db, rpc, shop_user):
    user_id, headers = shop_user
    ev = _event(db, user_id)
    db.add(AgendaReminder(event_id=ev.id, run_at=datetime.now(timezone.utc) + timedelta(hours=1), type="2h"))
    db.commit()

    resp = client.patch(
        f"{API}/agenda-events-update",
        json={"id": str(ev.id), "event_date": "2026-10-25", "title": "  Rappeler  "},
        headers=headers,
    )
    assert resp.status_code == 200
    event = resp.json()["event"]
    assert event["event_date"] == "2026-10-25"
    assert event["title"] == "Rappeler"
    assert db.execute(select(AgendaReminder)).first() is None
    assert rpc.calls == [("create_agenda_reminders", {"p_event_id": str(ev.id)})]


def test_update_event_without_schedule_change_keeps_reminders(client, db, rpc, shop_user):
    user_id, headers = shop_user
    ev = _event(db, user_id)
    db.add(AgendaReminder(event_id=ev.id, run_at=datetime.now(timezone.utc) + timedelta(hours=1), type="2h"))
    db.commit()

    resp = client.put(f"{API}/agenda-events-update", json={"id": str(ev.id), "important": True}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["event"]["important"] is True
    assert len(db.execute(select(AgendaReminder)).scalars().all()) == 1
    assert rpc.calls == []


def test_update_other_user_event_is_404(client, db, shop_user, make_user):
    _, headers = shop_user
    other_id, _ = make_user()
    ev = _event(db, other_id)

    resp = client.put(f"{API}/agenda-events-update", json={"id": str(ev.id), "status": "fait"}, headers=headers)
    assert resp.status_code == 404
    db.expire_all()
    assert db.get(AgendaEvent, ev.id).status == "a_faire"


def test_reminder_action_targets_given_log_row(client, db, shop_user):
    user_id, headers = shop_user
    ev = _event(db, user_id)
    older = AgendaReminderLog(
        event_id=ev.id, reminder_type="24h", delivered_at=datetime(2026, 10, 18, 10, 0, tzinfo=timezone.utc)
    )
    latest = AgendaReminderLog(
        event_id=ev.id, reminder_type="2h", delivered_at=datetime(2026, 10, 19, 8, 0, tzinfo=timezone.utc)
    )
    db.add_all([older, latest])
    db.commit()

    resp = client.post(
        f"{API}/agenda-reminder-action",
        json={"event_id": str(ev.id), "action": "vu", "reminder_id": str(older.id)},
        headers=headers,
    )
    assert resp.status_code == 200
    db.expire_all()
    assert db.get(AgendaReminderLog, older.id).user_action == "vu"
    assert db.get(AgendaReminderLog, latest.id).user_action is None
