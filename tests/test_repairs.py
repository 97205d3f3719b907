# tests/test_repairs.py
import uuid
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy import select

from app.core.config import settings
from app.core.timeutils import utcnow
from app.db.models import (
    Customer,
    Invoice,
    InvoiceItem,
    Product,
    ProductStock,
    RepairItem,
    RepairMedia,
    RepairPublicLink,
    RepairStatusHistory,
    RepairTicket,
    Stock,
)
from tests.conftest import API

PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


@pytest.fixture
def customer(db):
    c = Customer(name="Jeanne Martin", email=None, phone="0600000000")
    db.add(c)
    db.commit()
    return c


def _ticket(db, customer, **kw):
    values = dict(
        customer_id=customer.id,
        device_brand="Apple",
        device_model="iPhone 12",
        issue_description="Écran cassé",
        power_state="ok",
        status="quote_todo",
    )
    values.update(kw)
    t = RepairTicket(**values)
    db.add(t)
    db.commit()
    return t


def _product_in_stock(db, quantity):
    product = Product(name="Écran iPhone 12")
    stock = Stock(name="Boutique")
    db.add_all([product, stock])
    db.flush()
    db.add(ProductStock(product_id=product.id, stock_id=stock.id, quantity=quantity))
    db.commit()
    return product, stock


def test_create_intake(client, db, customer, shop_user):
    _, headers = shop_user
    resp = client.post(
        f"{API}/repairs-create-intake",
        json={
            "customer_id": str(customer.id),
            "device_brand": " Samsung ",
            "device_model": "Galaxy S21",
            "issue_description": "Ne charge plus",
            "power_state": "no_sign",
            "cgv_accepted": True,
            "signature_base64": PNG_DATA_URL,
            "photos_base64": [PNG_DATA_URL],
        },
        headers=headers,
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    ticket = data["ticket"]
    assert ticket["status"] == "quote_todo"
    assert ticket["device_brand"] == "Samsung"
    assert [m["kind"] for m in data["media"]] == ["signature", "photo"]
    assert data["message"] == f"Ticket #{ticket['id'][:8].upper()} créé"

    prefix = f"{settings.PUBLIC_BASE_URL}/media/repairs/{ticket['id']}/"
    assert ticket["signature_url"].startswith(prefix)
    stored = Path(settings.MEDIA_ROOT) / "repairs" / ticket["id"]
    assert len(list(stored.iterdir())) == 2

    tid = uuid.UUID(ticket["id"])
    assert len(db.execute(select(RepairMedia).where(RepairMedia.repair_id == tid)).scalars().all()) == 2
    history = db.execute(select(RepairStatusHistory)).scalar_one()
    assert history.old_status is None
    assert history.new_status == "quote_todo"


def test_create_intake_requires_cgv_and_signature(client, customer, shop_user):
    _, headers = shop_user
    base = {
        "customer_id": str(customer.id),
        "device_brand": "Apple",
        "device_model": "iPhone",
        "issue_description": "x",
        "power_state": "ok",
    }
    resp = client.post(f"{API}/repairs-create-intake", json=base, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "CGV_NOT_ACCEPTED"

    resp = client.post(f"{API}/repairs-create-intake", json={**base, "cgv_accepted": True}, headers=headers)
    assert resp.json()["error"]["code"] == "SIGNATURE_REQUIRED"

    resp = client.post(f"{API}/repairs-create-intake", json={"device_brand": "Apple"}, headers=headers)
    assert resp.json()["error"]["message"] == (
        "Champs obligatoires manquants: customer_id, device_model, issue_description, power_state"
    )


def test_status_update_requires_parts(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer)

    resp = client.post(
        f"{API}/repairs-status-update",
        json={"repair_id": str(ticket.id), "status": "ready_to_return"},
        headers=headers,
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "NO_PARTS"


def test_status_update_rejects_unreserved_parts(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer)
    product, _ = _product_in_stock(db, 3)
    item = RepairItem(repair_id=ticket.id, product_id=product.id, reserved=False)
    db.add(item)
    db.commit()

    resp = client.post(
        f"{API}/repairs-status-update",
        json={"repair_id": str(ticket.id), "status": "to_repair"},
        headers=headers,
    )
    error = resp.json()["error"]
    assert resp.status_code == 409
    assert error["code"] == "PARTS_NOT_RESERVED"
    assert error["context"]["unreserved_items"] == [str(item.id)]


def test_status_update_records_history(client, db, customer, shop_user):
    user_id, headers = shop_user
    ticket = _ticket(db, customer)

    resp = client.post(
        f"{API}/repairs-status-update",
        json={"repair_id": str(ticket.id), "status": "in_repair", "note": "Démontage"},
        headers=headers,
    )
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["ticket"]["status"] == "in_repair"
    assert data["history"]["old_status"] == "quote_todo"
    assert data["history"]["changed_by"] == str(user_id)
    assert data["message"] == "Statut mis à jour : En cours de réparation"

    # même statut : pas de nouvelle ligne d'historique
    resp = client.post(
        f"{API}/repairs-status-update",
        json={"repair_id": str(ticket.id), "status": "in_repair"},
        headers=headers,
    )
    assert resp.json()["data"]["history"] is None
    assert len(db.execute(select(RepairStatusHistory)).scalars().all()) == 1


def test_status_update_archived_needs_invoice_or_delivery(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="in_repair")

    resp = client.post(
        f"{API}/repairs-status-update",
        json={"repair_id": str(ticket.id), "status": "archived"},
        headers=headers,
    )
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "CANNOT_ARCHIVE"


def test_attach_part_insufficient_stock(client, db, rpc, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer)
    product, stock = _product_in_stock(db, 1)

    resp = client.post(
        f"{API}/repairs-attach-part",
        json={"repair_id": str(ticket.id), "product_id": str(product.id), "stock_id": str(stock.id), "quantity": 2},
        headers=headers,
    )
    error = resp.json()["error"]
    assert resp.status_code == 422
    assert error["code"] == "INSUFFICIENT_STOCK"
    assert error["context"]["candidates"] == [{"product_id": str(product.id), "quantity": 1}]
    assert rpc.calls == []


def test_attach_part_reserves_through_procedure(client, db, rpc, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer)
    product, stock = _product_in_stock(db, 5)
    rpc.responses["fn_repair_reserve_stock"] = {"reserved": 1}

    resp = client.post(
        f"{API}/repairs-attach-part",
        json={"repair_id": str(ticket.id), "product_id": str(product.id), "stock_id": str(stock.id)},
        headers=headers,
    )
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["item"]["quantity"] == 1
    assert data["reservation"] == {"reserved": 1}
    assert data["message"] == "Pièce Écran iPhone 12 réservée (1)"
    assert rpc.calls == [(
        "fn_repair_reserve_stock",
        {"p_repair_id": str(ticket.id), "p_product_id": str(product.id), "p_stock_id": str(stock.id), "p_qty": 1},
    )]


def test_mark_to_order_moves_ticket(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer)
    product = Product(name="Batterie")
    db.add(product)
    db.commit()

    resp = client.post(
        f"{API}/repairs-mark-to-order",
        json={"repair_id": str(ticket.id), "product_id": str(product.id), "supplier_name": "Mobilax"},
        headers=headers,
    )
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["status"] == "parts_to_order"
    assert [i["supplier_name"] for i in data["items"]] == ["Mobilax"]


def test_order_batch_reports_every_invalid_field(client, shop_user):
    _, headers = shop_user
    resp = client.post(
        f"{API}/repairs-order-batch",
        json={"items": [{"repair_id": "pas-un-uuid", "purchase_price": -1}]},
        headers=headers,
    )
    error = resp.json()["error"]
    assert resp.status_code == 400
    assert error["context"]["details"] == [
        "items[0].repair_id invalide",
        "items[0].product_id obligatoire",
        "items[0].supplier_name obligatoire",
        "items[0].expected_date obligatoire",
        "items[0].purchase_price doit être >= 0",
    ]


def test_order_batch_sets_waiting_parts(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="parts_to_order")
    product = Product(name="Nappe")
    db.add(product)
    db.commit()

    resp = client.post(
        f"{API}/repairs-order-batch",
        json={"items": [{
            "repair_id": str(ticket.id),
            "product_id": str(product.id),
            "supplier_name": "Utopya",
            "expected_date": "2026-11-02",
            "purchase_price": "12.50",
            "quantity": 2,
        }]},
        headers=headers,
    )
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["success"] == 1
    assert data["tickets_updated"] == 1
    assert data["total_cost_estimate"] == 25.0
    db.expire_all()
    assert db.get(RepairTicket, ticket.id).status == "waiting_parts"


def test_archive_is_admin_only(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="delivered")

    resp = client.post(f"{API}/repairs-archive", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 403
    assert resp.json()["error"]["message"] == "Seuls les administrateurs peuvent archiver des tickets"


def test_archive_refused_without_invoice(client, db, customer, admin_user):
    _, headers = admin_user
    ticket = _ticket(db, customer, status="in_repair")

    resp = client.post(f"{API}/repairs-archive", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "CANNOT_ARCHIVE"


def test_archive_releases_reservations(client, db, rpc, customer, admin_user):
    _, headers = admin_user
    ticket = _ticket(db, customer, status="in_repair", invoice_id=uuid.uuid4())

    resp = client.post(f"{API}/repairs-archive", json={"repair_id": str(ticket.id)}, headers=headers)
    data = resp.json()["data"]
    assert resp.status_code == 200
    assert data["ticket"]["status"] == "archived"
    assert data["released_reservations"] == 0
    assert rpc.calls == [("fn_repair_release_reservations", {"p_repair_id": str(ticket.id)})]

    resp = client.post(f"{API}/repairs-archive", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.json()["data"]["message"] == "Le ticket est déjà archivé"


def test_archive_procedure_failure(client, db, rpc, customer, admin_user):
    _, headers = admin_user
    ticket = _ticket(db, customer, status="delivered")
    rpc.errors["fn_repair_release_reservations"] = "verrou"

    resp = client.post(f"{API}/repairs-archive", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "RPC_ERROR"
    db.expire_all()
    assert db.get(RepairTicket, ticket.id).status == "delivered"


def test_public_link_and_status_page(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="waiting_parts")

    resp = client.post(f"{API}/repairs-public-link-create", json={"repair_id": str(ticket.id)}, headers=headers)
    data = resp.json()["data"]
    assert data["public_url"] == (
        f"{settings.PUBLIC_BASE_URL}{API}/repairs-public-status?token={data['token']}"
    )

    page = client.get(f"{API}/repairs-public-status?token={data['token']}")
    assert page.status_code == 200
    assert "Apple iPhone 12" in page.text
    assert "En attente de pièces" in page.text


def test_public_status_page_errors(client, db, customer):
    ticket = _ticket(db, customer)
    db.add(RepairPublicLink(repair_id=ticket.id, token="expire", expires_at=utcnow() - timedelta(days=1)))
    db.commit()

    assert client.get(f"{API}/repairs-public-status").status_code == 400
    assert client.get(f"{API}/repairs-public-status?token=inconnu").status_code == 404
    expired = client.get(f"{API}/repairs-public-status?token=expire")
    assert expired.status_code == 410
    assert "expiré" in expired.text


def _with_part(db, ticket, quantity=1, **product_kw):
    product, stock = _product_in_stock(db, 5)
    for key, value in product_kw.items():
        setattr(product, key, value)
    db.add(RepairItem(repair_id=ticket.id, product_id=product.id, stock_id=stock.id,
                      quantity=quantity, reserved=True))
    db.commit()
    return product


def test_drying_start_requires_drying_status(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="in_repair")

    resp = client.post(f"{API}/repairs-drying-start", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "INVALID_STATUS"


def test_drying_start_then_ack(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="drying")

    resp = client.post(
        f"{API}/repairs-drying-start", json={"repair_id": str(ticket.id), "duration_min": 90}, headers=headers
    )
    assert resp.status_code == 200
    assert resp.json()["data"]["message"] == "Séchage lancé pour 90 min"
    db.expire_all()
    stored = db.get(RepairTicket, ticket.id)
    assert stored.drying_duration_min == 90
    assert stored.drying_end_at - stored.drying_start_at == timedelta(minutes=90)
    assert stored.drying_acknowledged_at is None

    resp = client.post(f"{API}/repairs-drying-ack", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["message"] == "Fin de séchage prise en compte"
    db.expire_all()
    assert db.get(RepairTicket, ticket.id).drying_acknowledged_at is not None


def test_drying_start_default_and_invalid_duration(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="drying")

    resp = client.post(
        f"{API}/repairs-drying-start", json={"repair_id": str(ticket.id), "duration_min": 0}, headers=headers
    )
    assert resp.status_code == 400

    resp = client.post(f"{API}/repairs-drying-start", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.json()["data"]["message"] == "Séchage lancé pour 60 min"


def test_delete_ticket_removes_rows_and_media(client, db, rpc, customer, shop_user, admin_user):
    _, shop_headers = shop_user
    _, headers = admin_user
    resp = client.post(
        f"{API}/repairs-create-intake",
        json={
            "customer_id": str(customer.id),
            "device_brand": "Apple",
            "device_model": "iPhone 13",
            "issue_description": "Batterie",
            "power_state": "ok",
            "cgv_accepted": True,
            "signature_base64": PNG_DATA_URL,
            "photos_base64": [PNG_DATA_URL],
        },
        headers=shop_headers,
    )
    ticket_id = uuid.UUID(resp.json()["data"]["ticket"]["id"])
    _with_part(db, db.get(RepairTicket, ticket_id))

    assert client.delete(f"{API}/repairs-delete?repair_id={ticket_id}", headers=shop_headers).status_code == 403

    resp = client.delete(f"{API}/repairs-delete?repair_id={ticket_id}", headers=headers)
    body = resp.json()
    assert resp.status_code == 200
    assert body["files_deleted"] == 2
    assert body["message"] == f"Ticket #{str(ticket_id)[:8].upper()} supprimé"
    assert rpc.calls == [("fn_repair_release_reservations", {"p_repair_id": str(ticket_id)})]

    db.expire_all()
    assert db.get(RepairTicket, ticket_id) is None
    for model in (RepairItem, RepairMedia, RepairStatusHistory):
        assert db.execute(select(model).where(model.repair_id == ticket_id)).first() is None
    assert not (Path(settings.MEDIA_ROOT) / "repairs" / str(ticket_id)).exists()


def test_delete_unknown_ticket_is_404(client, admin_user):
    _, headers = admin_user
    resp = client.delete(f"{API}/repairs-delete?repair_id={uuid.uuid4()}", headers=headers)
    assert resp.status_code == 404


def test_auto_archive_run_route(client, db, monkeypatch, customer, shop_user, admin_user):
    from app.services import repairs as repairs_service

    calls = []
    monkeypatch.setattr(repairs_service, "call_rpc_sync", lambda db, name, **params: calls.append(name))
    ticket = _ticket(db, customer, status="delivered")

    _, shop_headers = shop_user
    assert client.post(f"{API}/repairs-auto-archive-run", headers=shop_headers).status_code == 403

    _, headers = admin_user
    resp = client.post(f"{API}/repairs-auto-archive-run", headers=headers)
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "archived": 1, "total_delivered": 1, "errors": 0}
    assert calls == ["fn_repair_release_reservations"]
    db.expire_all()
    assert db.get(RepairTicket, ticket.id).status == "archived"


def test_generate_invoice_requires_returnable_status(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="in_repair")
    _with_part(db, ticket)

    resp = client.post(f"{API}/repairs-generate-invoice", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 409
    error = resp.json()["error"]
    assert error["code"] == "INVALID_STATUS"
    assert error["message"].endswith("Statut actuel: in_repair")


def test_generate_invoice_without_parts(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="ready_to_return")

    resp = client.post(f"{API}/repairs-generate-invoice", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "NO_ITEMS"
    assert db.execute(select(Invoice)).first() is None


def test_generate_invoice_creates_draft(client, db, rpc, customer, shop_user):
    user_id, headers = shop_user
    ticket = _ticket(db, customer, status="ready_to_return")
    _with_part(db, ticket, quantity=2, sale_price_ht=Decimal("49.90"))

    resp = client.post(f"{API}/repairs-generate-invoice", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    invoice = data["invoice"]
    assert invoice["status"] == "draft"
    assert invoice["invoice_date"] == date.today().isoformat()
    assert invoice["due_date"] == (date.today() + timedelta(days=30)).isoformat()
    assert invoice["notes"] == f"Facture pour réparation - Ticket #{str(ticket.id)[:8]}\nAppareil: Apple iPhone 12"
    assert invoice["created_by"] == str(user_id)
    assert data["invoice_url"] == f"/invoices/{invoice['id']}"
    assert data["message"].startswith(f"Facture draft #{invoice['id'][:8]} créée avec succès.")

    [line] = invoice["items"]
    assert line["description"] == "Écran iPhone 12"
    assert line["qty"] == 2
    assert Decimal(str(line["unit_price_ht"])) == Decimal("49.90")
    assert Decimal(str(line["tax_rate"])) == Decimal("20")
    assert line["line_order"] == 1

    db.expire_all()
    stored = db.get(RepairTicket, ticket.id)
    assert str(stored.invoice_id) == invoice["id"]
    assert stored.status == "ready_to_return"
    assert len(db.execute(select(InvoiceItem)).scalars().all()) == 1
    assert rpc.calls == []


def test_generate_invoice_twice_returns_existing(client, db, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="ready_to_return")
    _with_part(db, ticket)

    first = client.post(f"{API}/repairs-generate-invoice", json={"repair_id": str(ticket.id)}, headers=headers)
    second = client.post(f"{API}/repairs-generate-invoice", json={"repair_id": str(ticket.id)}, headers=headers)
    data = second.json()["data"]
    assert second.status_code == 200
    assert data["already_exists"] is True
    assert data["message"] == "Une facture existe déjà pour ce ticket"
    assert data["invoice"]["id"] == first.json()["data"]["invoice_id"]
    assert len(db.execute(select(Invoice)).scalars().all()) == 1


def test_generate_invoice_for_delivered_ticket_archives_it(client, db, rpc, customer, shop_user):
    _, headers = shop_user
    ticket = _ticket(db, customer, status="delivered")
    _with_part(db, ticket)
    rpc.errors["fn_repair_release_reservations"] = "verrou"

    resp = client.post(f"{API}/repairs-generate-invoice", json={"repair_id": str(ticket.id)}, headers=headers)
    assert resp.status_code == 200
    assert rpc.names() == ["fn_repair_release_reservations"]
    db.expire_all()
    stored = db.get(RepairTicket, ticket.id)
    assert stored.status == "archived"
    assert stored.invoice_id is not None
    history = db.execute(
        select(RepairStatusHistory).where(RepairStatusHistory.repair_id == ticket.id)
    ).scalar_one()
    assert (history.old_status, history.new_status) == ("delivered", "archived")
