import pytest

from qbsync.models.qb_entities import QBInvoice
from qbsync.services import entity_store
from qbsync.services.entity_preparers import prepare_entity

from tests.conftest import REALM_ID, make_invoice


def _row(qb_id="130", amount=100.0, sync_token="0", realm_id=REALM_ID):
    return prepare_entity(make_invoice(qb_id, amount, sync_token=sync_token), "Invoice", realm_id)


def test_upsert_creates_then_skips_same_sync_token(db):
    assert entity_store.upsert(db, "Invoice", _row()) == "created"
    db.commit()
    assert entity_store.upsert(db, "Invoice", _row()) == "skipped"
    db.commit()

    assert db.query(QBInvoice).count() == 1


def test_upsert_updates_on_new_sync_token(db):
    entity_store.upsert(db, "Invoice", _row(amount=100.0))
    db.commit()

    assert entity_store.upsert(db, "Invoice", _row(amount=150.0, sync_token="1")) == "updated"
    db.commit()

    invoice = db.query(QBInvoice).one()
    assert invoice.sync_token == "1"
    assert float(invoice.total_amount) == 150.0
    assert invoice.last_synced_at is not None


def test_same_qb_id_in_two_realms_is_two_rows(db):
    entity_store.upsert(db, "Invoice", _row(realm_id="111"))
    entity_store.upsert(db, "Invoice", _row(realm_id="222"))
    db.commit()

    assert entity_store.count(db, "Invoice", "111") == 1
    assert entity_store.count(db, "Invoice", "222") == 1


def test_upsert_requires_identity(db):
    row = _row()
    row["qb_id"] = None
    with pytest.raises(ValueError):
        entity_store.upsert(db, "Invoice", row)


def test_delete_is_idempotent(db):
    entity_store.upsert(db, "Invoice", _row())
    db.commit()

    assert entity_store.delete(db, "Invoice", REALM_ID, "130") is True
    db.commit()
    assert entity_store.delete(db, "Invoice", REALM_ID, "130") is False
    assert entity_store.count(db, "Invoice", REALM_ID) == 0
