import uuid
from datetime import date
from unittest.mock import patch

import pytest

from qbsync.core.exceptions import NotFoundError, PreconditionError, QuickBooksAPIError
from qbsync.models.qb_entities import QBCustomer
from qbsync.models.quickbooks_sync_log import QuickBooksSyncLog
from qbsync.models.sync_event import SyncEvent
from qbsync.models.sync_job import EntityJob, SyncJob, TERMINAL_JOB_STATUSES
from qbsync.services.entity_preparers import SUPPORTED_ENTITY_TYPES

from tests.conftest import REALM_ID


def _children(db, job):
    return db.query(EntityJob).filter(EntityJob.sync_job_id == job.id).order_by(EntityJob.position).all()


def _assert_counters_consistent(job):
    assert job.completed_entities + job.failed_entities <= job.total_entities
    assert job.processed_records + job.error_records <= job.total_records


class TestStart:
    def test_full_job_has_one_pending_child_per_entity_type(self, db, connection, sync_job_service):
        job = sync_job_service.start(db, REALM_ID)

        assert job.status == "running"
        assert job.started_at is not None
        assert job.company_name == "Maple Residences"
        assert job.total_entities == len(SUPPORTED_ENTITY_TYPES)

        children = _children(db, job)
        assert [c.entity_type for c in children] == SUPPORTED_ENTITY_TYPES
        assert {c.status for c in children} == {"pending"}
        assert [c.position for c in children] == list(range(len(SUPPORTED_ENTITY_TYPES)))

    def test_entity_specific_dedupes_and_ignores_unsupported(self, db, connection, sync_job_service):
        job = sync_job_service.start(
            db, REALM_ID, sync_type="entity_specific",
            entities=["Invoice", "Invoice", "JournalEntry", "Customer"],
        )

        assert job.entities_to_sync == ["Invoice", "Customer"]
        assert job.total_entities == 2

    def test_entity_specific_without_valid_types_is_rejected(self, db, connection, sync_job_service):
        with pytest.raises(PreconditionError):
            sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["JournalEntry"])

        assert db.query(SyncJob).count() == 0

    def test_requires_active_credential(self, db, sync_job_service):
        with pytest.raises(NotFoundError):
            sync_job_service.start(db, REALM_ID)

    def test_rejects_bad_arguments(self, db, connection, sync_job_service):
        with pytest.raises(PreconditionError):
            sync_job_service.start(db, REALM_ID, sync_type="weekly")
        with pytest.raises(PreconditionError):
            sync_job_service.start(db, REALM_ID, start_date=date(2024, 3, 1), end_date=date(2024, 1, 1))

    def test_incremental_job_resolves_changed_since(self, db, connection, sync_job_service):
        job = sync_job_service.start(db, REALM_ID, sync_type="incremental")

        assert job.changed_since is not None


class TestClaim:
    def test_claims_in_creation_then_position_order(self, db, connection, sync_job_service):
        first = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Vendor", "Customer"])
        sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Invoice"])

        claimed = [sync_job_service.claim_next(db) for _ in range(3)]

        assert [c.entity_type for c in claimed] == ["Vendor", "Customer", "Invoice"]
        assert all(c.status == "running" for c in claimed)
        assert claimed[0].sync_job_id == first.id
        assert sync_job_service.claim_next(db) is None

    def test_lost_claim_is_not_taken(self, db, session_factory, connection, sync_job_service):
        sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer", "Vendor"])
        entity_job, _ = sync_job_service._next_candidate(db)
        candidate_id = entity_job.id

        other_worker = session_factory()
        try:
            won = sync_job_service.claim_next(other_worker)
            assert won.id == candidate_id
        finally:
            other_worker.close()

        assert sync_job_service._try_claim(db, candidate_id) is False
        next_claim = sync_job_service.claim_next(db)
        assert next_claim.id != candidate_id
        assert next_claim.entity_type == "Vendor"

    def test_orphaned_child_is_failed_not_claimed(self, db, connection, sync_job_service):
        orphan = EntityJob(
            sync_job_id=uuid.uuid4(),
            entity_type="Customer",
            entity_table="qb_customers",
            status="pending",
        )
        db.add(orphan)
        db.commit()

        assert sync_job_service.claim_next(db) is None

        db.refresh(orphan)
        assert orphan.status == "failed"
        assert orphan.error_message.startswith("Integrity fault")

    def test_children_of_cancelled_jobs_are_never_claimed(self, db, connection, sync_job_service):
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer", "Vendor"])
        sync_job_service.cancel(db, job.id)

        assert sync_job_service.process(db)["processed"] == 0
        assert {c.status for c in _children(db, job)} == {"pending"}


class TestProcess:
    def test_full_job_runs_to_completion(self, db, connection, sync_job_service, fake_client):
        fake_client.entities = {"Customer": [{"Id": str(i), "SyncToken": "0"} for i in range(1, 4)]}
        job = sync_job_service.start(db, REALM_ID)

        summary = sync_job_service.process(db)

        assert summary["processed"] == len(SUPPORTED_ENTITY_TYPES)
        assert summary["errors"] == 0
        db.refresh(job)
        assert job.status == "completed"
        assert job.completed_at is not None
        assert job.error_message is None
        assert job.completed_entities == len(SUPPORTED_ENTITY_TYPES)
        assert job.total_records == 3
        assert job.processed_records == 3
        assert db.query(QBCustomer).count() == 3
        _assert_counters_consistent(job)

        # two progress events per entity job
        assert db.query(SyncEvent).filter(SyncEvent.job_id == job.id).count() == 2 * len(SUPPORTED_ENTITY_TYPES)

    def test_time_budget_leaves_remaining_work_pending(self, db, connection, sync_job_service):
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer", "Vendor", "Item"])
        ticks = iter([0.0, 0.0, 60.0, 60.0])

        summary = sync_job_service.process(db, time_budget=50, clock=lambda: next(ticks))

        assert summary == {"processed": 1, "elapsed": 60.0, "errors": 0}
        statuses = [c.status for c in _children(db, job)]
        assert statuses == ["completed", "pending", "pending"]
        db.refresh(job)
        assert job.status == "running"
        assert job.completed_entities == 1

        sync_job_service.process(db)
        db.refresh(job)
        assert job.status == "completed"

    def test_partial_failure_completes_with_message(self, db, connection, sync_job_service, fake_client):
        fake_client.fail_entity_types["Invoice"] = QuickBooksAPIError("QuickBooks API error 500", http_status=500)
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer", "Invoice"])

        summary = sync_job_service.process(db)

        assert summary["errors"] == 1
        db.refresh(job)
        assert job.status == "completed"
        assert job.failed_entities == 1
        assert job.completed_entities == 1
        assert job.error_message == "Failed entity types: Invoice"
        failed = [c for c in _children(db, job) if c.status == "failed"]
        assert failed[0].error_message == "QuickBooks API error 500"
        _assert_counters_consistent(job)

    def test_job_fails_when_every_entity_fails(self, db, connection, sync_job_service, fake_client):
        fake_client.fail_entity_types["Customer"] = QuickBooksAPIError("QuickBooks API error 500", http_status=500)
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer"])

        sync_job_service.process(db)

        db.refresh(job)
        assert job.status == "failed"
        assert "Customer" in job.error_message

    @pytest.mark.parametrize("fails, last_progress, terminal", [
        (False, "completed", "complete"),
        (True, "failed", "error"),
    ])
    def test_stream_opened_as_job_settles_delivers_last_event(
        self, db, session_factory, connection, sync_job_service, event_service, fake_client,
        fails, last_progress, terminal,
    ):
        if fails:
            fake_client.fail_entity_types["Customer"] = QuickBooksAPIError("QuickBooks API error 500", http_status=500)
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer"])
        job_id = job.id
        delivered = []
        roll_up = sync_job_service._roll_up

        def roll_up_then_stream(session, parent):
            roll_up(session, parent)
            if parent.status in TERMINAL_JOB_STATUSES:
                delivered.extend(event_service.stream(session_factory, job_id, sleep=lambda seconds: None))

        with patch.object(sync_job_service, "_roll_up", side_effect=roll_up_then_stream):
            sync_job_service.process(db)

        assert [(m["type"], m.get("status")) for m in delivered] == [
            ("connected", None),
            ("progress", "running"),
            ("progress", last_progress),
            (terminal, last_progress),
            ("done", None),
        ]
        assert db.query(SyncEvent).filter(SyncEvent.job_id == job_id).count() == 0

    def test_cancel_is_not_overwritten_by_a_finishing_entity(self, db, connection, sync_job_service):
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer"])
        entity_job = sync_job_service.claim_next(db)
        sync_job_service.cancel(db, job.id)

        assert sync_job_service._run_entity_job(db, entity_job) is True

        db.refresh(job)
        assert job.status == "cancelled"
        assert job.completed_entities == 1

    def test_incremental_job_records_checkpoint(self, db, connection, sync_job_service, checkpoint_service, fake_client):
        fake_client.cdc_items = {"Customer": [{"Id": "58", "SyncToken": "0", "DisplayName": "Unit 4B"}]}
        job = sync_job_service.start(db, REALM_ID, sync_type="incremental")

        sync_job_service.process(db)

        db.refresh(job)
        assert job.status == "completed"
        assert job.processed_records == 1
        log = db.query(QuickBooksSyncLog).filter(QuickBooksSyncLog.sync_type == "incremental_job").one()
        assert log.last_sync_checkpoint == job.created_at
        assert checkpoint_service.get_checkpoint(db, REALM_ID) == job.created_at
        assert all(call[1] == job.changed_since for call in fake_client.cdc_calls)


class TestControl:
    def test_status_reports_progress(self, db, connection, sync_job_service):
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer", "Vendor"])
        ticks = iter([0.0, 0.0, 60.0, 60.0])
        sync_job_service.process(db, time_budget=50, clock=lambda: next(ticks))

        status = sync_job_service.status(db, job.id)

        assert status["job"].id == job.id
        assert status["progress_percent"] == 50.0
        assert [c.entity_type for c in status["entity_jobs"]] == ["Customer", "Vendor"]
        assert status["elapsed_seconds"] >= 0

    def test_status_of_unknown_job(self, db, sync_job_service):
        with pytest.raises(NotFoundError):
            sync_job_service.status(db, uuid.uuid4())

    def test_cancel_terminal_job_is_rejected(self, db, connection, sync_job_service):
        job = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer"])
        sync_job_service.process(db)

        with pytest.raises(PreconditionError):
            sync_job_service.cancel(db, job.id)

    def test_list_jobs_newest_first(self, db, connection, sync_job_service):
        first = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer"])
        second = sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Vendor"])

        jobs = sync_job_service.list_jobs(db, realm_id=REALM_ID)

        assert [j.id for j in jobs] == [second.id, first.id]
        assert sync_job_service.list_jobs(db, realm_id="other-realm") == []

    def test_verify_compares_counts(self, db, connection, sync_job_service, fake_client):
        fake_client.entities = {"Customer": [{"Id": "1", "SyncToken": "0"}, {"Id": "2", "SyncToken": "0"}]}
        fake_client.company_info = {"Id": "1"}
        sync_job_service.start(db, REALM_ID, sync_type="entity_specific", entities=["Customer"])
        sync_job_service.process(db)

        result = sync_job_service.verify(db, REALM_ID)

        by_type = {r["entity_type"]: r for r in result["results"]}
        assert by_type["Customer"]["match"] is True
        assert by_type["CompanyInfo"] == {
            "entity_type": "CompanyInfo",
            "table": "qb_companies",
            "qb_count": 1,
            "local_count": 0,
            "difference": 1,
            "match": False,
        }
        assert result["summary"]["mismatched"] == ["CompanyInfo"]
        assert result["all_match"] is False
