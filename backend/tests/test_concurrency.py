"""
Concurrency safeguards for approval records.

Uses a file-backed SQLite database so every thread gets its own connection.
"""

import os
import tempfile
import threading
import unittest

from sqlalchemy import update

from pharmaflow import create_app
from pharmaflow.extensions import db
from pharmaflow.models import ApprovalRecord, User
from pharmaflow.services import (
    approval_service,
    auth_service,
    decision_service,
    document_service,
    permission_service,
    upstream_service,
    workflow_service,
)
from pharmaflow.services.concurrency import commit_or_conflict, retry_on_conflict
from pharmaflow.services.errors import ConcurrentModificationError, WorkflowValidationError


class ApprovalConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "APPROVAL_CONFLICT_RETRIES": 3,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            auth_service.create_default_roles()
            permission_service.initialize_permissions()
            permission_service.assign_default_role_permissions()
            workflow_service.seed_default_workflow()
            qc_pending = workflow_service.get_stage_by_code("QC_PENDING")

            manager = auth_service.create_user("manager", "manager@test.local", "Password123!", rounds=4)
            auth_service.assign_role(manager.id, "manager")
            inspector = auth_service.create_user("inspector", "inspector@test.local", "Password123!", rounds=4)
            auth_service.assign_role(inspector.id, "qc_inspector")
            permission_service.assign_stage_permission(
                user_id=inspector.id,
                stage_id=qc_pending.id,
                permission_codes=["DECIDE_LINE_ITEMS", "SUBMIT_RECORD"],
                assigned_by_user_id=manager.id,
            )

            invoice = upstream_service.create_invoice_receiving(
                invoice_number="INV-C-1",
                received_by_user_id=manager.id,
                lines=[
                    {"product_name": "Cefixime 200mg", "received_qty": 40},
                    {"product_name": "Metformin 500mg", "received_qty": 60},
                    {"product_name": "Omeprazole 20mg", "received_qty": 80},
                ],
            )
            qc = upstream_service.create_quality_control_from_invoice(
                invoice.id, actor=permission_service.actor_for_user(manager)
            )

            self.inspector_id = inspector.id
            self.record_id = qc.id
            self.item_ids = [item.id for item in qc.items]

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _inspector_actor(self):
        return permission_service.actor_for_user(db.session.get(User, self.inspector_id))

    def test_stale_expected_version_is_refused(self):
        with self.app.app_context():
            record = approval_service.get_approval_record(self.record_id)
            stale = record.version_id

            decision_service.decide_item(
                self.record_id, self.item_ids[0], decision="approved",
                actor=self._inspector_actor(), expected_version=stale,
            )

            with self.assertRaises(ConcurrentModificationError) as ctx:
                decision_service.decide_item(
                    self.record_id, self.item_ids[1], decision="approved",
                    actor=self._inspector_actor(), expected_version=stale,
                )
            self.assertEqual(ctx.exception.details["expected_version"], stale)
            self.assertTrue(ctx.exception.retryable)

            record = approval_service.get_approval_record(self.record_id)
            self.assertEqual(record.approved_items, 1)

    def test_writer_on_stale_copy_gets_conflict(self):
        with self.app.app_context():
            record = approval_service.get_approval_record(self.record_id)
            record.priority = "high"

            # Another transaction bumps the row version behind our back
            with db.engine.begin() as conn:
                conn.execute(
                    update(ApprovalRecord.__table__)
                    .where(ApprovalRecord.__table__.c.id == self.record_id)
                    .values(version_id=ApprovalRecord.__table__.c.version_id + 1)
                )

            with self.assertRaises(ConcurrentModificationError):
                commit_or_conflict(self.record_id)

            record = approval_service.get_approval_record(self.record_id)
            self.assertEqual(record.priority, "medium")

    def test_retry_reruns_lost_races(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 2:
                raise ConcurrentModificationError("lost race")
            return "ok"

        with self.app.app_context():
            self.assertEqual(retry_on_conflict(flaky, backoff_base=0), "ok")
        self.assertEqual(len(calls), 2)

    def test_retry_gives_up_after_configured_attempts(self):
        calls = []

        def always_conflicts():
            calls.append(1)
            raise ConcurrentModificationError("lost race")

        with self.app.app_context():
            with self.assertRaises(ConcurrentModificationError):
                retry_on_conflict(always_conflicts, backoff_base=0)
        self.assertEqual(len(calls), 3)

    def test_retry_does_not_mask_other_errors(self):
        calls = []

        def invalid():
            calls.append(1)
            raise WorkflowValidationError("bad input")

        with self.app.app_context():
            with self.assertRaises(WorkflowValidationError):
                retry_on_conflict(invalid, backoff_base=0)
        self.assertEqual(len(calls), 1)

    def test_concurrent_decisions_keep_aggregates_consistent(self):
        results = []
        lock = threading.Lock()

        def worker(item_id):
            with self.app.app_context():
                try:
                    actor = self._inspector_actor()
                    retry_on_conflict(
                        lambda: decision_service.decide_item(
                            self.record_id, item_id, decision="approved", actor=actor
                        ),
                        attempts=5,
                    )
                    with lock:
                        results.append("decided")
                except Exception as exc:
                    with lock:
                        results.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(item_id,)) for item_id in self.item_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        unexpected = [r for r in results if r != "decided" and not isinstance(r, ConcurrentModificationError)]
        self.assertFalse(unexpected)

        with self.app.app_context():
            record = approval_service.get_approval_record(self.record_id)
            decided = [i for i in record.items if i.decision == "approved"]
            self.assertEqual(record.approved_items, len(decided))
            self.assertEqual(record.pending_items, record.total_items - len(decided))
            self.assertEqual(len(decided), results.count("decided"))

    def test_record_numbers_are_unique_across_threads(self):
        with self.app.app_context():
            document_service.next_record_number("WA")
            db.session.commit()

        created = []
        errors = []
        lock = threading.Lock()

        def worker():
            with self.app.app_context():
                try:
                    number = document_service.next_record_number("WA")
                    db.session.commit()
                    with lock:
                        created.append(number)
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertFalse(errors)
        self.assertEqual(len(created), len(set(created)))


if __name__ == "__main__":
    unittest.main()
