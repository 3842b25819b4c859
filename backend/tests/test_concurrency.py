# Overview: Threaded allocation tests against a file-backed SQLite database.

"""
Concurrent allocation tests.

Uses a temp-file database (not :memory:) so every thread gets its own
connection and the database serializes writers for real.
"""
import os
import tempfile
import threading
import unittest
from datetime import date

from orseries import create_app
from orseries.errors import AllocationContentionError
from orseries.extensions import db
from orseries.models import IssuedNumber, NumberSeries, User
from orseries.services import allocation_service, counter_service, series_service
from orseries.services.concurrency import RETRYABLE_ERRORS


BUSINESS_DATE = date(2025, 10, 5)


class ConcurrentAllocationTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "OR_ALLOCATE_RETRY_ATTEMPTS": 10,
            "OR_ALLOCATE_RETRY_BACKOFF": 0.01,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            users = [User(username=f"cashier_{i}", is_active=True) for i in range(3)]
            db.session.add_all(users)
            db.session.commit()
            self.user_ids = [u.id for u in users]

            series = series_service.create_series({
                "series_name": "Concurrency",
                "prefix": "CR",
                "start_number": 1,
                "end_number": 999_999,
                "effective_from": date(2025, 1, 1),
                "is_active": True,
            })
            self.series_id = series.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _run_workers(self, user_ids, per_worker):
        created = []
        errors = []
        lock = threading.Lock()

        def worker(user_id):
            with self.app.app_context():
                try:
                    done = 0
                    while done < per_worker:
                        try:
                            issued = allocation_service.allocate(self.series_id, user_id, BUSINESS_DATE)
                        except AllocationContentionError:
                            # Retryable by contract; callers try again
                            continue
                        with lock:
                            created.append((issued.actual_number, issued.or_number))
                        done += 1
                except Exception as exc:
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(uid,)) for uid in user_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return created, errors

    def test_distinct_cashiers_never_collide(self):
        created, errors = self._run_workers(self.user_ids, 10)

        self.assertFalse(errors)
        self.assertEqual(len(created), 30)
        self.assertEqual(len({raw for raw, _ in created}), 30)
        self.assertEqual(len({or_no for _, or_no in created}), 30)

        with self.app.app_context():
            series = db.session.get(NumberSeries, self.series_id)
            self.assertEqual(series.current_number, 30)
            self.assertEqual(db.session.query(IssuedNumber).count(), 30)

            bands = sorted({raw // 100_000 for raw, _ in created})
            self.assertEqual(len(bands), 3)

    def test_same_cashier_on_two_terminals(self):
        user_id = self.user_ids[0]
        created, errors = self._run_workers([user_id, user_id], 8)

        self.assertFalse(errors)
        raws = sorted(raw for raw, _ in created)
        self.assertEqual(raws, list(range(1, 17)))

        with self.app.app_context():
            series = db.session.get(NumberSeries, self.series_id)
            self.assertEqual(series.current_number, 16)

    def test_reassignment_alongside_allocation(self):
        mover = self.user_ids[1]
        moved_to = []
        errors = []

        def reassigner():
            with self.app.app_context():
                try:
                    for offset in (300_000, 400_000, 500_000):
                        while True:
                            try:
                                counter_service.reassign_offset(self.series_id, mover, offset)
                                issued = allocation_service.allocate(self.series_id, mover, BUSINESS_DATE)
                                break
                            except (AllocationContentionError,) + RETRYABLE_ERRORS:
                                db.session.rollback()
                        moved_to.append(issued.actual_number)
                except Exception as exc:
                    errors.append(exc)
                finally:
                    db.session.remove()

        mover_thread = threading.Thread(target=reassigner)
        mover_thread.start()
        created, worker_errors = self._run_workers([self.user_ids[0]], 10)
        mover_thread.join()

        self.assertFalse(errors)
        self.assertFalse(worker_errors)
        self.assertEqual(moved_to, [300_001, 400_001, 500_001])
        self.assertEqual(sorted(raw for raw, _ in created), list(range(1, 11)))

        with self.app.app_context():
            series = db.session.get(NumberSeries, self.series_id)
            self.assertEqual(series.current_number, 13)


if __name__ == "__main__":
    unittest.main()
