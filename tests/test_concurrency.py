"""
Concurrency tests.

Each thread works through its own session against a shared file-backed
database, as FastAPI's worker threads do, and all threads share one
lock registry.
"""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from app.models.audit import AuditAction, AuditEntry
from app.models.domain import EmergencyAccessToken
from app.models.enums import ActivationStatus, ActivationType, UrgencyLevel
from app.services.emergency_access import EmergencyAccessService
from app.services.errors import AlreadyResolved
from app.services.state_machine import ActivationWorkflow
from app.services.store import RequestLocks

THREADS = 8


def build_workflow(session, settings, locks):
    return ActivationWorkflow(
        session,
        settings,
        locks=locks,
        token_issuer=EmergencyAccessService(session, settings),
        code_generator=lambda: "123456"
    )


def create_pending(session_factory, settings, locks, contact, now):
    session = session_factory()
    try:
        request = build_workflow(session, settings, locks).request_activation(
            ActivationType.PANIC_BUTTON, contact, "user_123", "Fall detected", UrgencyLevel.CRITICAL, now=now
        )
        return request.id
    finally:
        session.close()


def run_concurrently(task, count=THREADS):
    barrier = threading.Barrier(count)

    def gated(index):
        barrier.wait()
        return task(index)

    with ThreadPoolExecutor(max_workers=count) as pool:
        return list(pool.map(gated, range(count)))


class TestAtMostOnceVerification:

    def test_only_one_concurrent_verification_succeeds(self, file_session_factory, settings, contact, now):
        locks = RequestLocks()
        request_id = create_pending(file_session_factory, settings, locks, contact, now)

        def verify(index):
            session = file_session_factory()
            try:
                build_workflow(session, settings, locks).submit_verification(
                    request_id, "sms", "123456", now=now + timedelta(seconds=10 + index)
                )
                return "accepted"
            except AlreadyResolved:
                return "already_resolved"
            finally:
                session.close()

        outcomes = run_concurrently(verify)

        assert outcomes.count("accepted") == 1
        assert outcomes.count("already_resolved") == THREADS - 1

        session = file_session_factory()
        try:
            activations = session.query(AuditEntry).filter(
                AuditEntry.request_id == request_id,
                AuditEntry.action == AuditAction.REQUEST_ACTIVATED
            ).count()
            tokens = session.query(EmergencyAccessToken).filter(
                EmergencyAccessToken.activation_request_id == request_id
            ).count()
            assert activations == 1
            assert tokens == 1
        finally:
            session.close()


class TestConcurrentExpiry:

    def test_concurrent_sweeps_expire_once(self, file_session_factory, settings, contact, now):
        locks = RequestLocks()
        request_ids = [create_pending(file_session_factory, settings, locks, contact, now) for _ in range(3)]

        session = file_session_factory()
        try:
            workflow = build_workflow(session, settings, locks)
            for request_id in request_ids:
                workflow.submit_verification(request_id, "in_app", now=now)
        finally:
            session.close()

        def sweep(index):
            session = file_session_factory()
            try:
                return build_workflow(session, settings, locks).cleanup_expired(now=now + timedelta(days=2))
            finally:
                session.close()

        counts = run_concurrently(sweep, count=4)

        assert sum(counts) == len(request_ids)

        session = file_session_factory()
        try:
            expired_entries = session.query(AuditEntry).filter(
                AuditEntry.action == AuditAction.REQUEST_EXPIRED
            ).count()
            assert expired_entries == len(request_ids)
            statuses = {
                build_workflow(session, settings, locks).get_request(rid).status for rid in request_ids
            }
            assert statuses == {ActivationStatus.EXPIRED}
        finally:
            session.close()

    def test_cancel_racing_verification(self, file_session_factory, settings, contact, now):
        """Cancel and verify on the same request serialise; the state ends consistent."""
        locks = RequestLocks()
        request_id = create_pending(file_session_factory, settings, locks, contact, now)

        def act(index):
            session = file_session_factory()
            try:
                workflow = build_workflow(session, settings, locks)
                if index % 2:
                    workflow.cancel_activation(request_id, "Changed my mind", now=now + timedelta(seconds=5))
                    return "cancelled"
                try:
                    workflow.submit_verification(request_id, "in_app", now=now + timedelta(seconds=5))
                    return "activated"
                except AlreadyResolved:
                    return "already_resolved"
            finally:
                session.close()

        outcomes = run_concurrently(act, count=4)

        session = file_session_factory()
        try:
            request = build_workflow(session, settings, locks).get_request(request_id)
            assert request.status == ActivationStatus.CANCELLED
            assert outcomes.count("activated") <= 1
            live_tokens = session.query(EmergencyAccessToken).filter(
                EmergencyAccessToken.activation_request_id == request_id,
                EmergencyAccessToken.revoked_at.is_(None)
            ).count()
            assert live_tokens == 0
        finally:
            session.close()
