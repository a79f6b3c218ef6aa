from datetime import datetime, timedelta, timezone
import re
import unittest

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import Settings
from app.core.errors import (
    AlreadyReferred,
    ConflictError,
    ExpiredError,
    InvalidReferralCodeFormat,
    ReferralCodeNotFound,
    ReferralExpired,
    ReferralNotFoundOrCompleted,
    ReferrerMissing,
    SelfReferral,
    StorageError,
    ValidationError,
)
from app.db.base import Base
from app.db.datastore import SqlAlchemyDatastore
from app.db.models import Referral, ReferralCode, ReferralReward, UserProfile
from app.services.referral_service import ReferralService, progress_status
from app.services.reward_service import RewardService


class _FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def _make_datastore(datastore_cls: type[SqlAlchemyDatastore] = SqlAlchemyDatastore) -> SqlAlchemyDatastore:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return datastore_cls(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))


class _RacingCodeDatastore(SqlAlchemyDatastore):
    """The first code lookup misses while another request inserts HB-11111111."""

    def __init__(self, session_factory) -> None:
        super().__init__(session_factory)
        self.raced = False

    def find(self, model, *conditions, **filters):
        if model is ReferralCode and not self.raced:
            self.raced = True
            self.insert(ReferralCode, user_id=filters["user_id"], referral_code="HB-11111111", is_active=True)
            return None
        return super().find(model, *conditions, **filters)


class _LateReferralDatastore(SqlAlchemyDatastore):
    """Referral lookups always miss, as if a concurrent apply committed after the check."""

    def find(self, model, *conditions, **filters):
        if model is Referral:
            return None
        return super().find(model, *conditions, **filters)


class _ContendedRewardDatastore(SqlAlchemyDatastore):
    """Every conditional reward update loses to another writer."""

    def update(self, model, patch, *conditions, **filters):
        if model is ReferralReward:
            return []
        return super().update(model, patch, *conditions, **filters)


class _FailingRewardService(RewardService):
    def record_completion(self, user_id: str) -> ReferralReward:
        raise StorageError("reward write failed")


class ReferralServiceTestCase(unittest.TestCase):
    datastore_cls = SqlAlchemyDatastore

    def setUp(self) -> None:
        self.clock = _FakeClock()
        self.datastore = _make_datastore(self.datastore_cls)
        self.settings = Settings(
            referral_validity_days=30,
            referral_premium_threshold=10,
            referral_premium_duration_days=None,
        )
        self.service = ReferralService(self.datastore, settings=self.settings, clock=self.clock)
        self._add_profile("U1", "owner@x.com")
        self._add_profile("U2", "friend@x.com")

    def _add_profile(self, user_id: str, email: str, is_admin: bool = False) -> None:
        self.datastore.insert(UserProfile, user_id=user_id, email=email, is_admin=is_admin)

    def _add_code(self, user_id: str, code: str) -> None:
        self.datastore.insert(
            ReferralCode,
            user_id=user_id,
            referral_code=code,
            is_active=True,
            created_at=self.clock(),
        )


class ReferralCodeIssuerTests(ReferralServiceTestCase):
    def test_issue_is_idempotent(self) -> None:
        first = self.service.issue_code("U1")
        second = self.service.issue_code("U1")
        self.assertTrue(first.is_new)
        self.assertFalse(second.is_new)
        self.assertEqual(first.code, second.code)
        self.assertEqual(self.datastore.count(ReferralCode, user_id="U1", is_active=True), 1)

    def test_issued_code_format(self) -> None:
        for user_id in ("U1", "U2", "U3"):
            code = self.service.issue_code(user_id).code
            self.assertRegex(code, re.compile(r"^HB-[A-F0-9]{8}$"))

    def test_codes_differ_between_users(self) -> None:
        self.assertNotEqual(self.service.issue_code("U1").code, self.service.issue_code("U2").code)

    def test_database_rejects_second_active_code(self) -> None:
        self.service.issue_code("U1")
        with self.assertRaises(ConflictError):
            self._add_code("U1", "HB-00000001")


class ReferralApplicationTests(ReferralServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._add_code("U1", "HB-ABCDEF12")

    def test_apply_creates_pending_referral(self) -> None:
        applied = self.service.apply_code("HB-ABCDEF12", "New@X.com", applicant_user_id="U2")
        self.assertEqual(applied.referrer_id, "U1")
        self.assertEqual(applied.expires_at, self.clock.now + timedelta(days=30))

        referral = self.datastore.find(Referral, id=applied.referral_id)
        self.assertEqual(referral.status, "pending")
        self.assertEqual(referral.referred_email, "new@x.com")
        reward = self.datastore.find(ReferralReward, user_id="U1")
        self.assertEqual(reward.completed_referrals, 0)

    def test_invalid_format(self) -> None:
        for code in ("hb-abcdef12", "HB-ABCDEF1", "HB-ABCDEFGH", "XX-ABCDEF12", "HB-ABCDEF12\n"):
            with self.assertRaises(InvalidReferralCodeFormat):
                self.service.apply_code(code, "new@x.com")

    def test_invalid_email(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.apply_code("HB-ABCDEF12", "not-an-email")

    def test_unknown_code(self) -> None:
        with self.assertRaises(ReferralCodeNotFound):
            self.service.apply_code("HB-00000000", "new@x.com")

    def test_inactive_code(self) -> None:
        self.datastore.update(ReferralCode, {"is_active": False}, referral_code="HB-ABCDEF12")
        with self.assertRaises(ReferralCodeNotFound):
            self.service.apply_code("HB-ABCDEF12", "new@x.com")

    def test_referrer_without_profile(self) -> None:
        self._add_code("GHOST", "HB-11111111")
        with self.assertRaises(ReferrerMissing):
            self.service.apply_code("HB-11111111", "new@x.com")

    def test_same_email_cannot_be_referred_twice(self) -> None:
        self.service.apply_code("HB-ABCDEF12", "new@x.com")
        with self.assertRaises(AlreadyReferred):
            self.service.apply_code("HB-ABCDEF12", "new@x.com")
        with self.assertRaises(ConflictError):
            self.service.apply_code("HB-ABCDEF12", " NEW@x.com ")
        self.assertEqual(self.datastore.count(Referral, referred_email="new@x.com"), 1)

    def test_email_stays_taken_after_expiry(self) -> None:
        self.service.apply_code("HB-ABCDEF12", "new@x.com")
        self.clock.advance(days=31)
        self.service.expire_stale()
        with self.assertRaises(AlreadyReferred):
            self.service.apply_code("HB-ABCDEF12", "new@x.com")

    def test_self_referral_by_user_id(self) -> None:
        with self.assertRaises(SelfReferral):
            self.service.apply_code("HB-ABCDEF12", "other@x.com", applicant_user_id="U1")

    def test_self_referral_by_owner_email(self) -> None:
        with self.assertRaises(SelfReferral):
            self.service.apply_code("HB-ABCDEF12", "Owner@X.com")
        self.assertEqual(self.datastore.count(Referral), 0)

    def test_validate_code(self) -> None:
        self.assertTrue(self.service.validate_code("HB-ABCDEF12"))
        self.assertFalse(self.service.validate_code("HB-00000000"))
        self.assertFalse(self.service.validate_code("hb-abcdef12"))
        self.assertFalse(self.service.validate_code(None))
        self.datastore.update(ReferralCode, {"is_active": False}, referral_code="HB-ABCDEF12")
        self.assertFalse(self.service.validate_code("HB-ABCDEF12"))


class ReferralLifecycleTests(ReferralServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._add_code("U1", "HB-ABCDEF12")

    def _apply(self, email: str) -> str:
        return self.service.apply_code("HB-ABCDEF12", email).referral_id

    def test_complete_pending_referral(self) -> None:
        referral_id = self._apply("new@x.com")
        self.clock.advance(days=1)
        referral = self.service.complete(referral_id)
        self.assertEqual(referral.status, "completed")
        self.assertIsNotNone(referral.completed_at)
        reward = self.datastore.find(ReferralReward, user_id="U1")
        self.assertEqual(reward.completed_referrals, 1)

    def test_complete_twice_fails(self) -> None:
        referral_id = self._apply("new@x.com")
        self.service.complete(referral_id)
        with self.assertRaises(ReferralNotFoundOrCompleted):
            self.service.complete(referral_id)
        reward = self.datastore.find(ReferralReward, user_id="U1")
        self.assertEqual(reward.completed_referrals, 1)

    def test_complete_unknown_referral(self) -> None:
        with self.assertRaises(ReferralNotFoundOrCompleted):
            self.service.complete("missing")

    def test_complete_past_expiry_while_still_pending(self) -> None:
        referral_id = self._apply("new@x.com")
        self.clock.advance(days=30, seconds=1)
        with self.assertRaises(ExpiredError):
            self.service.complete(referral_id)
        self.assertEqual(self.datastore.find(Referral, id=referral_id).status, "pending")

    def test_expire_stale_is_idempotent(self) -> None:
        self._apply("a@x.com")
        self._apply("b@x.com")
        self.clock.advance(days=31)
        self._apply("c@x.com")
        self.assertEqual(self.service.expire_stale(), 2)
        self.assertEqual(self.service.expire_stale(), 0)
        self.assertEqual(self.datastore.count(Referral, status="expired"), 2)
        self.assertEqual(self.datastore.count(Referral, status="pending"), 1)

    def test_expire_stale_leaves_completed_referrals(self) -> None:
        referral_id = self._apply("a@x.com")
        self.service.complete(referral_id)
        self.clock.advance(days=60)
        self.assertEqual(self.service.expire_stale(), 0)
        self.assertEqual(self.datastore.find(Referral, id=referral_id).status, "completed")

    def test_full_scenario(self) -> None:
        applied = self.service.apply_code("HB-ABCDEF12", "new@x.com", applicant_user_id="U2")
        referral = self.datastore.find(Referral, id=applied.referral_id)
        self.assertEqual(referral.status, "pending")

        self.clock.advance(days=29)
        self.assertEqual(self.service.expire_stale(), 0)

        self.clock.advance(days=2)
        self.assertEqual(self.service.expire_stale(), 1)
        self.assertEqual(self.datastore.find(Referral, id=applied.referral_id).status, "expired")

        with self.assertRaises(ReferralExpired):
            self.service.complete(applied.referral_id)

    def test_premium_granted_at_threshold(self) -> None:
        referral_ids = [self._apply(f"friend{i}@x.com") for i in range(10)]
        for referral_id in referral_ids[:9]:
            self.service.complete(referral_id)
        self.assertFalse(self.service.has_premium_access("U1"))

        self.service.complete(referral_ids[9])
        reward = self.datastore.find(ReferralReward, user_id="U1")
        self.assertEqual(reward.completed_referrals, 10)
        self.assertTrue(reward.premium_granted)
        self.assertIsNotNone(reward.premium_granted_at)
        self.assertIsNone(reward.premium_expires_at)
        self.assertTrue(self.service.has_premium_access("U1"))

    def test_premium_duration_is_applied(self) -> None:
        self.settings.referral_premium_duration_days = 30
        referral_ids = [self._apply(f"friend{i}@x.com") for i in range(10)]
        for referral_id in referral_ids:
            self.service.complete(referral_id)
        self.assertTrue(self.service.has_premium_access("U1"))
        self.clock.advance(days=31)
        self.assertFalse(self.service.has_premium_access("U1"))

    def test_has_premium_access(self) -> None:
        self.assertFalse(self.service.has_premium_access("U1"))
        self.datastore.insert(
            ReferralReward,
            user_id="U2",
            completed_referrals=10,
            premium_granted=True,
            premium_granted_at=self.clock(),
            premium_expires_at=self.clock() + timedelta(days=1),
        )
        self.assertTrue(self.service.has_premium_access("U2"))
        self.clock.advance(days=2)
        self.assertFalse(self.service.has_premium_access("U2"))

    def test_stats(self) -> None:
        first = self._apply("a@x.com")
        self.clock.advance(minutes=1)
        self._apply("b@x.com")
        self.clock.advance(minutes=1)
        latest = self._apply("c@x.com")
        self.service.complete(first)
        self.clock.advance(days=31)
        self.service.expire_stale()

        stats = self.service.stats("U1")
        self.assertEqual(stats["user"]["referral_code"], "HB-ABCDEF12")
        self.assertEqual(stats["rewards"]["completed_referrals"], 1)
        self.assertFalse(stats["rewards"]["premium_granted"])
        self.assertEqual(
            stats["statistics"],
            {
                "total_referrals": 3,
                "completed_referrals": 1,
                "pending_referrals": 0,
                "expired_referrals": 2,
                "referrals_needed_for_premium": 9,
                "progress_percentage": 10.0,
            },
        )
        self.assertEqual(stats["referrals"][0]["id"], latest)

    def test_stats_for_user_without_activity(self) -> None:
        stats = self.service.stats("U2")
        self.assertIsNone(stats["user"]["referral_code"])
        self.assertEqual(stats["statistics"]["referrals_needed_for_premium"], 10)
        self.assertEqual(stats["statistics"]["progress_percentage"], 0.0)
        self.assertEqual(stats["referrals"], [])

    def test_progress_percentage_is_capped(self) -> None:
        self.datastore.insert(ReferralReward, user_id="U2", completed_referrals=14, premium_granted=True)
        stats = self.service.stats("U2")
        self.assertEqual(stats["statistics"]["progress_percentage"], 100.0)
        self.assertEqual(stats["statistics"]["referrals_needed_for_premium"], 0)

    def test_progress(self) -> None:
        self.datastore.insert(ReferralReward, user_id="U2", completed_referrals=6)
        self.assertEqual(
            self.service.progress("U2"),
            {
                "user_id": "U2",
                "completed_referrals": 6,
                "progress_status": "Halfway!",
                "referrals_needed_for_premium": 4,
            },
        )

    def test_progress_labels(self) -> None:
        self.assertEqual(progress_status(0), "Just Beginning")
        self.assertEqual(progress_status(2), "Getting Started")
        self.assertEqual(progress_status(5), "Halfway!")
        self.assertEqual(progress_status(7), "Almost There!")
        self.assertEqual(progress_status(10), "Premium Unlocked")

    def test_system_statistics_and_admin_summary(self) -> None:
        self._add_code("U2", "HB-22222222")
        self.service.complete(self._apply("a@x.com"))
        self._apply("b@x.com")
        self.service.apply_code("HB-22222222", "c@x.com")

        statistics = self.service.system_statistics()
        self.assertEqual(statistics["total_referrals"], 3)
        self.assertEqual(statistics["completed_referrals"], 1)
        self.assertEqual(statistics["pending_referrals"], 2)
        self.assertEqual(statistics["unique_referrers"], 2)
        self.assertEqual(statistics["unique_referred_emails"], 3)

        summary = self.service.admin_summary()
        self.assertEqual([entry["user_id"] for entry in summary], ["U1", "U2"])
        self.assertEqual(summary[0]["completed_referrals"], 1)
        self.assertEqual(summary[0]["total_referrals"], 2)
        self.assertEqual(summary[0]["pending_count"], 1)
        self.assertEqual(summary[1]["total_referrals"], 1)


class ConcurrentIssueTests(ReferralServiceTestCase):
    datastore_cls = _RacingCodeDatastore

    def test_issue_returns_winner_after_losing_insert_race(self) -> None:
        issued = self.service.issue_code("U1")
        self.assertTrue(self.datastore.raced)
        self.assertEqual(issued.code, "HB-11111111")
        self.assertFalse(issued.is_new)
        self.assertEqual(self.datastore.count(ReferralCode, user_id="U1", is_active=True), 1)


class ConcurrentApplyTests(ReferralServiceTestCase):
    datastore_cls = _LateReferralDatastore

    def test_unique_email_constraint_maps_to_already_referred(self) -> None:
        self._add_code("U1", "HB-ABCDEF12")
        self.service.apply_code("HB-ABCDEF12", "new@x.com")
        with self.assertRaises(AlreadyReferred):
            self.service.apply_code("HB-ABCDEF12", "new@x.com")
        self.assertEqual(self.datastore.count(Referral, referred_email="new@x.com"), 1)


class CompletionAtomicityTests(ReferralServiceTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._add_code("U1", "HB-ABCDEF12")

    def _status_and_count(self, referral_id: str) -> tuple[str, int]:
        referral = self.datastore.find(Referral, id=referral_id)
        reward = self.datastore.find(ReferralReward, user_id="U1")
        return referral.status, reward.completed_referrals

    def test_failed_reward_write_leaves_referral_pending(self) -> None:
        service = ReferralService(
            self.datastore,
            settings=self.settings,
            clock=self.clock,
            rewards=_FailingRewardService(self.datastore, settings=self.settings, clock=self.clock),
        )
        referral_id = service.apply_code("HB-ABCDEF12", "new@x.com").referral_id
        with self.assertRaises(StorageError):
            service.complete(referral_id)
        self.assertEqual(self._status_and_count(referral_id), ("pending", 0))

        self.service.complete(referral_id)
        self.assertEqual(self._status_and_count(referral_id), ("completed", 1))

    def test_transaction_rolls_back_every_write(self) -> None:
        with self.assertRaises(RuntimeError):
            with self.datastore.transaction():
                self._add_profile("U3", "third@x.com")
                self.datastore.update(UserProfile, {"is_admin": True}, user_id="U1")
                raise RuntimeError("abort")
        self.assertIsNone(self.datastore.find(UserProfile, user_id="U3"))
        self.assertFalse(self.datastore.find(UserProfile, user_id="U1").is_admin)

    def test_transaction_commits_on_success(self) -> None:
        with self.datastore.transaction():
            self._add_profile("U3", "third@x.com")
            self.datastore.update(UserProfile, {"is_admin": True}, user_id="U1")
        self.assertIsNotNone(self.datastore.find(UserProfile, user_id="U3"))
        self.assertTrue(self.datastore.find(UserProfile, user_id="U1").is_admin)


class ContendedRewardTests(ReferralServiceTestCase):
    datastore_cls = _ContendedRewardDatastore

    def test_reward_retries_are_bounded(self) -> None:
        self._add_code("U1", "HB-ABCDEF12")
        referral_id = self.service.apply_code("HB-ABCDEF12", "new@x.com").referral_id
        with self.assertRaises(StorageError):
            self.service.complete(referral_id)
        self.assertEqual(self.datastore.find(Referral, id=referral_id).status, "pending")
        self.assertEqual(self.datastore.find(ReferralReward, user_id="U1").completed_referrals, 0)


class StorageFailureTests(unittest.TestCase):
    def setUp(self) -> None:
        # No tables: every query fails with an operational error.
        engine = create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        datastore = SqlAlchemyDatastore(sessionmaker(bind=engine, autoflush=False, expire_on_commit=False))
        self.service = ReferralService(datastore, settings=Settings(), clock=_FakeClock())

    def test_lookup_failure_is_not_reported_as_missing(self) -> None:
        with self.assertRaises(StorageError):
            self.service.validate_code("HB-ABCDEF12")
        with self.assertRaises(StorageError):
            self.service.complete("missing")
        with self.assertRaises(StorageError):
            self.service.apply_code("HB-ABCDEF12", "new@x.com")

    def test_issue_does_not_retry_storage_failures_as_conflicts(self) -> None:
        with self.assertRaises(StorageError) as caught:
            self.service.issue_code("U1")
        self.assertEqual(caught.exception.message, "Failed to read user_referral_codes")


if __name__ == "__main__":
    unittest.main()
