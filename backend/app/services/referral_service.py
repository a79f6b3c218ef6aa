from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import re
from uuid import uuid4

from app.core.config import Settings, get_settings
from app.core.errors import (
    AlreadyReferred,
    DuplicateRowError,
    InvalidReferralCodeFormat,
    ReferralCodeNotFound,
    ReferralExpired,
    ReferralNotFoundOrCompleted,
    ReferrerMissing,
    SelfReferral,
    StorageError,
    ValidationError,
)
from app.core.logging_config import get_logger
from app.db.datastore import SqlAlchemyDatastore
from app.db.models import (
    REFERRAL_STATUS_COMPLETED,
    REFERRAL_STATUS_EXPIRED,
    REFERRAL_STATUS_PENDING,
    REFERRAL_STATUSES,
    Referral,
    ReferralCode,
    ReferralReward,
    UserProfile,
)
from app.services.reward_service import RewardService

REFERRAL_CODE_PREFIX = "HB-"
REFERRAL_CODE_PATTERN = re.compile(r"^HB-[A-F0-9]{8}$")
EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}$")
MAX_CODE_ISSUE_ATTEMPTS = 5
PROGRESS_LABELS = (
    (10, "Premium Unlocked"),
    (7, "Almost There!"),
    (5, "Halfway!"),
    (2, "Getting Started"),
)

logger = get_logger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def generate_referral_code() -> str:
    return f"{REFERRAL_CODE_PREFIX}{uuid4().hex[:8].upper()}"


def is_valid_code_format(code: str | None) -> bool:
    return isinstance(code, str) and bool(REFERRAL_CODE_PATTERN.fullmatch(code))


def normalize_email(email: str | None) -> str:
    if not isinstance(email, str):
        return ""
    return email.strip().lower()


def progress_status(completed_referrals: int) -> str:
    for threshold, label in PROGRESS_LABELS:
        if completed_referrals >= threshold:
            return label
    return "Just Beginning"


@dataclass(frozen=True)
class IssuedCode:
    code: str
    is_new: bool
    created_at: datetime | None


@dataclass(frozen=True)
class AppliedReferral:
    referral_id: str
    referrer_id: str
    created_at: datetime
    expires_at: datetime


def referral_to_dict(referral: Referral) -> dict:
    return {
        "id": referral.id,
        "referrer_id": referral.referrer_id,
        "referred_email": referral.referred_email,
        "referral_code_id": referral.referral_code_id,
        "status": referral.status,
        "created_at": _as_utc(referral.created_at),
        "completed_at": _as_utc(referral.completed_at),
        "expires_at": _as_utc(referral.expires_at),
    }


class ReferralService:
    """Issues codes, records redemptions and moves referrals through their lifecycle.

    Referral status only ever moves ``pending -> completed`` or
    ``pending -> expired``. Uniqueness of active codes per user and of
    referred emails is backed by database constraints; the checks here
    only give callers a precise error before hitting them.
    """

    def __init__(
        self,
        datastore: SqlAlchemyDatastore,
        *,
        settings: Settings | None = None,
        clock: Callable[[], datetime] = _utc_now,
        rewards: RewardService | None = None,
    ) -> None:
        self._datastore = datastore
        self._settings = settings or get_settings()
        self._clock = clock
        self._rewards = rewards or RewardService(datastore, settings=self._settings, clock=clock)

    @property
    def validity_period(self) -> timedelta:
        return timedelta(days=max(1, int(self._settings.referral_validity_days)))

    def get_active_code(self, user_id: str) -> ReferralCode | None:
        return self._datastore.find(ReferralCode, user_id=user_id, is_active=True)

    def issue_code(self, user_id: str) -> IssuedCode:
        for _ in range(MAX_CODE_ISSUE_ATTEMPTS):
            existing = self.get_active_code(user_id)
            if existing:
                return IssuedCode(
                    code=existing.referral_code,
                    is_new=False,
                    created_at=_as_utc(existing.created_at),
                )
            try:
                created = self._datastore.insert(
                    ReferralCode,
                    user_id=user_id,
                    referral_code=generate_referral_code(),
                    is_active=True,
                    created_at=self._clock(),
                )
            except DuplicateRowError:
                # Lost a race for this user's active slot, or the code collided.
                continue
            logger.info("referral_code_issued", user_id=user_id, referral_code=created.referral_code)
            return IssuedCode(
                code=created.referral_code,
                is_new=True,
                created_at=_as_utc(created.created_at),
            )
        raise StorageError("Unable to issue a unique referral code")

    def apply_code(
        self,
        referral_code: str,
        referred_email: str,
        applicant_user_id: str | None = None,
    ) -> AppliedReferral:
        if not is_valid_code_format(referral_code):
            raise InvalidReferralCodeFormat()
        email = normalize_email(referred_email)
        if not EMAIL_PATTERN.fullmatch(email):
            raise ValidationError("Invalid email format")

        code_row = self._datastore.find(ReferralCode, referral_code=referral_code, is_active=True)
        if code_row is None:
            raise ReferralCodeNotFound()

        referrer = self._datastore.find(UserProfile, user_id=code_row.user_id)
        if referrer is None:
            raise ReferrerMissing()

        if self._datastore.find(Referral, referred_email=email) is not None:
            raise AlreadyReferred()

        if applicant_user_id == code_row.user_id or normalize_email(referrer.email) == email:
            raise SelfReferral()

        now = self._clock()
        try:
            referral = self._datastore.insert(
                Referral,
                referrer_id=code_row.user_id,
                referred_email=email,
                referral_code_id=code_row.id,
                status=REFERRAL_STATUS_PENDING,
                created_at=now,
                expires_at=now + self.validity_period,
            )
        except DuplicateRowError as exc:
            raise AlreadyReferred() from exc

        self._rewards.ensure_reward_row(code_row.user_id)
        logger.info(
            "referral_applied",
            referral_id=referral.id,
            referrer_id=code_row.user_id,
        )
        return AppliedReferral(
            referral_id=referral.id,
            referrer_id=code_row.user_id,
            created_at=_as_utc(referral.created_at),
            expires_at=_as_utc(referral.expires_at),
        )

    def complete(self, referral_id: str) -> Referral:
        referral = self._datastore.find(Referral, id=referral_id)
        if referral is None:
            raise ReferralNotFoundOrCompleted()
        if referral.status == REFERRAL_STATUS_EXPIRED:
            raise ReferralExpired()
        if referral.status != REFERRAL_STATUS_PENDING:
            raise ReferralNotFoundOrCompleted()

        now = self._clock()
        if _as_utc(referral.expires_at) <= now:
            raise ReferralExpired()

        self._rewards.ensure_reward_row(referral.referrer_id)
        # Status change and reward increment commit together or not at all.
        with self._datastore.transaction():
            updated = self._datastore.update(
                Referral,
                {"status": REFERRAL_STATUS_COMPLETED, "completed_at": now},
                id=referral_id,
                status=REFERRAL_STATUS_PENDING,
            )
            if not updated:
                raise ReferralNotFoundOrCompleted()
            self._rewards.record_completion(referral.referrer_id)
        logger.info("referral_completed", referral_id=referral_id, referrer_id=referral.referrer_id)
        return updated[0]

    def expire_stale(self) -> int:
        now = self._clock()
        expired = self._datastore.update(
            Referral,
            {"status": REFERRAL_STATUS_EXPIRED},
            Referral.expires_at < now,
            status=REFERRAL_STATUS_PENDING,
        )
        if expired:
            logger.info("stale_referrals_expired", count=len(expired))
        return len(expired)

    def validate_code(self, referral_code: str | None) -> bool:
        if not is_valid_code_format(referral_code):
            return False
        return self._datastore.find(ReferralCode, referral_code=referral_code, is_active=True) is not None

    def has_premium_access(self, user_id: str) -> bool:
        reward = self._rewards.get_reward(user_id)
        if reward is None or not reward.premium_granted:
            return False
        expires_at = _as_utc(reward.premium_expires_at)
        return expires_at is None or expires_at > self._clock()

    def list_referrals(self, user_id: str) -> list[Referral]:
        return self._datastore.find_all(
            Referral,
            order_by=Referral.created_at.desc(),
            referrer_id=user_id,
        )

    def stats(self, user_id: str) -> dict:
        reward = self._rewards.get_reward(user_id)
        code = self.get_active_code(user_id)
        referrals = self.list_referrals(user_id)

        threshold = self._rewards.premium_threshold
        completed_rewards = int(reward.completed_referrals) if reward else 0
        by_status = dict.fromkeys(REFERRAL_STATUSES, 0)
        for referral in referrals:
            by_status[referral.status] = by_status.get(referral.status, 0) + 1

        return {
            "user": {
                "id": user_id,
                "referral_code": code.referral_code if code else None,
                "code_created_at": _as_utc(code.created_at) if code else None,
            },
            "rewards": {
                "completed_referrals": completed_rewards,
                "premium_granted": bool(reward.premium_granted) if reward else False,
                "premium_granted_at": _as_utc(reward.premium_granted_at) if reward else None,
                "premium_expires_at": _as_utc(reward.premium_expires_at) if reward else None,
            },
            "statistics": {
                "total_referrals": len(referrals),
                "completed_referrals": by_status[REFERRAL_STATUS_COMPLETED],
                "pending_referrals": by_status[REFERRAL_STATUS_PENDING],
                "expired_referrals": by_status[REFERRAL_STATUS_EXPIRED],
                "referrals_needed_for_premium": max(0, threshold - completed_rewards),
                "progress_percentage": min(100.0, completed_rewards / threshold * 100),
            },
            "referrals": [referral_to_dict(referral) for referral in referrals],
        }

    def progress(self, user_id: str) -> dict:
        reward = self._rewards.get_reward(user_id)
        completed = int(reward.completed_referrals) if reward else 0
        return {
            "user_id": user_id,
            "completed_referrals": completed,
            "progress_status": progress_status(completed),
            "referrals_needed_for_premium": max(0, self._rewards.premium_threshold - completed),
        }

    def system_statistics(self) -> dict:
        referrals = self._datastore.find_all(Referral)
        return {
            "total_referrals": len(referrals),
            "completed_referrals": sum(1 for r in referrals if r.status == REFERRAL_STATUS_COMPLETED),
            "pending_referrals": sum(1 for r in referrals if r.status == REFERRAL_STATUS_PENDING),
            "expired_referrals": sum(1 for r in referrals if r.status == REFERRAL_STATUS_EXPIRED),
            "unique_referrers": len({r.referrer_id for r in referrals}),
            "unique_referred_emails": len({r.referred_email for r in referrals}),
        }

    def admin_summary(self) -> list[dict]:
        profiles = self._datastore.find_all(UserProfile)
        rewards = {reward.user_id: reward for reward in self._datastore.find_all(ReferralReward)}
        counts: dict[str, dict[str, int]] = {}
        for referral in self._datastore.find_all(Referral):
            bucket = counts.setdefault(referral.referrer_id, {})
            bucket[referral.status] = bucket.get(referral.status, 0) + 1

        summary = []
        for profile in profiles:
            reward = rewards.get(profile.user_id)
            bucket = counts.get(profile.user_id, {})
            summary.append(
                {
                    "user_id": profile.user_id,
                    "email": profile.email,
                    "completed_referrals": int(reward.completed_referrals) if reward else 0,
                    "premium_granted": bool(reward.premium_granted) if reward else False,
                    "premium_granted_at": _as_utc(reward.premium_granted_at) if reward else None,
                    "premium_expires_at": _as_utc(reward.premium_expires_at) if reward else None,
                    "total_referrals": sum(bucket.values()),
                    "completed_count": bucket.get(REFERRAL_STATUS_COMPLETED, 0),
                    "pending_count": bucket.get(REFERRAL_STATUS_PENDING, 0),
                    "expired_count": bucket.get(REFERRAL_STATUS_EXPIRED, 0),
                }
            )
        summary.sort(key=lambda entry: entry["completed_referrals"], reverse=True)
        return summary
