"""Aggregate reward bookkeeping for referrers.

One ``ReferralReward`` row per user. The completed-referral counter only
moves up, and premium is granted once the counter reaches the configured
threshold.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from app.core.config import Settings
from app.core.errors import DuplicateRowError, StorageError
from app.core.logging_config import get_logger
from app.db.datastore import SqlAlchemyDatastore
from app.db.models import ReferralReward

MAX_REWARD_UPDATE_ATTEMPTS = 5

logger = get_logger(__name__)


class RewardService:
    def __init__(
        self,
        datastore: SqlAlchemyDatastore,
        *,
        settings: Settings,
        clock: Callable[[], datetime],
    ) -> None:
        self._datastore = datastore
        self._settings = settings
        self._clock = clock

    @property
    def premium_threshold(self) -> int:
        return max(1, int(self._settings.referral_premium_threshold))

    def get_reward(self, user_id: str) -> ReferralReward | None:
        return self._datastore.find(ReferralReward, user_id=user_id)

    def ensure_reward_row(self, user_id: str) -> ReferralReward:
        existing = self.get_reward(user_id)
        if existing:
            return existing
        now = self._clock()
        try:
            return self._datastore.insert(
                ReferralReward,
                user_id=user_id,
                completed_referrals=0,
                premium_granted=False,
                created_at=now,
                updated_at=now,
            )
        except DuplicateRowError:
            # Another request created the row first.
            winner = self.get_reward(user_id)
            if winner is None:
                raise
            return winner

    def record_completion(self, user_id: str) -> ReferralReward:
        """Add one completed referral to ``user_id``'s counter.

        Callers completing a referral run this inside the same datastore
        transaction as the status change, so a failure here undoes both.
        """
        for _ in range(MAX_REWARD_UPDATE_ATTEMPTS):
            reward = self.ensure_reward_row(user_id)
            now = self._clock()
            completed = int(reward.completed_referrals or 0) + 1
            patch: dict = {"completed_referrals": completed, "updated_at": now}
            grants_premium = completed >= self.premium_threshold and not reward.premium_granted
            if grants_premium:
                patch["premium_granted"] = True
                patch["premium_granted_at"] = now
                duration_days = self._settings.referral_premium_duration_days
                if duration_days:
                    patch["premium_expires_at"] = now + timedelta(days=int(duration_days))

            # Conditional on the counter we read so concurrent completions cannot
            # both apply the same increment.
            updated = self._datastore.update(
                ReferralReward,
                patch,
                user_id=user_id,
                completed_referrals=reward.completed_referrals,
            )
            if not updated:
                continue
            if grants_premium:
                logger.info("premium_granted", user_id=user_id, completed_referrals=completed)
            return updated[0]
        raise StorageError("Unable to record referral completion")
