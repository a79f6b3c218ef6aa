from datetime import datetime

from pydantic import BaseModel, Field


class ReferralCodeRead(BaseModel):
    referral_code: str
    is_new: bool
    created_at: datetime | None = None
    message: str


class ApplyReferralRequest(BaseModel):
    referral_code: str = Field(min_length=1, max_length=20)
    user_email: str = Field(min_length=3, max_length=255)


class AppliedReferralRead(BaseModel):
    referral_id: str
    referrer_id: str
    created_at: datetime
    expires_at: datetime
    message: str = "Referral code applied successfully"


class CompleteReferralRequest(BaseModel):
    referral_id: str = Field(min_length=1, max_length=64)


class ReferralRead(BaseModel):
    id: str
    referrer_id: str
    referred_email: str
    referral_code_id: str
    status: str
    created_at: datetime
    completed_at: datetime | None = None
    expires_at: datetime

    class Config:
        from_attributes = True


class CompletedReferralRead(BaseModel):
    referral: ReferralRead
    message: str = "Referral completed successfully"


class ValidateCodeRead(BaseModel):
    valid: bool
    referral_code: str


class ReferralUserRead(BaseModel):
    id: str
    referral_code: str | None = None
    code_created_at: datetime | None = None


class ReferralRewardsRead(BaseModel):
    completed_referrals: int
    premium_granted: bool
    premium_granted_at: datetime | None = None
    premium_expires_at: datetime | None = None


class ReferralCountsRead(BaseModel):
    total_referrals: int
    completed_referrals: int
    pending_referrals: int
    expired_referrals: int
    referrals_needed_for_premium: int
    progress_percentage: float


class ReferralStatsRead(BaseModel):
    user: ReferralUserRead
    rewards: ReferralRewardsRead
    statistics: ReferralCountsRead
    referrals: list[ReferralRead]


class ReferralProgressRead(BaseModel):
    user_id: str
    completed_referrals: int
    progress_status: str
    referrals_needed_for_premium: int


class PremiumAccessRead(BaseModel):
    user_id: str
    has_premium_access: bool


class AdminReferralSummaryEntry(BaseModel):
    user_id: str
    email: str
    completed_referrals: int
    premium_granted: bool
    premium_granted_at: datetime | None = None
    premium_expires_at: datetime | None = None
    total_referrals: int
    completed_count: int
    pending_count: int
    expired_count: int


class ReferralSystemStatisticsRead(BaseModel):
    total_referrals: int
    completed_referrals: int
    pending_referrals: int
    expired_referrals: int
    unique_referrers: int
    unique_referred_emails: int


class AdminReferralStatsRead(BaseModel):
    summary: list[AdminReferralSummaryEntry]
    statistics: ReferralSystemStatisticsRead


class ExpireReferralsRead(BaseModel):
    expired: int
