from fastapi import APIRouter, Depends, Query, status

from app.api.deps import (
    get_current_user,
    get_optional_user,
    get_referral_service,
    require_admin,
)
from app.core.errors import InvalidReferralCodeFormat, ReferralCodeNotFound
from app.core.security import AuthenticatedUser
from app.schemas.referrals import (
    AdminReferralStatsRead,
    AppliedReferralRead,
    ApplyReferralRequest,
    CompletedReferralRead,
    CompleteReferralRequest,
    ExpireReferralsRead,
    PremiumAccessRead,
    ReferralCodeRead,
    ReferralProgressRead,
    ReferralRead,
    ReferralStatsRead,
    ValidateCodeRead,
)
from app.services.referral_service import ReferralService, is_valid_code_format, referral_to_dict

router = APIRouter()


@router.post("/code", response_model=ReferralCodeRead)
def generate_referral_code(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
) -> ReferralCodeRead:
    issued = service.issue_code(current_user.user_id)
    return ReferralCodeRead(
        referral_code=issued.code,
        is_new=issued.is_new,
        created_at=issued.created_at,
        message=(
            "Referral code generated successfully" if issued.is_new else "Existing referral code retrieved"
        ),
    )


@router.post("/apply", response_model=AppliedReferralRead, status_code=status.HTTP_201_CREATED)
def apply_referral_code(
    payload: ApplyReferralRequest,
    current_user: AuthenticatedUser | None = Depends(get_optional_user),
    service: ReferralService = Depends(get_referral_service),
) -> AppliedReferralRead:
    applied = service.apply_code(
        payload.referral_code.strip(),
        payload.user_email,
        applicant_user_id=current_user.user_id if current_user else None,
    )
    return AppliedReferralRead(
        referral_id=applied.referral_id,
        referrer_id=applied.referrer_id,
        created_at=applied.created_at,
        expires_at=applied.expires_at,
    )


@router.get("/validate", response_model=ValidateCodeRead)
def validate_referral_code(
    code: str = Query(min_length=1, max_length=20),
    service: ReferralService = Depends(get_referral_service),
) -> ValidateCodeRead:
    if not is_valid_code_format(code):
        raise InvalidReferralCodeFormat()
    if not service.validate_code(code):
        raise ReferralCodeNotFound()
    return ValidateCodeRead(valid=True, referral_code=code)


@router.get("/stats", response_model=ReferralStatsRead)
def get_referral_stats(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
) -> ReferralStatsRead:
    return ReferralStatsRead.model_validate(service.stats(current_user.user_id))


@router.get("/progress", response_model=ReferralProgressRead)
def get_referral_progress(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
) -> ReferralProgressRead:
    return ReferralProgressRead.model_validate(service.progress(current_user.user_id))


@router.post("/complete", response_model=CompletedReferralRead)
def complete_referral(
    payload: CompleteReferralRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
) -> CompletedReferralRead:
    referral = service.complete(payload.referral_id)
    return CompletedReferralRead(referral=ReferralRead.model_validate(referral_to_dict(referral)))


@router.get("/premium-access", response_model=PremiumAccessRead)
def get_premium_access(
    current_user: AuthenticatedUser = Depends(get_current_user),
    service: ReferralService = Depends(get_referral_service),
) -> PremiumAccessRead:
    return PremiumAccessRead(
        user_id=current_user.user_id,
        has_premium_access=service.has_premium_access(current_user.user_id),
    )


@router.get("/admin/stats", response_model=AdminReferralStatsRead)
def get_admin_referral_stats(
    _: AuthenticatedUser = Depends(require_admin),
    service: ReferralService = Depends(get_referral_service),
) -> AdminReferralStatsRead:
    return AdminReferralStatsRead.model_validate(
        {
            "summary": service.admin_summary(),
            "statistics": service.system_statistics(),
        }
    )


@router.post("/admin/expire", response_model=ExpireReferralsRead)
def expire_stale_referrals(
    _: AuthenticatedUser = Depends(require_admin),
    service: ReferralService = Depends(get_referral_service),
) -> ExpireReferralsRead:
    return ExpireReferralsRead(expired=service.expire_stale())
