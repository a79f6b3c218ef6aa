from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import Settings, get_settings
from app.core.errors import AuthRequired, PermissionDenied
from app.core.security import AuthenticatedUser, JwtAuthenticator
from app.db.datastore import SqlAlchemyDatastore
from app.db.session import SessionLocal
from app.services.privilege_service import PrivilegeService
from app.services.referral_service import ReferralService

bearer_scheme = HTTPBearer(auto_error=False)


def get_datastore() -> SqlAlchemyDatastore:
    return SqlAlchemyDatastore(SessionLocal)


def get_authenticator(settings: Settings = Depends(get_settings)) -> JwtAuthenticator:
    return JwtAuthenticator(settings)


def get_referral_service(
    datastore: SqlAlchemyDatastore = Depends(get_datastore),
    settings: Settings = Depends(get_settings),
) -> ReferralService:
    return ReferralService(datastore, settings=settings)


def get_privilege_service(
    datastore: SqlAlchemyDatastore = Depends(get_datastore),
) -> PrivilegeService:
    return PrivilegeService(datastore)


def get_optional_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    authenticator: JwtAuthenticator = Depends(get_authenticator),
) -> AuthenticatedUser | None:
    if credentials is None:
        return None
    return authenticator.verify(credentials.credentials)


def get_current_user(
    user: AuthenticatedUser | None = Depends(get_optional_user),
) -> AuthenticatedUser:
    if user is None:
        raise AuthRequired("Authentication required", reason="missing")
    return user


def require_admin(
    current_user: AuthenticatedUser = Depends(get_current_user),
    privileges: PrivilegeService = Depends(get_privilege_service),
) -> AuthenticatedUser:
    if not privileges.is_elevated(current_user.email):
        raise PermissionDenied()
    return current_user
