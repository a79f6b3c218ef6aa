"""Scheduled sweep: move pending referrals past their validity window to expired."""

import argparse

from sqlalchemy.orm import sessionmaker

from app.core.config import get_settings
from app.core.logging_config import get_logger, setup_logging
from app.db.datastore import SqlAlchemyDatastore
from app.db.session import SessionLocal, build_engine
from app.services.referral_service import ReferralService

logger = get_logger(__name__)


def run(service: ReferralService) -> int:
    expired = service.expire_stale()
    logger.info("expire_referrals_finished", expired=expired)
    return expired


def main() -> None:
    parser = argparse.ArgumentParser(description="Expire stale pending referrals")
    parser.add_argument("--database-url", default=None, help="Override DATABASE_URL for this run")
    args = parser.parse_args()

    setup_logging()
    session_factory = SessionLocal
    if args.database_url:
        session_factory = sessionmaker(
            bind=build_engine(args.database_url),
            autoflush=False,
            expire_on_commit=False,
        )
    service = ReferralService(SqlAlchemyDatastore(session_factory), settings=get_settings())
    run(service)


if __name__ == "__main__":
    main()
