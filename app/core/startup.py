from sqlmodel import Session, select
from app.models.user_model import User
from app.models.plan_model import Plan
from app.core.config import settings
from app.db.session import engine
import logging
from sqlalchemy.exc import SQLAlchemyError
import traceback
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)


def _get_or_create_free_plan(session: Session) -> Plan:
    free_plan = session.exec(select(Plan).where(Plan.is_free == True)).first()
    if free_plan:
        return free_plan

    logger.warning("No free plan found. Creating default free plan...")
    free_plan = Plan(
        title=settings.FREE_PLAN_TITLE,
        description="Basic free plan with limited essay checks",
        price=0,
        duration_days=settings.FREE_PLAN_DURATION_DAYS,
        max_submissions=settings.FREE_PLAN_MAX_SUBMISSIONS,
        is_free=True,
        is_active=True,
        created_at=datetime.utcnow()
    )
    session.add(free_plan)
    session.commit()
    session.refresh(free_plan)
    logger.info(f"Default free plan created successfully with ID: {free_plan.id}")
    return free_plan

async def ensure_free_plan_exists():
    """Ensure that a free plan exists in the database."""
    logger.info("Checking for existing free plan...")
    session = Session(engine)
    try:
        _get_or_create_free_plan(session)
    except SQLAlchemyError as e:
        logger.error(f"Database error: {str(e)}")
        logger.error(traceback.format_exc())
        raise
    finally:
        session.close()

async def ensure_users_have_plan():
    """Ensure all users have a plan assigned."""
    logger.info("Checking users without plan...")
    session = Session(engine)
    try:
        free_plan = _get_or_create_free_plan(session)

        users_without_plan = session.exec(
            select(User).where(User.plan_id.is_(None))
        ).all()

        if users_without_plan:
            logger.warning(f"Found {len(users_without_plan)} users without plan. Assigning free plan...")
            for user in users_without_plan:
                user.plan_id = free_plan.id
                user.plan_expires_at = datetime.utcnow() + timedelta(days=free_plan.duration_days)
                user.submissions_limit = free_plan.max_submissions
                session.add(user)

            session.commit()
            logger.info("Successfully assigned free plan to all users without plan")
    except SQLAlchemyError as e:
        logger.error(f"Database error: {str(e)}")
        logger.error(traceback.format_exc())
        raise
    finally:
        session.close()
