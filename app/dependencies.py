from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlmodel import Session, select

from app.models.user_model import User, UserRole
from app.db.session import get_session
from app.core.security import verify_token
from app.core.payme_auth import PaymeAuthGuard
from app.crud.subscription_crud import SubscriptionActivator
from app.external_services.payme_service import PaymeMerchantService
import logging

logger = logging.getLogger(__name__)

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


def get_current_user(
    token: str = Depends(oauth2_scheme),
    session: Session = Depends(get_session)
) -> User:
    """Decode JWT token, verify, and return the User from DB."""

    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    phone = verify_token(token)
    if phone is None:
        raise credentials_exception

    user = session.exec(select(User).where(User.phone == phone)).first()
    if user is None or not user.is_active:
        raise credentials_exception

    return user

def get_admin_user(current_user: User = Depends(get_current_user)) -> User:
    """Ensure the user is an admin."""
    if current_user.role != UserRole.admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Operation not permitted for non-admin users"
        )
    return current_user


def get_payme_guard() -> PaymeAuthGuard:
    return PaymeAuthGuard.from_settings()


def get_subscription_activator(session: Session = Depends(get_session)) -> SubscriptionActivator:
    return SubscriptionActivator(session)


def get_payme_service(
    session: Session = Depends(get_session),
    activator: SubscriptionActivator = Depends(get_subscription_activator),
) -> PaymeMerchantService:
    return PaymeMerchantService(session, activator)
