from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .config import PAID_TIERS
from .db import SubscriptionModel, UserModel
from .errors import DirectoryUnavailable
from .models import Contact

LOGGER = logging.getLogger(__name__)


class UserDirectory:
    """User and plan lookups read from the account tables."""

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    def list_active_users(self) -> List[Contact]:
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(UserModel.id, UserModel.email)
                    .filter(UserModel.is_active.is_(True))
                    .order_by(UserModel.created_at, UserModel.id)
                    .all()
                )
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to list active users")
            raise DirectoryUnavailable(str(exc)) from exc
        return [Contact(user_id=row.id, contact_address=row.email) for row in rows]

    def active_plans(self) -> Dict[str, str]:
        """Map of user id to plan tier for every active subscription."""
        try:
            with self._session_factory() as session:
                rows = (
                    session.query(SubscriptionModel.user_id, SubscriptionModel.plan_tier)
                    .filter(SubscriptionModel.status == "active")
                    .order_by(SubscriptionModel.created_at)
                    .all()
                )
        except SQLAlchemyError as exc:
            LOGGER.exception("Failed to load active subscriptions")
            raise DirectoryUnavailable(str(exc)) from exc
        # Latest active subscription wins.
        return {row.user_id: row.plan_tier.lower() for row in rows}

    def get_active_plan(self, user_id: str) -> Optional[str]:
        try:
            with self._session_factory() as session:
                row = (
                    session.query(SubscriptionModel.plan_tier)
                    .filter(SubscriptionModel.user_id == user_id, SubscriptionModel.status == "active")
                    .order_by(SubscriptionModel.created_at.desc())
                    .first()
                )
        except SQLAlchemyError as exc:
            raise DirectoryUnavailable(str(exc)) from exc
        return row.plan_tier.lower() if row else None

    def count_paid_subscribers(self, tiers: Iterable[str] = PAID_TIERS) -> int:
        """Active subscriptions on a paid tier, used for the early access counter."""
        try:
            with self._session_factory() as session:
                return (
                    session.query(func.count(SubscriptionModel.id))
                    .filter(SubscriptionModel.status == "active", func.lower(SubscriptionModel.plan_tier).in_(list(tiers)))
                    .scalar()
                    or 0
                )
        except SQLAlchemyError as exc:
            raise DirectoryUnavailable(str(exc)) from exc

    def get_locale(self, user_id: str) -> Optional[str]:
        with self._session_factory() as session:
            row = session.query(UserModel.preferred_language).filter(UserModel.id == user_id).first()
        return row.preferred_language if row else None

    def get_profile(self, user_id: str) -> Dict[str, Optional[str]]:
        with self._session_factory() as session:
            user = session.get(UserModel, user_id)
            if user is None:
                return {}
            return {
                "email": user.email,
                "full_name": user.full_name,
                "preferred_language": user.preferred_language,
            }
