import logging
from uuid import UUID

from sqlalchemy.orm import Session

from careloop.domains.jobs.events import Events
from careloop.domains.jobs.service import EventBus
from careloop.domains.users.models import User
from careloop.domains.users.roles import Roles

logger = logging.getLogger(__name__)


class UserDirectory:
    """Read side of the nurse roster used by escalation assignment."""

    def __init__(self, db: Session):
        self.db = db
        self.bus = EventBus(db)

    def get_user(self, user_id: UUID) -> User | None:
        return self.db.query(User).filter(User.id == user_id).first()

    def _active_nurses_query(self):
        return (
            self.db.query(User)
            .filter(User.is_active.is_(True), User.roles.contains([Roles.NURSE]))
            .order_by(User.last_assigned_at.asc().nulls_first(), User.created_at.asc())
        )

    def find_active_nurses(self) -> list[User]:
        """Active nurses in round-robin order (never assigned first, then oldest assignment)."""
        return self._active_nurses_query().all()

    def next_nurse_for_assignment(self) -> User | None:
        """
        Lock and return the nurse next in round-robin order.

        SKIP LOCKED lets a concurrent assigner move on to the following nurse
        instead of waiting on the same row.
        """
        return self._active_nurses_query().with_for_update(skip_locked=True).first()

    def set_active(self, user_id: UUID, is_active: bool) -> User | None:
        user = self.get_user(user_id)
        if not user:
            return None

        became_active = is_active and not user.is_active
        user.is_active = is_active
        if became_active and Roles.NURSE in (user.roles or []):
            # Unassigned tasks waiting for a nurse are retried by the handler
            self.bus.publish(Events.NURSE_ACTIVATED, {"user_id": user.id})
            logger.info(f"Nurse {user.id} activated")

        self.db.commit()
        self.db.refresh(user)
        return user
