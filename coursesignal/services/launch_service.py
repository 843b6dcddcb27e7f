"""Launch management: CRUD, status state machine, public sharing.

WHAT:
    - Launch CRUD with date validation (end_date > start_date)
    - Duplicating a launch as a template for the next one
    - Status derived from dates: upcoming -> active -> completed
      (archived is a manual override and is never recomputed)
    - Purchase <-> launch linking when a launch is created or its dates move
    - Public recap sharing with optional password and expiry

WHY:
    Course creators run promotions ("launches") and want revenue reported
    per launch and shareable as a public recap.

REFERENCES:
    - coursesignal/services/aggregation_service.py (launch_analytics, shared recap)
    - coursesignal/workers/arq_worker.py (refresh_launch_statuses_job, every 5 min)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from coursesignal.errors import InvalidLaunch, LaunchNotFound, ShareAccessDenied
from coursesignal.models import Launch, LaunchStatusEnum, LaunchView, Purchase
from coursesignal.security import generate_share_token, hash_password, verify_password
from coursesignal.utils.time import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("title", "description", "start_date", "end_date", "revenue_goal", "sales_goal")
DUPLICATE_DEFAULT_DAYS = 7


# =============================================================================
# STATUS STATE MACHINE
# =============================================================================

def compute_status(launch: Launch, now: Optional[datetime] = None) -> LaunchStatusEnum:
    """Status of a launch at `now`.

    upcoming --(now >= start)--> active --(now >= end)--> completed.
    Archived is sticky.
    """
    if launch.status == LaunchStatusEnum.archived:
        return LaunchStatusEnum.archived

    now = now or utcnow()
    if now < launch.start_date:
        return LaunchStatusEnum.upcoming
    if now < launch.end_date:
        return LaunchStatusEnum.active
    return LaunchStatusEnum.completed


def find_launch_for_purchase(db: Session, workspace_id: UUID, purchased_at: datetime) -> Optional[Launch]:
    """Launch whose [start_date, end_date] contains `purchased_at`.

    Overlapping launches resolve to the most recently created one. Archived
    launches still own their window.
    """
    return (
        db.query(Launch)
        .filter(
            Launch.workspace_id == workspace_id,
            Launch.start_date <= purchased_at,
            Launch.end_date >= purchased_at,
        )
        .order_by(Launch.created_at.desc(), Launch.id.desc())
        .first()
    )


@dataclass
class StatusRefreshReport:
    checked: int = 0
    changed: int = 0

    def to_dict(self) -> dict:
        return {"checked": self.checked, "changed": self.changed}


def refresh_launch_statuses(db: Session, now: Optional[datetime] = None) -> StatusRefreshReport:
    """Persist recomputed statuses for every non-archived launch."""
    now = now or utcnow()
    report = StatusRefreshReport()

    launches = db.query(Launch).filter(Launch.status != LaunchStatusEnum.archived).all()
    for launch in launches:
        report.checked += 1
        status = compute_status(launch, now)
        if launch.status != status:
            logger.info(f"[LAUNCH] {launch.id} {launch.status.value} -> {status.value}")
            launch.status = status
            report.changed += 1

    db.commit()
    return report


# =============================================================================
# SERVICE
# =============================================================================

class LaunchService:
    """Launch operations scoped to one workspace."""

    def __init__(self, db: Session, workspace_id: UUID):
        self.db = db
        self.workspace_id = workspace_id

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _validate(title: Optional[str], start_date: Optional[datetime], end_date: Optional[datetime]) -> None:
        if not title or not title.strip():
            raise InvalidLaunch("title is required")
        if start_date is None or end_date is None:
            raise InvalidLaunch("start_date and end_date are required")
        if end_date <= start_date:
            raise InvalidLaunch("end_date must be after start_date")

    @staticmethod
    def _validate_goals(revenue_goal: Any, sales_goal: Any) -> None:
        if revenue_goal is not None and Decimal(str(revenue_goal)) < 0:
            raise InvalidLaunch("revenue_goal cannot be negative")
        if sales_goal is not None and int(sales_goal) < 0:
            raise InvalidLaunch("sales_goal cannot be negative")

    def _sync_status(self, launch: Launch) -> Launch:
        status = compute_status(launch)
        if launch.status != status:
            launch.status = status
            self.db.commit()
            self.db.refresh(launch)
        return launch

    def _relink_purchases(self, launch: Launch) -> int:
        """Re-run launch association for purchases affected by this launch's window.

        Affected = currently linked to the launch, or purchased inside its window.
        """
        self.db.flush()
        purchases = self.db.query(Purchase).filter(
            Purchase.workspace_id == self.workspace_id,
            or_(
                Purchase.launch_id == launch.id,
                (Purchase.purchased_at >= launch.start_date) & (Purchase.purchased_at <= launch.end_date),
            ),
        ).all()

        changed = 0
        for purchase in purchases:
            target = find_launch_for_purchase(self.db, self.workspace_id, purchase.purchased_at)
            target_id = target.id if target else None
            if purchase.launch_id != target_id:
                purchase.launch_id = target_id
                changed += 1
        return changed

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(
        self,
        title: str,
        start_date: datetime,
        end_date: datetime,
        description: Optional[str] = None,
        revenue_goal: Optional[Decimal] = None,
        sales_goal: Optional[int] = None,
    ) -> Launch:
        start_date = to_naive_utc(start_date)
        end_date = to_naive_utc(end_date)
        self._validate(title, start_date, end_date)
        self._validate_goals(revenue_goal, sales_goal)

        now = utcnow()
        launch = Launch(
            workspace_id=self.workspace_id,
            title=title.strip(),
            description=description,
            start_date=start_date,
            end_date=end_date,
            revenue_goal=revenue_goal,
            sales_goal=sales_goal,
            status=LaunchStatusEnum.upcoming,
            created_at=now,
            updated_at=now,
        )
        launch.status = compute_status(launch, now)
        self.db.add(launch)

        linked = self._relink_purchases(launch)
        self.db.commit()
        self.db.refresh(launch)

        logger.info(
            f"[LAUNCH] Created {launch.id} '{launch.title}' ({linked} purchases linked)",
            extra={"workspace_id": str(self.workspace_id)},
        )
        return launch

    def get(self, launch_id: UUID) -> Launch:
        launch = self.db.query(Launch).filter(
            Launch.id == launch_id,
            Launch.workspace_id == self.workspace_id,
        ).first()
        if not launch:
            raise LaunchNotFound(f"Launch {launch_id} not found")
        return self._sync_status(launch)

    def list(self, include_archived: bool = False) -> List[Launch]:
        query = self.db.query(Launch).filter(Launch.workspace_id == self.workspace_id)
        if not include_archived:
            query = query.filter(Launch.status != LaunchStatusEnum.archived)
        launches = query.order_by(Launch.start_date.desc()).all()
        return [self._sync_status(launch) for launch in launches]

    def update(self, launch_id: UUID, changes: Dict[str, Any]) -> Launch:
        """Apply a partial update. Date changes re-link purchases."""
        launch = self.get(launch_id)

        updates = {k: v for k, v in changes.items() if k in _UPDATABLE_FIELDS}
        for key in ("start_date", "end_date"):
            if key in updates:
                updates[key] = to_naive_utc(updates[key])

        title = updates.get("title", launch.title)
        start_date = updates.get("start_date", launch.start_date)
        end_date = updates.get("end_date", launch.end_date)
        self._validate(title, start_date, end_date)
        self._validate_goals(
            updates.get("revenue_goal", launch.revenue_goal),
            updates.get("sales_goal", launch.sales_goal),
        )

        dates_changed = start_date != launch.start_date or end_date != launch.end_date
        old_status = launch.status

        for key, value in updates.items():
            setattr(launch, key, value.strip() if key == "title" else value)
        launch.updated_at = utcnow()
        if old_status != LaunchStatusEnum.archived:
            launch.status = compute_status(launch)

        if dates_changed:
            relinked = self._relink_purchases(launch)
            logger.info(f"[LAUNCH] Dates changed for {launch.id}; {relinked} purchases relinked")

        self.db.commit()
        self.db.refresh(launch)
        return launch

    def archive(self, launch_id: UUID) -> Launch:
        launch = self.get(launch_id)
        launch.status = LaunchStatusEnum.archived
        launch.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(launch)
        logger.info(f"[LAUNCH] Archived {launch.id}")
        return launch

    def delete(self, launch_id: UUID) -> None:
        """Delete a launch. Linked purchases are never deleted.

        Purchases move to an overlapping launch when one still covers them,
        otherwise they are unlinked.
        """
        launch = self.get(launch_id)

        affected = self.db.query(Purchase).filter(
            Purchase.workspace_id == self.workspace_id,
            Purchase.launch_id == launch.id,
        ).all()
        for purchase in affected:
            purchase.launch_id = None

        self.db.delete(launch)
        self.db.flush()

        relinked = 0
        for purchase in affected:
            target = find_launch_for_purchase(self.db, self.workspace_id, purchase.purchased_at)
            if target:
                purchase.launch_id = target.id
                relinked += 1

        self.db.commit()
        logger.info(
            f"[LAUNCH] Deleted {launch_id} ({relinked} purchases relinked, "
            f"{len(affected) - relinked} unlinked)"
        )

    def duplicate(
        self,
        launch_id: UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> Launch:
        """Copy a launch's title, description and goals into a new launch.

        Dates default to a 7-day window starting now; sharing is not copied.
        """
        original = self.get(launch_id)
        start_date = to_naive_utc(start_date) or utcnow()
        end_date = to_naive_utc(end_date) or start_date + timedelta(days=DUPLICATE_DEFAULT_DAYS)

        copy = self.create(
            title=f"{original.title[:248]} (Copy)",
            start_date=start_date,
            end_date=end_date,
            description=original.description,
            revenue_goal=original.revenue_goal,
            sales_goal=original.sales_goal,
        )
        logger.info(f"[LAUNCH] Duplicated {original.id} as {copy.id}")
        return copy

    # -------------------------------------------------------------------------
    # Sharing
    # -------------------------------------------------------------------------

    def enable_sharing(
        self,
        launch_id: UUID,
        password: Optional[str] = None,
        expires_at: Optional[datetime] = None,
    ) -> Launch:
        """Turn on the public recap. Re-enabling keeps the existing token."""
        launch = self.get(launch_id)
        expires_at = to_naive_utc(expires_at)
        if expires_at is not None and expires_at <= utcnow():
            raise InvalidLaunch("expires_at must be in the future")

        if not launch.share_token:
            launch.share_token = generate_share_token()
        launch.share_enabled = True
        launch.share_password_hash = hash_password(password) if password else None
        launch.share_expires_at = expires_at
        launch.updated_at = utcnow()

        self.db.commit()
        self.db.refresh(launch)
        logger.info(f"[LAUNCH] Sharing enabled for {launch.id} (password={'yes' if password else 'no'})")
        return launch

    def disable_sharing(self, launch_id: UUID) -> Launch:
        launch = self.get(launch_id)
        launch.share_enabled = False
        launch.updated_at = utcnow()
        self.db.commit()
        self.db.refresh(launch)
        return launch

    def view_count(self, launch_id: UUID) -> int:
        return self.db.query(LaunchView).filter(LaunchView.launch_id == launch_id).count()


def resolve_shared_launch(
    db: Session,
    share_token: str,
    password: Optional[str] = None,
    referrer: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Launch:
    """Resolve a public share token to its launch and record the view.

    Raises:
        ShareAccessDenied: Unknown/disabled/expired token, or missing/wrong password
    """
    launch = db.query(Launch).filter(Launch.share_token == share_token).first()
    if not launch or not launch.share_enabled:
        raise ShareAccessDenied("Launch recap not found")

    if launch.share_expires_at is not None and launch.share_expires_at <= utcnow():
        raise ShareAccessDenied("This recap link has expired")

    if launch.share_password_hash:
        if not password:
            raise ShareAccessDenied("Password required", password_required=True)
        if not verify_password(password, launch.share_password_hash):
            raise ShareAccessDenied("Incorrect password", password_required=True)

    db.add(LaunchView(
        launch_id=launch.id,
        share_token=share_token,
        referrer=referrer,
        user_agent=user_agent,
    ))
    status = compute_status(launch)
    if launch.status != status:
        launch.status = status
    db.commit()
    db.refresh(launch)
    return launch
