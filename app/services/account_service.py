"""
Account service: profile normalisation, lazy root folder, billing status,
quota ledger and folder-sharing lists.

The ledger (storage_used_bytes) is only changed with single UPDATE statements
evaluated by the database, so concurrent uploads for the same account cannot
lose increments. Values are clamped at zero.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, UTC

from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from config import DRIVE_SHARED_FOLDER_ID
from errors import AccessError, NotFoundError, UpstreamError, ValidationError
from models import Account
from plans import BILLING_CYCLES, DEFAULT_PLAN_ID, PLAN_ORDER, PLANS, plan_limit
from services.drive_client import DriveClient

logger = logging.getLogger(__name__)

ROOT_FOLDER_PREFIX = "user-"


@dataclass
class BillingStatus:
    account: Account
    blocked: bool
    expired: bool


@dataclass
class QuotaStatus:
    """Ledger snapshot for the account whose storage is charged."""
    owner_username: str
    used_bytes: int
    limit_bytes: int
    blocked: bool

    def would_exceed(self, extra_bytes: int) -> bool:
        """True if adding extra_bytes passes a non-zero limit (0 = unlimited)."""
        return self.limit_bytes > 0 and self.used_bytes + extra_bytes > self.limit_bytes

    @property
    def over_limit(self) -> bool:
        return self.would_exceed(0)


def root_folder_name(username: str) -> str:
    return f"{ROOT_FOLDER_PREFIX}{username}"


def owner_from_folder_name(folder_name: str) -> str:
    """Inverse of root_folder_name; names without the prefix are returned as-is."""
    if folder_name.startswith(ROOT_FOLDER_PREFIX):
        return folder_name[len(ROOT_FOLDER_PREFIX):]
    return folder_name


def get_by_username(db: Session, username: str) -> Account | None:
    return db.get(Account, username)


def get_account(db: Session, username: str) -> Account:
    account = db.get(Account, username)
    if account is None:
        raise NotFoundError("User not found")
    return account


def ensure_profile(db: Session, username: str) -> Account:
    """
    Load the account, provisioning it on first sight, and repair missing
    fields: unknown plan -> default plan, non-positive limit -> plan limit,
    negative usage -> 0, missing sharing lists -> [].
    """
    account = db.get(Account, username)
    if account is None:
        account = Account(
            username=username,
            plan_id=DEFAULT_PLAN_ID,
            storage_used_bytes=0,
            storage_limit_bytes=plan_limit(DEFAULT_PLAN_ID),
            shared_root_folder_ids=[],
            shared_with_usernames=[],
        )
        db.add(account)
        db.commit()
        logger.info("Provisioned account %s on plan %s", username, DEFAULT_PLAN_ID)
        return account

    changed = False
    if not account.plan_id or account.plan_id not in PLANS:
        account.plan_id = DEFAULT_PLAN_ID
        changed = True
    if not account.storage_limit_bytes or account.storage_limit_bytes <= 0:
        account.storage_limit_bytes = plan_limit(account.plan_id)
        changed = True
    if account.storage_used_bytes is None or account.storage_used_bytes < 0:
        account.storage_used_bytes = 0
        changed = True
    if not isinstance(account.shared_root_folder_ids, list):
        account.shared_root_folder_ids = []
        changed = True
    if not isinstance(account.shared_with_usernames, list):
        account.shared_with_usernames = []
        changed = True
    if changed:
        db.commit()
    return account


def ensure_root_folder(db: Session, drive: DriveClient, username: str) -> str:
    """
    Return the account's root folder id, creating user-<username> under the
    configured parent folder on first use. A stored root that no longer sits
    directly under the configured parent is replaced by a fresh folder there.
    """
    account = ensure_profile(db, username)
    parent_id = DRIVE_SHARED_FOLDER_ID

    if account.root_folder_id:
        try:
            current_parent = drive.get_parent(account.root_folder_id)
        except UpstreamError:
            logger.exception("Could not check root folder parent for %s", username)
            return account.root_folder_id
        if current_parent and current_parent.get("id") == parent_id:
            return account.root_folder_id
        logger.info(
            "Root folder of %s is not under %s; creating a new one", username, parent_id
        )

    folder_id = drive.create_folder(root_folder_name(username), parent_id)
    account.root_folder_id = folder_id
    db.commit()
    return folder_id


def _as_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def update_plan(
    db: Session,
    username: str,
    plan_id: str,
    billing_cycle: str | None,
    **extra,
) -> dict:
    """Switch the account's plan; the storage limit follows the plan."""
    plan = PLANS.get(plan_id)
    if plan is None:
        raise NotFoundError("Plan not found")
    account = get_account(db, username)
    account.plan_id = plan_id
    account.billing_cycle = billing_cycle
    account.storage_limit_bytes = plan["storage_limit_bytes"]
    for key, value in extra.items():
        setattr(account, key, value)
    db.commit()
    return plan


def change_plan(
    db: Session,
    username: str,
    plan_id: str | None,
    billing_cycle: str | None,
    *,
    is_admin: bool = False,
) -> tuple[dict, str | None]:
    """
    Plan change requested by the account holder. Unknown plans are rejected
    (400); moving to a lower tier is reserved to admins (403). The free plan
    has no billing cycle, and an unrecognised cycle is stored as None.
    Returns the plan and the cycle actually stored.
    """
    if not plan_id or plan_id not in PLANS:
        raise ValidationError("Invalid plan")
    cycle = billing_cycle if plan_id != DEFAULT_PLAN_ID and billing_cycle in BILLING_CYCLES else None

    account = ensure_profile(db, username)
    if not is_admin and PLAN_ORDER.index(plan_id) < PLAN_ORDER.index(account.plan_id):
        raise AccessError("Plan downgrade is not allowed")

    plan = update_plan(db, username, plan_id, cycle)
    logger.info("Plan of %s changed to %s (%s)", username, plan_id, cycle or "no cycle")
    return plan, cycle


def resolve_billing_status(db: Session, username: str, now: datetime | None = None) -> BillingStatus:
    """
    Free plans are never blocked. A paid plan past next_billing_at is
    downgraded to free when usage fits the free limit, otherwise blocked.
    """
    account = ensure_profile(db, username)
    if account.plan_id == DEFAULT_PLAN_ID:
        return BillingStatus(account, blocked=False, expired=False)

    now = now or datetime.now(UTC)
    paid_until = _as_utc(account.next_billing_at)
    if paid_until is None or paid_until >= now:
        return BillingStatus(account, blocked=False, expired=False)

    if (account.storage_used_bytes or 0) <= plan_limit(DEFAULT_PLAN_ID):
        update_plan(db, username, DEFAULT_PLAN_ID, None, next_billing_at=None)
        return BillingStatus(account, blocked=False, expired=True)

    return BillingStatus(account, blocked=True, expired=True)


def get_status(db: Session, username: str) -> QuotaStatus:
    billing = resolve_billing_status(db, username)
    account = billing.account
    return QuotaStatus(
        owner_username=username,
        used_bytes=account.storage_used_bytes or 0,
        limit_bytes=account.storage_limit_bytes or 0,
        blocked=billing.blocked,
    )


def increment_storage_usage(db: Session, username: str, delta_bytes: int) -> int:
    """
    Atomically add delta_bytes (negative frees space) to the ledger, clamped
    at zero. Returns the new used-bytes value.
    """
    next_used = Account.storage_used_bytes + delta_bytes
    result = db.execute(
        update(Account)
        .where(Account.username == username)
        .values(storage_used_bytes=case((next_used < 0, 0), else_=next_used))
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        db.rollback()
        raise NotFoundError("User not found")
    db.commit()
    return db.execute(
        select(Account.storage_used_bytes).where(Account.username == username)
    ).scalar_one()


def update_storage_usage(db: Session, username: str, used_bytes: int) -> int:
    safe_bytes = max(0, used_bytes)
    account = get_account(db, username)
    account.storage_used_bytes = safe_bytes
    db.commit()
    return safe_bytes


# --- Sharing lists (lists are replaced, never mutated in place) ---


def _add_unique(values: list | None, item: str) -> list:
    values = list(values or [])
    if item not in values:
        values.append(item)
    return values


def _remove(values: list | None, item: str) -> list:
    return [v for v in (values or []) if v != item]


def add_shared_root_folder(db: Session, username: str, folder_id: str) -> list[str]:
    account = get_account(db, username)
    account.shared_root_folder_ids = _add_unique(account.shared_root_folder_ids, folder_id)
    db.commit()
    return account.shared_root_folder_ids


def remove_shared_root_folder(db: Session, username: str, folder_id: str) -> list[str]:
    account = get_account(db, username)
    account.shared_root_folder_ids = _remove(account.shared_root_folder_ids, folder_id)
    db.commit()
    return account.shared_root_folder_ids


def add_shared_with_username(db: Session, owner_username: str, target_username: str) -> list[str]:
    account = get_account(db, owner_username)
    account.shared_with_usernames = _add_unique(account.shared_with_usernames, target_username)
    db.commit()
    return account.shared_with_usernames


def remove_shared_with_username(db: Session, owner_username: str, target_username: str) -> list[str]:
    account = get_account(db, owner_username)
    account.shared_with_usernames = _remove(account.shared_with_usernames, target_username)
    db.commit()
    return account.shared_with_usernames
