"""
Folder access resolution.

An account may operate beneath its own root folder and beneath roots other
accounts shared with it. Authorization and quota attribution both come from
the same question: which of those roots contains the target id? Storage used
under a shared root is charged to the root's owner, not the requester.
"""
import logging
from dataclasses import dataclass, field

from sqlalchemy.orm import Session

from auth import UserSession
from errors import UpstreamError, forbidden
from models import Account
from services import account_service, drive_service
from services.account_service import QuotaStatus
from services.drive_client import DriveClient

logger = logging.getLogger(__name__)


@dataclass
class AccessContext:
    session: UserSession
    account: Account
    root_folder_id: str
    # Own root first, then shared roots in the order they were granted
    allowed_root_ids: list[str] = field(default_factory=list)

    @property
    def username(self) -> str:
        return self.session.username

    @property
    def is_admin(self) -> bool:
        return self.session.role == "admin"


def build_access_context(db: Session, drive: DriveClient, session: UserSession) -> AccessContext:
    account = account_service.ensure_profile(db, session.username)
    root_folder_id = account_service.ensure_root_folder(db, drive, session.username)
    allowed = [root_folder_id]
    for folder_id in account.shared_root_folder_ids or []:
        if folder_id and folder_id not in allowed:
            allowed.append(folder_id)
    return AccessContext(
        session=session,
        account=account,
        root_folder_id=root_folder_id,
        allowed_root_ids=allowed,
    )


def resolve_access_root(drive: DriveClient, target_id: str, context: AccessContext) -> str | None:
    """
    Return the first allowed root containing target_id, or None. Admins
    resolve to their own root for any target. Errors while walking the
    parent chain propagate.
    """
    if context.is_admin:
        return context.root_folder_id
    for root_id in context.allowed_root_ids:
        if drive_service.is_descendant_of(drive, target_id, root_id):
            return root_id
    return None


def require_access_root(drive: DriveClient, target_id: str, context: AccessContext) -> str:
    """resolve_access_root, raising AccessError (403) when nothing contains target_id."""
    root_id = resolve_access_root(drive, target_id, context)
    if not root_id:
        raise forbidden()
    return root_id


def storage_owner_username(
    drive: DriveClient,
    target_id: str,
    context: AccessContext,
    access_root_id: str | None = None,
) -> str | None:
    """
    Username charged for storage under target_id. Own root -> requester;
    shared root -> owner parsed from the root's user-<name> folder name,
    falling back to the requester when the name cannot be read.
    """
    root_id = access_root_id or resolve_access_root(drive, target_id, context)
    if not root_id:
        return None
    if root_id == context.root_folder_id:
        return context.username
    try:
        name = drive_service.folder_name(drive, root_id)
    except UpstreamError:
        logger.warning("Could not read name of shared root %s; charging %s", root_id, context.username)
        return context.username
    return account_service.owner_from_folder_name(name) or context.username


def storage_status(
    db: Session,
    drive: DriveClient,
    target_id: str,
    context: AccessContext,
) -> QuotaStatus | None:
    """Quota status of the account charged for target_id, or None if inaccessible."""
    owner = storage_owner_username(drive, target_id, context)
    if not owner:
        return None
    return account_service.get_status(db, owner)
