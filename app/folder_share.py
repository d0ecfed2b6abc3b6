"""
Folder sharing router.

- /folder-share: the caller shares its own root with another account (the
  target gains the root as an access root; storage under it stays charged to
  the caller).
- /shared-folders: roots shared *to* the caller; DELETE leaves one.
"""
import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import UserSession, get_current_session
from database import get_db
from drive import get_drive
from errors import NotFoundError, UpstreamError, ValidationError
from services import account_service, drive_service
from services.drive_client import DriveClient

logger = logging.getLogger(__name__)

router = APIRouter()


class ShareBody(BaseModel):
    username: str = ""


class LeaveBody(BaseModel):
    folderId: str = ""


@router.get("/folder-share")
def list_shared_with(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
):
    account = account_service.ensure_profile(db, session.username)
    return {
        "status": 200,
        "message": "success",
        "data": {"sharedWithUsernames": account.shared_with_usernames or []},
    }


@router.post("/folder-share")
def share_root(
    body: ShareBody,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    drive: DriveClient = Depends(get_drive),
):
    username = body.username.strip()
    if not username:
        raise ValidationError("username is required")
    if username == session.username:
        raise ValidationError("Cannot share with yourself")
    if account_service.get_by_username(db, username) is None:
        raise NotFoundError("User not found")

    root_folder_id = account_service.ensure_root_folder(db, drive, session.username)
    account_service.add_shared_root_folder(db, username, root_folder_id)
    account_service.add_shared_with_username(db, session.username, username)
    return {"status": 200, "message": "success"}


@router.delete("/folder-share")
def unshare_root(
    body: ShareBody,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    drive: DriveClient = Depends(get_drive),
):
    username = body.username.strip()
    if not username:
        raise ValidationError("username is required")

    root_folder_id = account_service.ensure_root_folder(db, drive, session.username)
    if account_service.get_by_username(db, username) is not None:
        account_service.remove_shared_root_folder(db, username, root_folder_id)
    account_service.remove_shared_with_username(db, session.username, username)
    return {"status": 200, "message": "success"}


@router.get("/shared-folders")
def list_shared_folders(
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    drive: DriveClient = Depends(get_drive),
):
    """Roots shared to the caller, with their owners; unreadable roots are skipped."""
    account = account_service.ensure_profile(db, session.username)
    folders = []
    for folder_id in account.shared_root_folder_ids or []:
        try:
            name = drive_service.folder_name(drive, folder_id)
        except UpstreamError:
            logger.warning("Skipping unreadable shared root %s for %s", folder_id, session.username)
            continue
        folders.append({
            "id": folder_id,
            "name": name,
            "ownerUsername": account_service.owner_from_folder_name(name),
        })
    return {"status": 200, "message": "success", "data": folders}


@router.delete("/shared-folders")
def leave_shared_folder(
    body: LeaveBody,
    session: UserSession = Depends(get_current_session),
    db: Session = Depends(get_db),
    drive: DriveClient = Depends(get_drive),
):
    folder_id = body.folderId.strip()
    if not folder_id:
        raise ValidationError("folderId is required")

    account_service.ensure_profile(db, session.username)
    account_service.remove_shared_root_folder(db, session.username, folder_id)

    try:
        owner = account_service.owner_from_folder_name(drive_service.folder_name(drive, folder_id))
    except UpstreamError:
        logger.warning("Could not resolve owner of %s; owner list left unchanged", folder_id)
        owner = None
    if owner and owner != session.username and account_service.get_by_username(db, owner):
        account_service.remove_shared_with_username(db, owner, session.username)
    return {"status": 200, "message": "success"}
