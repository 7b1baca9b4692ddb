"""Folder-scoped authorization for list, download, upload and delete.

Checks run in a fixed order: authenticated session, account status, target
folder resolution, then the read or mutation rule for that folder.
"""
from __future__ import annotations

import enum
import logging

from sqlalchemy import or_
from sqlalchemy.orm import Session

from portal.errors import AccountRestricted, Forbidden, NotFoundError, Unauthenticated
from portal.models import RESTRICTED_STATUSES, Folder
from portal.schemas import SessionClaims

logger = logging.getLogger(__name__)

GLOBALLY_READABLE = ("shared", "program_files")


class Operation(str, enum.Enum):
    LIST = "list"
    DOWNLOAD = "download"
    UPLOAD = "upload"
    DELETE = "delete"

    @property
    def is_mutation(self) -> bool:
        return self in (Operation.UPLOAD, Operation.DELETE)


STATUS_GATED = (Operation.LIST, Operation.DOWNLOAD, Operation.UPLOAD)


def ensure_account_usable(session: SessionClaims | None, operation: Operation) -> None:
    if session is None:
        raise Unauthenticated()
    if (
        not session.is_admin
        and operation in STATUS_GATED
        and session.account_status in RESTRICTED_STATUSES
    ):
        raise AccountRestricted()


def can_see(session: SessionClaims, folder: Folder) -> bool:
    return (
        session.is_admin
        or folder.folder_type in GLOBALLY_READABLE
        or folder.company_id == session.company_id
    )


def can_modify(session: SessionClaims, folder: Folder) -> bool:
    # shared and program-files folders are read-only for customers
    if session.is_admin:
        return True
    return folder.folder_type == "company_specific" and folder.company_id == session.company_id


def visibility_clause(session: SessionClaims):
    return or_(
        Folder.folder_type.in_(GLOBALLY_READABLE),
        Folder.company_id == session.company_id,
    )


def folder_for_path(db: Session, path: str) -> Folder | None:
    """The folder whose prefix is the longest leading part of ``path``."""
    candidates = [path[: i + 1] for i, char in enumerate(path) if char == "/"]
    if not candidates:
        return None
    return (
        db.query(Folder)
        .filter(Folder.blob_prefix.in_(candidates))
        .order_by(Folder.blob_prefix.desc(), Folder.id)
        .first()
    )


def authorize(
    db: Session,
    session: SessionClaims | None,
    operation: Operation,
    *,
    folder_id: int | None = None,
    path: str | None = None,
) -> Folder:
    """Return the target folder when ``session`` may perform ``operation`` on it.

    A folder the caller cannot see is reported exactly like a missing one.
    """
    ensure_account_usable(session, operation)

    if folder_id is not None:
        folder = db.get(Folder, folder_id)
        missing = NotFoundError("Invalid folder")
    elif path is not None:
        folder = folder_for_path(db, path)
        missing = NotFoundError("Could not determine file location")
    else:
        raise NotFoundError("Invalid folder")

    if folder is None:
        raise missing
    if not can_see(session, folder):
        logger.info("Hid folder %s from user %s", folder.id, session.user_id)
        raise missing
    if operation.is_mutation and not can_modify(session, folder):
        logger.info(
            "Denied %s on folder %s for user %s", operation.value, folder.id, session.user_id)
        raise Forbidden("You do not have permission to access this folder")
    return folder
