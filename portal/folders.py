"""Folder hierarchy: prefix derivation, ancestry, children and tree views.

Root folders get a fixed prefix per type (``program-files/``, ``shared/`` or
``company-{id}/``). A subfolder inherits its parent's type and company and
lives at ``parent.blob_prefix + name + "/"``.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Iterable, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import case
from sqlalchemy.orm import Session

from portal import access
from portal.auth import get_current_session
from portal.database import get_db
from portal.errors import IntegrityError, NotFoundError, UpstreamError, ValidationError
from portal.models import FOLDER_TYPES, Company, File, Folder
from portal.schemas import FolderNode, FolderOut, SessionClaims
from portal.utils import s3_utils
from portal.validation import sanitize_folder_name

router = APIRouter()
logger = logging.getLogger(__name__)

ROOT_PREFIXES = {
    "program_files": "program-files/",
    "shared": "shared/",
}

TYPE_ORDER = case(
    (Folder.folder_type == "program_files", 1),
    (Folder.folder_type == "shared", 2),
    (Folder.folder_type == "company_specific", 3),
    else_=4,
)


@dataclass(frozen=True)
class ResolvedFolder:
    folder_type: str
    company_id: Optional[int]
    blob_prefix: str


def company_prefix(company_id: int) -> str:
    return f"company-{company_id}/"


def resolve_new_folder(
    db: Session,
    name: str,
    requested_type: str | None,
    company_id: int | None = None,
    parent_id: int | None = None,
) -> ResolvedFolder:
    """Work out type, owning company and blob prefix for a folder about to be created.

    With a parent, the requested type and company are ignored and inherited.
    """
    if not name or not name.strip():
        raise ValidationError("Folder name is required")

    if parent_id is not None:
        parent = db.get(Folder, parent_id)
        if parent is None:
            raise NotFoundError("Parent folder not found")
        return ResolvedFolder(
            folder_type=parent.folder_type,
            company_id=parent.company_id,
            blob_prefix=f"{parent.blob_prefix}{sanitize_folder_name(name)}/",
        )

    if requested_type not in FOLDER_TYPES:
        raise ValidationError("Invalid folder type")
    if requested_type == "company_specific":
        if not company_id:
            raise ValidationError("Company is required for company-specific folders")
        if db.get(Company, company_id) is None:
            raise NotFoundError("Company not found")
        return ResolvedFolder("company_specific", company_id, company_prefix(company_id))
    return ResolvedFolder(requested_type, None, ROOT_PREFIXES[requested_type])


def create_folder(
    db: Session,
    name: str,
    requested_type: str | None,
    company_id: int | None = None,
    parent_id: int | None = None,
) -> Folder:
    resolved = resolve_new_folder(db, name, requested_type, company_id, parent_id)
    folder = Folder(
        folder_name=name.strip()[:255],
        folder_type=resolved.folder_type,
        company_id=resolved.company_id,
        blob_prefix=resolved.blob_prefix,
        parent_folder_id=parent_id,
    )
    db.add(folder)
    db.commit()
    db.refresh(folder)
    logger.info("Created folder %s at %s", folder.id, folder.blob_prefix)
    return folder


def get_folder(db: Session, folder_id: int) -> Folder:
    folder = db.get(Folder, folder_id)
    if folder is None:
        raise NotFoundError("Invalid folder")
    return folder


def get_ancestor_path(db: Session, folder_id: int) -> list[Folder]:
    """Folders from the root down to ``folder_id`` (inclusive)."""
    folder = get_folder(db, folder_id)
    path = [folder]
    seen = {folder.id}
    while folder.parent_folder_id is not None:
        parent_id = folder.parent_folder_id
        if parent_id in seen:
            raise IntegrityError(f"Folder {folder_id} has cyclic ancestry")
        folder = db.get(Folder, parent_id)
        if folder is None:
            raise IntegrityError(f"Folder {folder_id} has a missing ancestor {parent_id}")
        seen.add(folder.id)
        path.append(folder)
    path.reverse()
    return path


def list_children(db: Session, parent_id: int | None) -> list[Folder]:
    query = db.query(Folder)
    if parent_id is None:
        query = query.filter(Folder.parent_folder_id.is_(None))
    else:
        query = query.filter(Folder.parent_folder_id == parent_id)
    return query.order_by(TYPE_ORDER, Folder.folder_name).all()


def _adjacency(folders: Iterable[Folder]) -> tuple[dict[int, Folder], dict[int | None, list[Folder]]]:
    by_id = {}
    children = defaultdict(list)
    for folder in folders:
        by_id[folder.id] = folder
    for folder in by_id.values():
        # a parent outside the set makes the folder a root of the view
        parent = folder.parent_folder_id if folder.parent_folder_id in by_id else None
        children[parent].append(folder)
    return by_id, children


def build_tree(folders: Iterable[Folder]) -> list[FolderNode]:
    """Nest ``folders`` under their parents with an explicit stack walk."""
    by_id, children = _adjacency(folders)
    roots = []
    visited = set()
    stack = []
    for folder in children.get(None, []):
        node = FolderNode.model_validate(folder)
        roots.append(node)
        stack.append((folder, node))

    while stack:
        folder, node = stack.pop()
        visited.add(folder.id)
        for child in children.get(folder.id, []):
            child_node = FolderNode.model_validate(child)
            node.children.append(child_node)
            stack.append((child, child_node))

    if len(visited) != len(by_id):
        unreachable = sorted(set(by_id) - visited)
        raise IntegrityError(f"Folders {unreachable} are part of a cycle")
    return roots


def subtree(db: Session, folder: Folder) -> list[Folder]:
    """``folder`` and all its descendants, parents before children."""
    _, children = _adjacency(db.query(Folder).all())
    ordered = []
    seen = set()
    queue = [folder]
    while queue:
        current = queue.pop(0)
        if current.id in seen:
            raise IntegrityError(f"Folder {current.id} has cyclic descendants")
        seen.add(current.id)
        ordered.append(current)
        queue.extend(children.get(current.id, []))
    return ordered


def _prefix_still_used(db: Session, prefix: str, doomed_ids: list[int]) -> bool:
    """True when a folder outside ``doomed_ids`` lives at or under ``prefix``."""
    return (
        db.query(Folder.id)
        .filter(Folder.blob_prefix.startswith(prefix, autoescape=True), Folder.id.notin_(doomed_ids))
        .first()
        is not None
    )


def remove_folder(db: Session, folder: Folder) -> tuple[int, int]:
    """Delete a folder's blobs (best effort), then its row and its subfolders' rows.

    Blobs are kept while another folder still shares the prefix. Returns the
    ``(deleted, failed)`` blob counts.
    """
    doomed = subtree(db, folder)
    doomed_ids = [f.id for f in doomed]

    deleted = failed = 0
    cleaned = []
    for item in doomed:
        prefix = item.blob_prefix
        if any(prefix.startswith(done) for done in cleaned):
            continue
        if _prefix_still_used(db, prefix, doomed_ids):
            logger.info("Keeping blobs under %s, another folder still uses them", prefix)
            continue
        try:
            removed, missed = s3_utils.delete_all(prefix)
        except UpstreamError as exc:
            logger.error("Blob cleanup for %s could not run: %s", prefix, exc)
            continue
        cleaned.append(prefix)
        deleted += removed
        failed += missed
    if failed:
        logger.warning("%d blob(s) under %s were not deleted", failed, folder.blob_prefix)

    db.query(File).filter(File.folder_id.in_(doomed_ids)).delete(synchronize_session=False)
    for item in reversed(doomed):
        db.delete(item)
        db.flush()
    db.commit()
    logger.info("Removed folder %s (%d row(s), %d blob(s))", folder.blob_prefix, len(doomed), deleted)
    return deleted, failed


def visible_folders(db: Session, session: SessionClaims) -> list[Folder]:
    query = db.query(Folder)
    if not session.is_admin:
        query = query.filter(access.visibility_clause(session))
    return query.order_by(TYPE_ORDER, Folder.folder_name).all()


# ───── Routes ─────


@router.get("/folders/list")
def list_folders(
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    access.ensure_account_usable(session, access.Operation.LIST)
    folders = visible_folders(db, session)
    return {"success": True, "folders": [FolderOut.model_validate(f) for f in folders]}


@router.get("/folders/tree")
def folder_tree(
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    access.ensure_account_usable(session, access.Operation.LIST)
    return {"success": True, "tree": build_tree(visible_folders(db, session))}


@router.get("/folders/children")
def folder_children(
    parent_id: Optional[int] = Query(None, alias="parentId"),
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    if parent_id is not None:
        access.authorize(db, session, access.Operation.LIST, folder_id=parent_id)
    else:
        access.ensure_account_usable(session, access.Operation.LIST)
    children = [f for f in list_children(db, parent_id) if access.can_see(session, f)]
    return {"success": True, "folders": [FolderOut.model_validate(f) for f in children]}


@router.get("/folders/{folder_id}/path")
def folder_path(
    folder_id: int,
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    access.authorize(db, session, access.Operation.LIST, folder_id=folder_id)
    return {"success": True, "path": [FolderOut.model_validate(f) for f in get_ancestor_path(db, folder_id)]}
