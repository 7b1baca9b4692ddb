import logging

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from portal import access
from portal.access import Operation
from portal.audit import record_audit
from portal.auth import get_current_session
from portal.database import get_db
from portal.errors import ValidationError
from portal.models import File as FileModel
from portal.schemas import FileDelete, FileMetadata, FileOut, SessionClaims
from portal.utils import s3_utils

router = APIRouter()
logger = logging.getLogger(__name__)


def derive_files(prefix: str) -> list[FileOut]:
    """Project the direct children under ``prefix`` into file records."""
    return [FileOut.model_validate(blob) for blob in s3_utils.list_direct(prefix)]


@router.get("/files/list")
def list_files(
    request: Request,
    folder_id: int = Query(..., alias="folderId"),
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    folder = access.authorize(db, session, Operation.LIST, folder_id=folder_id)
    files = derive_files(folder.blob_prefix)
    record_audit(db, "FILES_LISTED", user_id=session.user_id, resource_type="folder",
                 resource_id=folder.folder_name, request=request)
    return {
        "success": True,
        "folder": {
            "id": folder.id,
            "name": folder.folder_name,
            "type": folder.folder_type,
            "companyName": folder.company.company_name if folder.company else None,
            "blobPrefix": folder.blob_prefix,
        },
        "files": files,
    }


@router.get("/files/download")
def download_file(
    request: Request,
    url: str = Query(...),
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    access.ensure_account_usable(session, Operation.DOWNLOAD)
    key = s3_utils.key_from_url(url)
    access.authorize(db, session, Operation.DOWNLOAD, path=key)

    chunks, content_type, disposition = s3_utils.open_stream(key)
    record_audit(db, "FILE_DOWNLOADED", user_id=session.user_id, resource_type="file",
                 resource_id=url, request=request)

    filename = key.rsplit("/", 1)[-1]
    return StreamingResponse(
        chunks,
        media_type=content_type,
        headers={"Content-Disposition": disposition or f'attachment; filename="{filename}"'},
    )


@router.post("/files/upload")
async def upload_file(
    request: Request,
    folder_id: int = Form(..., alias="folderId"),
    upload_file: UploadFile = File(...),
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    folder = access.authorize(db, session, Operation.UPLOAD, folder_id=folder_id)

    if not upload_file.filename:
        raise ValidationError("Filename is required")
    raw_bytes = await upload_file.read()
    blob = s3_utils.put(folder.blob_prefix, upload_file.filename, raw_bytes, upload_file.content_type)

    record_audit(db, "FILE_UPLOADED", user_id=session.user_id, resource_type="file",
                 resource_id=blob.url, request=request)
    return {"success": True, "file": FileOut.model_validate(blob)}


@router.delete("/files/delete")
def delete_file(
    data: FileDelete,
    request: Request,
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    if not data.url:
        raise ValidationError("File URL required")
    access.ensure_account_usable(session, Operation.DELETE)
    key = s3_utils.key_from_url(data.url)
    access.authorize(db, session, Operation.DELETE, path=key)

    s3_utils.delete(data.url)
    record_audit(db, "FILE_DELETED", user_id=session.user_id, resource_type="file",
                 resource_id=data.url, request=request)
    return {"success": True}


@router.post("/files/save-metadata")
def save_metadata(
    data: FileMetadata,
    db: Session = Depends(get_db),
    session: SessionClaims = Depends(get_current_session),
):
    folder = access.authorize(db, session, Operation.UPLOAD, folder_id=data.folder_id)
    key = s3_utils.key_from_url(data.url)
    owner = access.folder_for_path(db, key)
    if owner is None or owner.id != folder.id:
        raise ValidationError("File URL does not belong to this folder")

    record = FileModel(folder_id=folder.id, filename=data.filename, url=data.url, size=data.size)
    db.add(record)
    db.commit()
    db.refresh(record)
    return {"success": True, "id": record.id}
