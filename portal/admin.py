import csv
import datetime
import io
import logging
import secrets

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy import func
from sqlalchemy.orm import Session, joinedload

from portal import folders as folder_service
from portal.audit import record_audit
from portal.auth import get_admin_session, hash_password
from portal.database import get_db
from portal.errors import ConflictError, NotFoundError, ValidationError
from portal.models import ACCOUNT_STATUSES, ROLES, AuditLog, Company, Folder, User
from portal import schemas
from portal.utils.email_utils import invite_link, send_invite_email
from portal.validation import (
    generate_strong_password, is_valid_username,
    sanitize_company_name, validate_password,
)

router = APIRouter(prefix="/admin")
logger = logging.getLogger(__name__)

INVITE_TTL = datetime.timedelta(days=7)

# ───────────── Companies ─────────────


@router.get("/companies")
def list_companies(db: Session = Depends(get_db),
                   admin: schemas.SessionClaims = Depends(get_admin_session)):
    companies = db.query(Company).order_by(Company.company_name).all()
    return {"success": True, "companies": [schemas.CompanyOut.model_validate(c) for c in companies]}


@router.post("/companies/create")
def create_company(
    data: schemas.CompanyCreate,
    request: Request,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    if not data.company_name or not data.company_name.strip():
        raise ValidationError("Company name is required")
    name = sanitize_company_name(data.company_name)
    if db.query(Company).filter(Company.company_name == name).first():
        raise ConflictError("Company already exists")

    company = Company(company_name=name, account_status="active")
    db.add(company)
    db.commit()
    db.refresh(company)

    folder_service.create_folder(db, name, "company_specific", company_id=company.id)
    record_audit(db, "COMPANY_CREATED", user_id=admin.user_id, resource_type="company",
                 resource_id=company.id, request=request)
    return {"success": True, "company": schemas.CompanyOut.model_validate(company)}


@router.patch("/companies/{company_id}/status")
def update_company_status(
    company_id: int,
    data: schemas.CompanyStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    if data.account_status not in ACCOUNT_STATUSES:
        raise ValidationError("Invalid account status")
    company = db.get(Company, company_id)
    if not company:
        raise NotFoundError("Company not found")
    company.account_status = data.account_status
    db.commit()
    db.refresh(company)
    record_audit(db, "COMPANY_STATUS_CHANGED", user_id=admin.user_id, resource_type="company",
                 resource_id=company.id, request=request)
    return {"success": True, "company": schemas.CompanyOut.model_validate(company)}


@router.delete("/companies/delete")
def delete_company(
    data: schemas.CompanyDelete,
    request: Request,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    company = db.get(Company, data.company_id)
    if not company:
        raise NotFoundError("Company not found")

    user_count = db.query(func.count(User.id)).filter(User.company_id == company.id).scalar()
    if user_count:
        raise ValidationError("Cannot delete company with existing users. Delete users first.")

    roots = (
        db.query(Folder)
        .filter(Folder.company_id == company.id, Folder.parent_folder_id.is_(None))
        .all()
    )
    for root in roots:
        folder_service.remove_folder(db, root)

    db.delete(company)
    db.commit()
    record_audit(db, "COMPANY_DELETED", user_id=admin.user_id, resource_type="company",
                 resource_id=data.company_id, request=request)
    return {"success": True}

# ───────────── Users ─────────────


def _ensure_new_identity(db: Session, username: str, email: str) -> None:
    if not is_valid_username(username):
        raise ValidationError(
            "Invalid username. Must be 3-30 characters, alphanumeric, underscore, or hyphen only")
    if db.query(User).filter(User.username == username).first():
        raise ConflictError("Username already exists")
    if db.query(User).filter(User.email == email).first():
        raise ConflictError("Email already exists")


def _require_company(db: Session, company_id: int) -> Company:
    company = db.get(Company, company_id)
    if not company:
        raise NotFoundError("Company not found")
    return company


@router.get("/users/list")
def list_users(db: Session = Depends(get_db),
               admin: schemas.SessionClaims = Depends(get_admin_session)):
    users = (
        db.query(User)
        .options(joinedload(User.company))
        .order_by(User.created_at.desc(), User.id.desc())
        .all()
    )
    return {
        "success": True,
        "users": [
            {
                **schemas.UserOut.model_validate(user).model_dump(),
                "company_name": user.company.company_name if user.company else None,
                "account_status": user.company.account_status if user.company else None,
            }
            for user in users
        ],
    }


@router.post("/users/create")
def create_user(
    data: schemas.UserCreate,
    request: Request,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    email = data.email.strip().lower()
    username = data.username.strip()
    _ensure_new_identity(db, username, email)
    _require_company(db, data.company_id)
    if data.role not in ROLES:
        raise ValidationError("Invalid role")

    generated = None
    password = data.password
    if password:
        validate_password(password)
    else:
        password = generated = generate_strong_password()

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        company_id=data.company_id,
        role=data.role,
        is_activated=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    record_audit(db, "USER_CREATED", user_id=admin.user_id, resource_type="user",
                 resource_id=user.id, request=request)
    response = {"success": True, "user": schemas.UserOut.model_validate(user)}
    if generated:
        response["generatedPassword"] = generated
    return response


@router.post("/create-invite")
def create_invite(
    data: schemas.InviteCreate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    email = data.email.strip().lower()
    username = data.username.strip()
    _ensure_new_identity(db, username, email)
    _require_company(db, data.company_id)

    token = secrets.token_urlsafe(32)
    user = User(
        username=username,
        email=email,
        company_id=data.company_id,
        role="customer",
        is_activated=False,
        invite_token=token,
        invite_expires=datetime.datetime.utcnow() + INVITE_TTL,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    send_invite_email(email, username, token, background_tasks)
    record_audit(db, "USER_INVITE_CREATED", user_id=admin.user_id, resource_type="user",
                 resource_id=user.id, request=request)
    return {
        "success": True,
        "user": {"id": user.id, "email": user.email, "username": user.username},
        "inviteUrl": invite_link(token),
    }


@router.delete("/users/delete")
def delete_user(
    data: schemas.UserDelete,
    request: Request,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    if data.user_id == admin.user_id:
        raise ValidationError("Cannot delete your own account")

    user = db.get(User, data.user_id)
    if not user:
        raise NotFoundError("User not found")
    username = user.username

    db.delete(user)
    db.commit()
    record_audit(db, "USER_DELETED", user_id=admin.user_id, resource_type="user",
                 resource_id=username, request=request)
    return {"success": True}

# ───────────── Folders ─────────────


@router.get("/folders/list")
def list_all_folders(db: Session = Depends(get_db),
                     admin: schemas.SessionClaims = Depends(get_admin_session)):
    rows = (
        db.query(Folder)
        .options(joinedload(Folder.company))
        .order_by(folder_service.TYPE_ORDER, Folder.folder_name)
        .all()
    )
    return {
        "success": True,
        "folders": [
            {
                **schemas.FolderOut.model_validate(folder).model_dump(),
                "company_name": folder.company.company_name if folder.company else None,
            }
            for folder in rows
        ],
    }


@router.post("/folders/create")
def create_folder(
    data: schemas.FolderCreate,
    request: Request,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    if data.parent_folder_id is None and not data.folder_type:
        raise ValidationError("Folder name and type are required")
    folder = folder_service.create_folder(
        db, data.folder_name, data.folder_type, data.company_id, data.parent_folder_id)
    record_audit(db, "FOLDER_CREATED", user_id=admin.user_id, resource_type="folder",
                 resource_id=folder.folder_name, request=request)
    return {"success": True, "folder": schemas.FolderOut.model_validate(folder)}


@router.delete("/folders/delete")
def delete_folder(
    data: schemas.FolderDelete,
    request: Request,
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    folder = folder_service.get_folder(db, data.folder_id)
    name = folder.folder_name
    deleted, failed = folder_service.remove_folder(db, folder)
    record_audit(db, "FOLDER_DELETED", user_id=admin.user_id, resource_type="folder",
                 resource_id=name, request=request)
    return {"success": True, "deletedFiles": deleted, "failedFiles": failed}

# ───────────── Audit ─────────────


def _actor(entry: AuditLog) -> str:
    return entry.user.username if entry.user else "-"


@router.get("/audit")
def audit(
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    logs = (
        db.query(AuditLog)
        .options(joinedload(AuditLog.user))
        .order_by(AuditLog.timestamp.desc(), AuditLog.id.desc())
        .all()
    )
    return [
        {
            "timestamp": entry.timestamp,
            "user": _actor(entry),
            "action": entry.action,
            "resource_type": entry.resource_type,
            "resource_id": entry.resource_id,
            "ip_address": entry.ip_address,
        }
        for entry in logs
    ]


@router.get("/audit/export")
def export_audit(
    db: Session = Depends(get_db),
    admin: schemas.SessionClaims = Depends(get_admin_session),
):
    logs = (
        db.query(AuditLog)
        .options(joinedload(AuditLog.user))
        .order_by(AuditLog.timestamp, AuditLog.id)
        .all()
    )

    string_buffer = io.StringIO(newline="")
    writer = csv.writer(string_buffer)
    writer.writerow(["timestamp", "user", "action", "resource_type", "resource_id", "ip_address"])
    for row in logs:
        writer.writerow([
            row.timestamp.isoformat(), _actor(row), row.action,
            row.resource_type or "", row.resource_id or "", row.ip_address or "",
        ])

    byte_buffer = io.BytesIO(string_buffer.getvalue().encode("utf-8"))
    string_buffer.close()

    today = datetime.date.today().isoformat()
    return StreamingResponse(
        byte_buffer,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="audit-{today}.csv"'},
    )
