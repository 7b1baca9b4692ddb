import secrets
from datetime import datetime, timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy.orm import Session

from portal.audit import record_audit
from portal.auth import hash_password, verify_password
from portal.database import get_db
from portal.errors import NotFoundError, ValidationError
from portal.models import PasswordResetToken, User
from portal.utils.email_utils import send_password_reset_email
from portal.validation import validate_password

router = APIRouter()

RESET_TOKEN_TTL = timedelta(hours=1)
GENERIC_RESET_MESSAGE = "If an account exists with this email, a reset link has been sent."


class EmailInput(BaseModel):
    email: EmailStr


class ResetPasswordInput(BaseModel):
    token: str
    password: str


@router.post("/auth/request-reset")
def request_reset(
    data: EmailInput,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    user = db.query(User).filter(User.email == data.email.strip().lower()).first()
    if user:
        db.query(PasswordResetToken).filter(PasswordResetToken.user_id == user.id).delete()
        token = secrets.token_urlsafe(32)
        db.add(PasswordResetToken(
            user_id=user.id, token=token, expires_at=datetime.utcnow() + RESET_TOKEN_TTL))
        db.commit()
        send_password_reset_email(user.email, user.username, token, background_tasks)

    # same answer either way so the endpoint does not reveal which emails exist
    return {"success": True, "message": GENERIC_RESET_MESSAGE}


@router.post("/auth/reset-password")
def reset_password(
    data: ResetPasswordInput,
    request: Request,
    db: Session = Depends(get_db),
):
    if not data.token or not data.password:
        raise ValidationError("Token and password are required")
    validate_password(data.password)

    record = db.query(PasswordResetToken).filter(PasswordResetToken.token == data.token).first()
    if not record:
        raise NotFoundError("Invalid or expired reset link")

    if datetime.utcnow() > record.expires_at:
        db.delete(record)
        db.commit()
        raise ValidationError("Reset link has expired. Please request a new one.")

    user = db.get(User, record.user_id)
    if not user:
        raise NotFoundError("User not found")

    if verify_password(data.password, user.password_hash):
        raise ValidationError("New password must be different from the old one")

    user.password_hash = hash_password(data.password)
    db.delete(record)
    db.commit()

    record_audit(db, "PASSWORD_RESET", user_id=user.id, resource_type="user",
                 resource_id=user.id, request=request)
    return {"success": True, "message": "Password has been reset successfully"}
