import logging
import math
import os
from datetime import datetime, timedelta

from dotenv import load_dotenv
from fastapi import APIRouter, Depends, Request
from fastapi.security import OAuth2PasswordRequestForm, OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from portal import models, schemas
from portal.audit import client_ip, record_audit
from portal.database import get_db
from portal.errors import (
    AccountRestricted, Forbidden, NotFoundError, RateLimitedError,
    Unauthenticated, ValidationError,
)
from portal.rate_limit import (
    IP_LIMIT, LOGIN_WINDOW_SECONDS, USERNAME_LIMIT, RateLimitStore,
)
from portal.validation import validate_password

load_dotenv()

router = APIRouter()
logger = logging.getLogger(__name__)
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# ───── JWT Config ─────
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    raise RuntimeError("SECRET_KEY environment variable is required")
ALGORITHM = "HS256"
SESSION_MAX_AGE = timedelta(hours=float(os.getenv("SESSION_MAX_AGE_HOURS", "8")))

INVALID_CREDENTIALS = "Invalid username or password"

# ───── Password Utils ─────


def hash_password(p: str): return pwd_context.hash(p)


def verify_password(p: str, h: str | None):
    if not h:
        return False
    return pwd_context.verify(p, h)

# ───── Token Helpers ─────


def create_session_token(claims: schemas.SessionClaims, now: datetime | None = None) -> tuple[str, datetime]:
    """Sign ``claims`` with a fixed absolute expiry; activity never extends it."""
    issued = now or datetime.utcnow()
    expire = issued + SESSION_MAX_AGE
    to_encode = {
        "sub": str(claims.user_id),
        "username": claims.username,
        "companyId": claims.company_id,
        "companyName": claims.company_name,
        "role": claims.role,
        "accountStatus": claims.account_status,
        "iat": issued,
        "exp": expire,
    }
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM), expire


def decode_session_token(token: str) -> schemas.SessionClaims:
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        return schemas.SessionClaims(
            user_id=int(payload["sub"]),
            username=payload["username"],
            company_id=payload["companyId"],
            company_name=payload.get("companyName"),
            role=payload["role"],
            account_status=payload["accountStatus"],
        )
    except (JWTError, KeyError, TypeError, ValueError) as exc:
        raise Unauthenticated("Could not validate credentials") from exc


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

# ───── Current Session ─────


def get_current_session(token: str | None = Depends(oauth2_scheme)) -> schemas.SessionClaims:
    if not token:
        raise Unauthenticated()
    return decode_session_token(token)


def get_admin_session(
        session: schemas.SessionClaims = Depends(get_current_session)) -> schemas.SessionClaims:
    if not session.is_admin:
        raise Forbidden("Admin access required")
    return session


def get_rate_limiter(request: Request) -> RateLimitStore:
    return request.app.state.rate_limiter

# ───── Authenticator ─────


class Authenticator:
    """Checks credentials behind the per-username and per-IP attempt windows."""

    def __init__(self, db: Session, limiter: RateLimitStore):
        self.db = db
        self.limiter = limiter

    @staticmethod
    def username_key(username: str) -> str:
        return f"login:username:{username.strip().lower()}"

    @staticmethod
    def ip_key(ip: str) -> str:
        return f"login:ip:{ip}"

    def check_rate_limit(self, username: str, ip: str, request: Request | None = None) -> int:
        """Consume one attempt in both windows; return the smaller remaining budget."""
        by_username = self.limiter.hit(self.username_key(username), USERNAME_LIMIT, LOGIN_WINDOW_SECONDS)
        by_ip = self.limiter.hit(self.ip_key(ip), IP_LIMIT, LOGIN_WINDOW_SECONDS)

        if not by_username.success:
            record_audit(self.db, "LOGIN_RATE_LIMITED", resource_type="auth",
                         resource_id=username, request=request)
            minutes = max(1, math.ceil(by_username.retry_after / 60))
            raise RateLimitedError(
                f"Too many login attempts. Please try again in {minutes} minutes.",
                reset_time=by_username.reset_time, retry_after=math.ceil(by_username.retry_after))
        if not by_ip.success:
            record_audit(self.db, "LOGIN_RATE_LIMITED_IP", resource_type="auth",
                         resource_id=username, request=request)
            minutes = max(1, math.ceil(by_ip.retry_after / 60))
            raise RateLimitedError(
                f"Too many login attempts from this location. Please try again in {minutes} minutes.",
                reset_time=by_ip.reset_time, retry_after=math.ceil(by_ip.retry_after))
        return min(by_username.remaining, by_ip.remaining)

    def authenticate(self, username: str, password: str, ip: str,
                     request: Request | None = None) -> schemas.SessionClaims:
        if not username or not password:
            raise Unauthenticated(INVALID_CREDENTIALS)

        self.check_rate_limit(username, ip, request)

        user = (
            self.db.query(models.User)
            .filter(models.User.username == username, models.User.is_activated.is_(True))
            .first()
        )
        if user is None:
            raise Unauthenticated(INVALID_CREDENTIALS)

        if not verify_password(password, user.password_hash):
            record_audit(self.db, "LOGIN_FAILED", user_id=user.id, resource_type="auth",
                         resource_id=username, request=request)
            raise Unauthenticated(INVALID_CREDENTIALS)

        # identity is proven at this point, so the tenant status may be disclosed
        company = user.company
        if company is not None and company.account_status in models.RESTRICTED_STATUSES:
            raise AccountRestricted()

        self.limiter.reset(self.username_key(username))
        user.last_login = datetime.utcnow()
        self.db.commit()

        return schemas.SessionClaims(
            user_id=user.id,
            username=user.username,
            company_id=user.company_id,
            company_name=company.company_name if company else None,
            role=user.role,
            account_status=company.account_status if company else "active",
        )

# ───── Login ─────


@router.post("/auth/login", response_model=schemas.Token)
def login(
        request: Request,
        form_data: OAuth2PasswordRequestForm = Depends(),
        db: Session = Depends(get_db),
        limiter: RateLimitStore = Depends(get_rate_limiter)):
    claims = Authenticator(db, limiter).authenticate(
        form_data.username, form_data.password, client_ip(request), request)
    access_token, expires_at = create_session_token(claims)
    return {"access_token": access_token, "token_type": "bearer", "expires_at": expires_at}


@router.post("/auth/login-attempt")
def login_attempt(
        data: schemas.LoginAttempt,
        request: Request,
        db: Session = Depends(get_db),
        limiter: RateLimitStore = Depends(get_rate_limiter)):
    remaining = Authenticator(db, limiter).check_rate_limit(
        data.username, client_ip(request), request)
    return {"success": True, "remaining": remaining}


@router.get("/auth/session", response_model=schemas.SessionClaims)
def read_session(session: schemas.SessionClaims = Depends(get_current_session)):
    return session

# ───── Activate Invite ─────


@router.post("/auth/activate")
def activate(
    data: schemas.ActivateInput,
    request: Request,
    db: Session = Depends(get_db),
):
    if not data.token or not data.password:
        raise ValidationError("Missing required fields")
    validate_password(data.password)

    user = (
        db.query(models.User)
        .filter(models.User.invite_token == data.token, models.User.is_activated.is_(False))
        .first()
    )
    if not user:
        raise NotFoundError("Invalid or expired invite link")

    if user.invite_expires is None or datetime.utcnow() > user.invite_expires:
        user.invite_token = None
        user.invite_expires = None
        db.commit()
        raise ValidationError("Invite link has expired")

    user.password_hash = hash_password(data.password)
    user.is_activated = True
    user.invite_token = None
    user.invite_expires = None
    db.commit()

    record_audit(db, "ACCOUNT_ACTIVATED", user_id=user.id, resource_type="user", request=request)
    return {"success": True, "message": "Account activated successfully", "username": user.username}

# ───── Change Password ─────


@router.post("/user/change-password")
def change_password(
    data: schemas.PasswordChange,
    request: Request,
    db: Session = Depends(get_db),
    session: schemas.SessionClaims = Depends(get_current_session),
):
    user = db.get(models.User, session.user_id)
    if user is None:
        raise NotFoundError("User not found")

    if not verify_password(data.current_password, user.password_hash):
        record_audit(db, "PASSWORD_CHANGE_FAILED", user_id=user.id, resource_type="user",
                     resource_id=user.id, request=request)
        raise ValidationError("Current password is incorrect")
    validate_password(data.new_password)

    user.password_hash = hash_password(data.new_password)
    db.commit()
    record_audit(db, "PASSWORD_CHANGED", user_id=user.id, resource_type="user",
                 resource_id=user.id, request=request)
    return {"success": True, "message": "Password changed successfully"}
