from sqlalchemy import Column, Integer, BigInteger, String, ForeignKey, DateTime, Boolean
from sqlalchemy.orm import relationship
from datetime import datetime
from portal.database import Base

ACCOUNT_STATUSES = ("active", "past_due", "suspended")
RESTRICTED_STATUSES = ("past_due", "suspended")
ROLES = ("admin", "customer")
FOLDER_TYPES = ("program_files", "shared", "company_specific")


class Company(Base):
    __tablename__ = "companies"

    id = Column(Integer, primary_key=True, index=True)
    company_name = Column(String(255), unique=True, nullable=False)
    account_status = Column(String, nullable=False, default="active")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    users = relationship("User", back_populates="company")
    folders = relationship("Folder", back_populates="company")


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(30), unique=True, index=True, nullable=False)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=True)  # unset until activation
    role = Column(String, nullable=False, default="customer")
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=False)
    is_activated = Column(Boolean, default=False, nullable=False)
    invite_token = Column(String, unique=True, nullable=True)
    invite_expires = Column(DateTime, nullable=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    company = relationship("Company", back_populates="users")
    logs = relationship("AuditLog", back_populates="user")
    reset_tokens = relationship("PasswordResetToken", cascade="all, delete-orphan")


class Folder(Base):
    __tablename__ = "file_permissions"

    id = Column(Integer, primary_key=True, index=True)
    folder_name = Column(String(255), nullable=False)
    folder_type = Column(String, nullable=False)
    blob_prefix = Column(String, nullable=False, index=True)
    company_id = Column(Integer, ForeignKey("companies.id"), nullable=True)
    parent_folder_id = Column(Integer, ForeignKey("file_permissions.id"), nullable=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    company = relationship("Company", back_populates="folders")


class File(Base):
    __tablename__ = "files"

    id = Column(Integer, primary_key=True, index=True)
    folder_id = Column(Integer, ForeignKey("file_permissions.id", ondelete="CASCADE"), nullable=False)
    filename = Column(String, nullable=False)
    url = Column(String, nullable=False)
    size = Column(BigInteger, nullable=True)
    uploaded_at = Column(DateTime, default=datetime.utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    action = Column(String, nullable=False)
    resource_type = Column(String, nullable=True)
    resource_id = Column(String, nullable=True)
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    timestamp = Column(DateTime, default=datetime.utcnow)

    user = relationship("User", back_populates="logs")


class PasswordResetToken(Base):
    __tablename__ = "password_reset_tokens"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    token = Column(String, unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
