from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class Token(BaseModel):
    access_token: str
    token_type: str
    expires_at: datetime


class SessionClaims(BaseModel):
    user_id: int
    username: str
    company_id: int
    company_name: Optional[str] = None
    role: str
    account_status: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ───── Companies ─────

class CompanyCreate(BaseModel):
    company_name: str = Field(alias="companyName")

    model_config = ConfigDict(populate_by_name=True)


class CompanyDelete(BaseModel):
    company_id: int = Field(alias="companyId")

    model_config = ConfigDict(populate_by_name=True)


class CompanyStatusUpdate(BaseModel):
    account_status: str = Field(alias="accountStatus")

    model_config = ConfigDict(populate_by_name=True)


class CompanyOut(BaseModel):
    id: int
    company_name: str
    account_status: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# ───── Users ─────

class UserCreate(BaseModel):
    username: str
    email: EmailStr
    password: Optional[str] = None
    company_id: int = Field(alias="companyId")
    role: str = "customer"

    model_config = ConfigDict(populate_by_name=True)


class InviteCreate(BaseModel):
    username: str
    email: EmailStr
    company_id: int = Field(alias="companyId")

    model_config = ConfigDict(populate_by_name=True)


class UserDelete(BaseModel):
    user_id: int = Field(alias="userId")

    model_config = ConfigDict(populate_by_name=True)


class UserOut(BaseModel):
    id: int
    username: str
    email: str
    role: str
    company_id: int
    is_activated: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ActivateInput(BaseModel):
    token: str
    password: str


class PasswordChange(BaseModel):
    current_password: str = Field(alias="currentPassword")
    new_password: str = Field(alias="newPassword")

    model_config = ConfigDict(populate_by_name=True)


class LoginAttempt(BaseModel):
    username: str


# ───── Folders ─────

class FolderCreate(BaseModel):
    folder_name: str = Field(alias="folderName")
    folder_type: Optional[str] = Field(default=None, alias="folderType")
    company_id: Optional[int] = Field(default=None, alias="companyId")
    parent_folder_id: Optional[int] = Field(default=None, alias="parentFolderId")

    model_config = ConfigDict(populate_by_name=True)


class FolderDelete(BaseModel):
    folder_id: int = Field(alias="folderId")

    model_config = ConfigDict(populate_by_name=True)


class FolderOut(BaseModel):
    id: int
    folder_name: str
    folder_type: str
    blob_prefix: str
    company_id: Optional[int] = None
    parent_folder_id: Optional[int] = None

    model_config = ConfigDict(from_attributes=True)


class FolderNode(FolderOut):
    children: list["FolderNode"] = []


FolderNode.model_rebuild()


# ───── Files ─────

class FileOut(BaseModel):
    url: str
    pathname: str
    filename: str
    size: int
    uploaded_at: datetime

    model_config = ConfigDict(from_attributes=True)


class FileDelete(BaseModel):
    url: str


class FileMetadata(BaseModel):
    folder_id: int = Field(alias="folderId")
    filename: str
    url: str
    size: Optional[int] = None

    model_config = ConfigDict(populate_by_name=True)
