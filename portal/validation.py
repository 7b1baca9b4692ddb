"""Input validation and sanitization helpers."""
from __future__ import annotations

import html
import os
import re
import secrets

from portal.errors import ValidationError

USERNAME_RE = re.compile(r"^[a-zA-Z0-9_-]{3,30}$")
SPECIAL_CHARS_RE = re.compile(r"[@$!%*?&#^()_+\-=\[\]{}|;:,.<>]")
MIN_PASSWORD_LENGTH = 12

# content type -> extensions accepted for it
ALLOWED_FILE_TYPES: dict[str, tuple[str, ...]] = {
    # documents
    "application/pdf": (".pdf",),
    "text/csv": (".csv",),
    "text/plain": (".txt",),
    "text/tab-separated-values": (".tsv",),
    "application/xml": (".xml",),
    "text/xml": (".xml",),
    "application/msword": (".doc",),
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": (".docx",),
    "application/vnd.ms-excel": (".xls",),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (".xlsx",),
    "application/x-rpt": (".rpt",),
    # databases
    "application/x-msaccess": (".mdb",),
    "application/vnd.ms-access": (".mdb",),
    "application/msaccess": (".mdb",),
    # executables and installers
    "application/x-msdownload": (".exe",),
    "application/x-msdos-program": (".exe",),
    "application/x-msi": (".msi",),
    "application/x-ms-installer": (".msi",),
    # archives
    "application/zip": (".zip",),
    "application/x-zip-compressed": (".zip",),
    "application/x-rar-compressed": (".rar",),
    "application/x-7z-compressed": (".7z",),
    # images
    "image/jpeg": (".jpg", ".jpeg"),
    "image/png": (".png",),
    "image/gif": (".gif",),
}

# browsers report these as application/octet-stream, so the extension decides
GENERIC_BINARY_TYPE = "application/octet-stream"
GENERIC_BINARY_EXTENSIONS = (".exe", ".msi", ".rpt", ".mdb", ".zip", ".rar", ".7z", ".bin")


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_RE.match(username))


def password_problems(password: str) -> list[str]:
    """Return every password rule the candidate fails (empty when it passes)."""
    errors = []
    if len(password) < MIN_PASSWORD_LENGTH:
        errors.append(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not SPECIAL_CHARS_RE.search(password):
        errors.append("Password must contain at least one special character")
    return errors


def validate_password(password: str) -> None:
    problems = password_problems(password)
    if problems:
        raise ValidationError("Password does not meet requirements", errors=problems)


def generate_strong_password(length: int = 16) -> str:
    uppercase = "ABCDEFGHJKLMNPQRSTUVWXYZ"
    lowercase = "abcdefghijkmnopqrstuvwxyz"
    digits = "23456789"
    symbols = "!@#$%^&*()_+-=[]{}|;:,.<>?"
    everything = uppercase + lowercase + digits + symbols

    chars = [
        secrets.choice(uppercase),
        secrets.choice(lowercase),
        secrets.choice(digits),
        secrets.choice(symbols),
    ]
    chars += [secrets.choice(everything) for _ in range(length - len(chars))]
    secrets.SystemRandom().shuffle(chars)
    return "".join(chars)


def sanitize_input(value: str) -> str:
    return html.escape(value, quote=True).replace("/", "&#x2F;").strip()


def sanitize_company_name(name: str) -> str:
    return sanitize_input(name)[:255]


def sanitize_filename(filename: str) -> str:
    """Strip path traversal and anything outside ``[A-Za-z0-9._-]``."""
    cleaned = re.sub(r"[^a-zA-Z0-9._-]", "_", filename)
    cleaned = re.sub(r"\.{2,}", ".", cleaned)
    cleaned = re.sub(r"^\.+", "", cleaned)
    return cleaned[:255]


def sanitize_folder_name(name: str) -> str:
    cleaned = sanitize_filename(name.strip())
    if not cleaned:
        raise ValidationError("Folder name is required")
    return cleaned


def validate_file_type(content_type: str | None, filename: str) -> None:
    content_type = (content_type or GENERIC_BINARY_TYPE).split(";")[0].strip().lower()
    extension = os.path.splitext(filename)[1].lower()

    if content_type == GENERIC_BINARY_TYPE:
        if extension not in GENERIC_BINARY_EXTENSIONS:
            raise ValidationError("File type not allowed")
        return

    expected = ALLOWED_FILE_TYPES.get(content_type)
    if expected is None:
        allowed = sorted({ext for exts in ALLOWED_FILE_TYPES.values() for ext in exts})
        raise ValidationError(f"File type not allowed. Allowed types: {', '.join(allowed)}")
    if extension not in expected:
        raise ValidationError("File extension does not match file type")
