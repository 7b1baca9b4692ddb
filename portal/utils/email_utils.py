"""Helpers for sending transactional email in a provider-agnostic way.

Delivery is fire-and-forget: a failing provider is logged and never fails the
request that triggered the message.
"""
from __future__ import annotations

import json
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Optional

import requests
from fastapi import BackgroundTasks
from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

PRODUCT_NAME = "Customer Portal"


def frontend_base_url() -> str:
    return os.getenv("FRONTEND_BASE_URL", "http://localhost:3000").rstrip("/")


def _email_from() -> str:
    sender = os.getenv("EMAIL_FROM")
    if not sender:
        raise RuntimeError("EMAIL_FROM must be configured")
    return sender


def _provider() -> str:
    return os.getenv("EMAIL_PROVIDER", "smtp").lower()


def _validate_provider(provider: str) -> None:
    if provider == "smtp":
        for key in ("SMTP_HOST", "SMTP_USERNAME", "SMTP_PASSWORD"):
            if not os.getenv(key):
                raise RuntimeError(
                    f"{key} is required for SMTP email delivery")
    elif provider == "sendgrid":
        if not os.getenv("SENDGRID_API_KEY"):
            raise RuntimeError(
                "SENDGRID_API_KEY is required for SendGrid delivery")
    elif provider == "resend":
        if not os.getenv("RESEND_API_KEY"):
            raise RuntimeError(
                "RESEND_API_KEY is required for Resend delivery")
    elif provider == "console":
        # no configuration required
        pass
    else:
        raise RuntimeError(f"Unsupported EMAIL_PROVIDER '{provider}'")


def _send_via_smtp(subject: str, to_email: str, body: str) -> None:
    host = os.environ["SMTP_HOST"]
    username = os.environ["SMTP_USERNAME"]
    password = os.environ["SMTP_PASSWORD"]
    port = int(os.getenv("SMTP_PORT", "465"))

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = _email_from()
    msg["To"] = to_email
    msg.set_content(body)

    with smtplib.SMTP_SSL(host, port) as smtp:
        smtp.login(username, password)
        smtp.send_message(msg)


def _send_via_sendgrid(subject: str, to_email: str, body: str) -> None:
    api_key = os.environ["SENDGRID_API_KEY"]
    payload = {
        "personalizations": [{"to": [{"email": to_email}]}],
        "from": {"email": _email_from()},
        "subject": subject,
        "content": [{"type": "text/plain", "value": body}],
    }
    response = requests.post(
        "https://api.sendgrid.com/v3/mail/send",
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        data=json.dumps(payload),
        timeout=10,
    )
    if response.status_code >= 400:
        raise RuntimeError(
            f"SendGrid failed with status {response.status_code}: {response.text}")


def _send_via_resend(subject: str, to_email: str, body: str) -> None:
    api_key = os.environ["RESEND_API_KEY"]
    response = requests.post(
        "https://api.resend.com/emails",
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        data=json.dumps({
            "from": _email_from(),
            "to": [to_email],
            "subject": subject,
            "text": body,
        }),
        timeout=10,
    )
    if response.status_code >= 400:
        raise RuntimeError(
            f"Resend failed with status {response.status_code}: {response.text}")


def _send_email(subject: str, to_email: str, body: str) -> None:
    provider = _provider()
    _validate_provider(provider)
    if provider == "smtp":
        _send_via_smtp(subject, to_email, body)
    elif provider == "sendgrid":
        _send_via_sendgrid(subject, to_email, body)
    elif provider == "resend":
        _send_via_resend(subject, to_email, body)
    else:
        logger.info("Email to %s: %s", to_email, body)


def _deliver(subject: str, to_email: str, body: str) -> bool:
    try:
        _send_email(subject, to_email, body)
    except (RuntimeError, OSError, requests.RequestException):
        logger.exception("Failed to send '%s' email", subject)
        return False
    return True


def _dispatch(subject: str, to_email: str, body: str,
              background_tasks: Optional[BackgroundTasks]) -> None:
    if background_tasks:
        background_tasks.add_task(_deliver, subject, to_email, body)
    else:
        _deliver(subject, to_email, body)


def invite_link(token: str) -> str:
    return f"{frontend_base_url()}/activate?token={token}"


def reset_link(token: str) -> str:
    return f"{frontend_base_url()}/reset-password?token={token}"


def send_invite_email(
        to_email: str,
        username: str,
        token: str,
        background_tasks: Optional[BackgroundTasks] = None) -> None:
    subject = f"Welcome to {PRODUCT_NAME} - Set Your Password"
    contact = os.getenv("ADMIN_EMAIL", "your administrator")
    body = (
        f"An account has been created for you on {PRODUCT_NAME}.\n\n"
        f"Your username: {username}\n\n"
        "Set your password and activate your account here:"
        f"\n\n{invite_link(token)}\n\n"
        "This link will expire in 7 days. If you did not expect this email, "
        f"please contact {contact}."
    )
    _dispatch(subject, to_email, body, background_tasks)


def send_password_reset_email(
        to_email: str,
        username: str,
        token: str,
        background_tasks: Optional[BackgroundTasks] = None) -> None:
    subject = f"Reset Your {PRODUCT_NAME} Password"
    body = (
        f"Hello {username},\n\n"
        "We received a request to reset your password. Use the following link "
        f"to choose a new one:\n\n{reset_link(token)}\n\n"
        "This link will expire in 1 hour. If you didn't request this reset, "
        "you can ignore this email."
    )
    _dispatch(subject, to_email, body, background_tasks)
