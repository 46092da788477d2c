from __future__ import annotations

import os
from typing import Optional, Tuple

import requests

from utils.logger import get_logger
from utils.otp_service import OTP_EXP_MIN
from utils.otp_store import Purpose


BREVO_URL = "https://api.brevo.com/v3/smtp/email"
SENDER_NAME = os.getenv("BREVO_SENDER_NAME", "Replateo")

logger = get_logger(__name__)


class EmailDeliveryError(RuntimeError):
    pass


def send_email(*, to_email: str, subject: str, html: str, text: Optional[str] = None) -> None:
    """
    Sends email using Brevo Transactional Email API.
    Requires:
      - BREVO_API_KEY
      - BREVO_FROM (email) OR EMAIL_FROM/SMTP_FROM
    """
    api_key = os.getenv("BREVO_API_KEY")
    if not api_key:
        raise EmailDeliveryError("BREVO_API_KEY is not set")

    from_email = (
        os.getenv("BREVO_FROM")
        or os.getenv("EMAIL_FROM")
        or os.getenv("SMTP_FROM")
    )
    if not from_email:
        raise EmailDeliveryError("BREVO_FROM (or EMAIL_FROM/SMTP_FROM) is not set")

    payload = {
        "sender": {"email": from_email, "name": SENDER_NAME},
        "to": [{"email": to_email}],
        "subject": subject,
        "htmlContent": html,
    }
    if text:
        payload["textContent"] = text

    logger.info("Sending '%s' to %s", subject, to_email)
    try:
        resp = requests.post(
            BREVO_URL,
            headers={
                "accept": "application/json",
                "api-key": api_key,
                "content-type": "application/json",
            },
            json=payload,
            timeout=15,
        )
    except requests.RequestException as e:
        raise EmailDeliveryError(f"Brevo request failed: {e}") from e
    if resp.status_code >= 300:
        raise EmailDeliveryError(f"Brevo send failed ({resp.status_code}): {resp.text}")


def render_otp_email(code: str, purpose: Purpose, ttl_minutes: int) -> Tuple[str, str, str]:
    """Returns (subject, html, text) for the given code and flow."""
    if Purpose(purpose) is Purpose.PASSWORD_RESET:
        subject = f"Reset your {SENDER_NAME} password"
        html = f"""
        <div style="font-family:'Segoe UI',Tahoma,sans-serif;max-width:600px;margin:auto;padding:40px">
          <h2 style="color:#ea580c;text-align:center">Password Reset</h2>
          <p>We received a request to reset your {SENDER_NAME} password. Use the code below to proceed:</p>
          <div style="font-size:36px;font-weight:700;letter-spacing:8px;text-align:center;font-family:monospace">{code}</div>
          <p>This code expires in <strong>{ttl_minutes} minutes</strong>. If you did not request this, ignore this email.</p>
        </div>
        """
        text = f"Your password reset code is {code}. It expires in {ttl_minutes} minutes."
    else:
        subject = f"Your {SENDER_NAME} verification code"
        html = f"""
        <div style="font-family:Arial,sans-serif;max-width:600px;margin:auto;padding:20px">
          <h2 style="color:#f97316;text-align:center">{SENDER_NAME} Verification</h2>
          <p>Use the code below to verify your email:</p>
          <div style="font-size:28px;font-weight:700;letter-spacing:6px;text-align:center">{code}</div>
          <p>This code is valid for <strong>{ttl_minutes} minutes</strong>.</p>
          <p>If you didn't request this, ignore this email.</p>
        </div>
        """
        text = f"Your verification code is {code}. It expires in {ttl_minutes} minutes."
    return subject, html, text


def deliver_otp_email(to_email: str, code: str, purpose: Purpose) -> None:
    subject, html, text = render_otp_email(code, purpose, OTP_EXP_MIN)
    send_email(to_email=to_email, subject=subject, html=html, text=text)
