from __future__ import annotations

from datetime import datetime

import bcrypt
from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, EmailStr
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import get_db
from models import User
from utils.brevo_email import deliver_otp_email
from utils.logger import get_logger
from utils.otp_service import (
    CodeLifecycleManager,
    OtpDeliveryError,
    OtpGenerationError,
    normalize_identity,
)
from utils.otp_store import Purpose


router = APIRouter(prefix="/auth", tags=["auth"])
logger = get_logger(__name__)

OTP_SENT = {"ok": True, "message": "OTP sent to your email."}
INVALID_OTP = "Invalid or expired OTP."


def get_otp_manager(request: Request) -> CodeLifecycleManager:
    return request.app.state.otp_manager


def get_deliver():
    return deliver_otp_email


def _hash_password(password: str) -> str:
    # bcrypt only looks at the first 72 bytes; truncate multi-byte safely.
    safe_password = password.strip().encode("utf-8")[:72].decode("utf-8", errors="ignore")
    return bcrypt.hashpw(safe_password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def _check_password(password: str) -> None:
    if len(password.strip()) < 6:
        raise HTTPException(400, "Password must be at least 6 characters.")


def _find_user(db: Session, email: str) -> User | None:
    return db.query(User).filter(User.email == normalize_identity(email)).first()


def _send_code(otp: CodeLifecycleManager, email: str, deliver, purpose: Purpose) -> None:
    try:
        otp.send(email, deliver, purpose)
    except OtpDeliveryError:
        raise HTTPException(502, "Failed to send OTP email.")
    except OtpGenerationError:
        logger.exception("OTP generation failed")
        raise HTTPException(503, "Verification service unavailable.")


class RegisterIn(BaseModel):
    email: EmailStr
    password: str


@router.post("/register")
def register(
    payload: RegisterIn,
    db: Session = Depends(get_db),
    otp: CodeLifecycleManager = Depends(get_otp_manager),
    deliver=Depends(get_deliver),
):
    email = normalize_identity(payload.email)
    _check_password(payload.password)

    if _find_user(db, email):
        raise HTTPException(400, "entry already available")

    user = User(email=email, password_hash=_hash_password(payload.password))
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent registration for the same email.
        db.rollback()
        raise HTTPException(400, "entry already available")
    db.refresh(user)

    _send_code(otp, email, deliver, Purpose.EMAIL_VERIFICATION)
    return {"ok": True, "user_id": user.id, "message": OTP_SENT["message"]}


class OtpRequestIn(BaseModel):
    email: EmailStr


@router.post("/verify-email/request-otp")
def verify_email_request_otp(
    payload: OtpRequestIn,
    db: Session = Depends(get_db),
    otp: CodeLifecycleManager = Depends(get_otp_manager),
    deliver=Depends(get_deliver),
):
    user = _find_user(db, payload.email)
    # Same answer whether or not the account exists.
    if not user or user.is_email_verified:
        logger.info("Verification code not sent: no unverified account for %s", normalize_identity(payload.email))
        return OTP_SENT

    _send_code(otp, user.email, deliver, Purpose.EMAIL_VERIFICATION)
    return OTP_SENT


class VerifyEmailIn(BaseModel):
    email: EmailStr
    otp: str


@router.post("/verify-email/confirm")
def verify_email_confirm(
    payload: VerifyEmailIn,
    db: Session = Depends(get_db),
    otp: CodeLifecycleManager = Depends(get_otp_manager),
):
    code = payload.otp.strip()
    if not code:
        raise HTTPException(400, "OTP required")

    if not otp.verify(payload.email, code, Purpose.EMAIL_VERIFICATION):
        raise HTTPException(400, INVALID_OTP)

    user = _find_user(db, payload.email)
    if not user:
        raise HTTPException(400, INVALID_OTP)
    user.is_email_verified = True
    db.commit()
    return {"ok": True, "message": "Email verified."}


@router.post("/forgot-password/request-otp")
def forgot_password_request_otp(
    payload: OtpRequestIn,
    db: Session = Depends(get_db),
    otp: CodeLifecycleManager = Depends(get_otp_manager),
    deliver=Depends(get_deliver),
):
    user = _find_user(db, payload.email)
    if not user:
        logger.info("Reset code not sent: no account for %s", normalize_identity(payload.email))
        return OTP_SENT

    _send_code(otp, user.email, deliver, Purpose.PASSWORD_RESET)
    return OTP_SENT


class ForgotPasswordResetIn(BaseModel):
    email: EmailStr
    otp: str
    new_password: str


@router.post("/forgot-password/reset")
def forgot_password_reset(
    payload: ForgotPasswordResetIn,
    db: Session = Depends(get_db),
    otp: CodeLifecycleManager = Depends(get_otp_manager),
):
    code = payload.otp.strip()
    if not code:
        raise HTTPException(400, "OTP required")
    # Reject weak passwords before the code is consumed.
    _check_password(payload.new_password)

    if not otp.verify(payload.email, code, Purpose.PASSWORD_RESET):
        raise HTTPException(400, INVALID_OTP)

    user = _find_user(db, payload.email)
    if not user:
        raise HTTPException(400, INVALID_OTP)

    user.password_hash = _hash_password(payload.new_password)
    user.password_changed_at = datetime.utcnow()
    db.commit()
    return {"ok": True, "message": "Password updated successfully."}
