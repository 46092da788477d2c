from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from database import Base


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)

    # Stored lower-cased; the same normalization the OTP store applies.
    email = Column(String, unique=True, index=True, nullable=False)

    # bcrypt hash. Never store plaintext.
    password_hash = Column(String, nullable=False)

    # Set once an email-verification code has been confirmed.
    is_email_verified = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    password_changed_at = Column(DateTime, nullable=True)
