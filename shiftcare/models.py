import uuid
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, String, Uuid
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def default_uuid():
    return uuid.uuid4()


class Professional(Base):
    """Healthcare professional account.

    Registration and profile editing live elsewhere; the OTP flow only looks
    accounts up by phone and flips ``phone_verified``.
    """

    __tablename__ = "healthcare_professionals"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=default_uuid)
    first_name = Column(String(64), nullable=False)
    last_name = Column(String(64), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(32), nullable=False, unique=True, index=True)  # E.164
    position = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="pending")  # pending|active|suspended
    is_verified = Column(Boolean, nullable=False, default=False)
    phone_verified = Column(Boolean, nullable=False, default=False)
    phone_verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
