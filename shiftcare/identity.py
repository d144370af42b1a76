import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from shiftcare_shared import mask_phone

from .errors import AccountNotFound
from .models import Professional

logger = logging.getLogger("shiftcare.identity")


@dataclass
class BoundIdentity:
    subject: str
    phone: str
    account: Optional[Professional] = None


class OpenBinder:
    """Any phone may authenticate; the phone itself is the session subject."""

    def bind(self, phone: str) -> BoundIdentity:
        return BoundIdentity(subject=phone, phone=phone)

    def mark_verified(self, identity: BoundIdentity) -> bool:
        return False


class ProfessionalBinder:
    """Phone must belong to an existing professional account."""

    def __init__(self, db: Session):
        self.db = db

    def bind(self, phone: str) -> BoundIdentity:
        pro = self.db.query(Professional).filter(Professional.phone == phone).one_or_none()
        if pro is None:
            raise AccountNotFound()
        return BoundIdentity(subject=str(pro.id), phone=phone, account=pro)

    def mark_verified(self, identity: BoundIdentity) -> bool:
        """Set ``phone_verified`` once. Returns True only on the false->true transition."""
        pro = identity.account
        if pro is None or pro.phone_verified:
            return False
        pro.phone_verified = True
        pro.phone_verified_at = datetime.utcnow()
        self.db.flush()
        logger.info("Phone verified for professional %s (%s)", pro.id, mask_phone(identity.phone))
        return True
