"""Phone number to account resolution.

The ``verified_phone`` unique constraint is the source of truth: a unique
violation while claiming or transferring a phone means another delivery won
the race, and resolution is retried against the row that now owns it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from sqlalchemy import case, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models.account import Account
from app.services.phone_service import is_phone_unique_violation, normalize_from, phone_variants
from app.services.result import Result

logger = get_logger("identity_service")

MAX_CLAIM_ATTEMPTS = 3
MAX_CANDIDATES = 5


class ResolutionKind(str, Enum):
    ACCOUNT = "account"
    AMBIGUOUS = "ambiguous"
    UNLINKED = "unlinked"
    INVALID = "invalid"


@dataclass
class Resolution:
    kind: ResolutionKind
    phone_e164: Optional[str] = None
    account: Optional[Account] = None
    candidates: List[Account] = field(default_factory=list)

    @property
    def is_linked(self) -> bool:
        return self.kind == ResolutionKind.ACCOUNT and self.account is not None


def _now() -> datetime:
    return datetime.now(timezone.utc)


def find_verified_owner(db: Session, phone_e164: str) -> Optional[Account]:
    return db.query(Account).filter(Account.verified_phone == phone_e164).first()


def find_unverified_candidates(db: Session, phone_e164: str) -> List[Account]:
    """Accounts whose signup phone matches any stored spelling and that hold no verified phone."""
    return (
        db.query(Account)
        .filter(Account.verified_phone.is_(None), Account.phone_number.in_(phone_variants(phone_e164)))
        .limit(MAX_CANDIDATES)
        .all()
    )


def claim_phone(db: Session, account_id, phone_e164: str, now: Optional[datetime] = None) -> bool:
    """Set ``verified_phone`` on an account that has none. False when the claim lost a race."""
    stmt = (
        update(Account)
        .where(Account.id == account_id, Account.verified_phone.is_(None))
        .values(verified_phone=phone_e164, phone_verified_at=now or _now())
        .execution_options(synchronize_session=False)
    )
    try:
        with db.begin_nested():
            rowcount = db.execute(stmt).rowcount
    except IntegrityError as exc:
        if is_phone_unique_violation(exc):
            logger.info(f"Phone claim lost race: phone={phone_e164}, account={account_id}")
            return False
        raise
    return rowcount == 1


def resolve_account(db: Session, raw_phone: Optional[str], now: Optional[datetime] = None) -> Resolution:
    """Map a sender id to exactly one account, or report ambiguous / unlinked / invalid."""
    phone = normalize_from(raw_phone)
    if not phone:
        return Resolution(ResolutionKind.INVALID)

    for attempt in range(1, MAX_CLAIM_ATTEMPTS + 1):
        owner = find_verified_owner(db, phone)
        if owner:
            return Resolution(ResolutionKind.ACCOUNT, phone, owner)

        candidates = find_unverified_candidates(db, phone)
        if len(candidates) > 1:
            return Resolution(ResolutionKind.AMBIGUOUS, phone, candidates=candidates)
        if not candidates:
            return Resolution(ResolutionKind.UNLINKED, phone)

        candidate = candidates[0]
        # The inbound message itself proves possession of the phone.
        if claim_phone(db, candidate.id, phone, now):
            db.refresh(candidate)
            logger.info(
                "Phone verified on first contact",
                extra={"context": {"account_id": candidate.id, "phone": phone}},
            )
            return Resolution(ResolutionKind.ACCOUNT, phone, candidate)
        logger.info(f"Re-resolving after claim race (attempt {attempt}): phone={phone}")

    owner = find_verified_owner(db, phone)
    if owner:
        return Resolution(ResolutionKind.ACCOUNT, phone, owner)
    return Resolution(ResolutionKind.UNLINKED, phone)


def transfer_verified_phone(
    db: Session, target_account_id, phone_e164: str, now: Optional[datetime] = None
) -> Result[list]:
    """Give ``phone_e164`` to the target, evicting any previous holder, in one UPDATE.

    Returns the ids of evicted accounts on success.
    """
    now = now or _now()
    is_target = Account.id == target_account_id
    stmt = (
        update(Account)
        .where(or_(is_target, Account.verified_phone == phone_e164))
        .values(
            verified_phone=case((is_target, phone_e164), else_=None),
            phone_verified_at=case((is_target, now), else_=None),
        )
        .returning(Account.id)
        .execution_options(synchronize_session=False)
    )
    try:
        with db.begin_nested():
            rows = db.execute(stmt).fetchall()
    except IntegrityError as exc:
        if is_phone_unique_violation(exc):
            return Result.failure("Phone transfer conflicted with a concurrent link", "phone_conflict")
        raise

    updated_ids = [row[0] for row in rows]
    if target_account_id not in updated_ids:
        return Result.failure("Target account not found", "account_not_found")
    evicted = [account_id for account_id in updated_ids if account_id != target_account_id]
    logger.info(
        "Verified phone transferred",
        extra={"context": {"account_id": target_account_id, "phone": phone_e164, "evicted": evicted}},
    )
    return Result.success(evicted)
