"""
One-time login codes.

A code lives in the ``otp`` collection, one record per user. Logging in again
replaces the record; verifying marks it consumed so it cannot be reused.
"""
import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from pymongo import ReturnDocument

from database import db
from errors import OtpExpired, OtpInvalid, OtpNotFound
from schemas import Otp

logger = logging.getLogger(__name__)

OTP_TTL = timedelta(minutes=10)


def generate_code() -> str:
    return str(100000 + secrets.randbelow(900000))


def _hash_code(user_id: str, code: str) -> str:
    return hashlib.sha256(f"{user_id}:{code}".encode()).hexdigest()


def _as_utc(value: datetime) -> datetime:
    # Mongo hands back naive datetimes that are already UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def issue(user_id: str, now: Optional[datetime] = None) -> str:
    """Create (or replace) the pending code for a user and return it in clear."""
    now = now or datetime.now(timezone.utc)
    code = generate_code()
    record = Otp(user_id=user_id, code_hash=_hash_code(user_id, code), expires_at=now + OTP_TTL)
    db["otp"].find_one_and_update(
        {"user_id": user_id},
        {
            "$set": {**record.model_dump(), "updated_at": now},
            "$setOnInsert": {"created_at": now},
        },
        upsert=True,
    )
    logger.info("Issued login code for user %s, expires %s", user_id, record.expires_at.isoformat())
    return code


def consume(user_id: str, code: str, now: Optional[datetime] = None) -> None:
    """Validate ``code`` for the user and mark it used.

    Raises OtpNotFound when nothing is pending, OtpInvalid on mismatch and
    OtpExpired once the validity window has passed.
    """
    now = now or datetime.now(timezone.utc)
    record = db["otp"].find_one({"user_id": user_id, "consumed_at": None})
    if not record:
        raise OtpNotFound()
    if not hmac.compare_digest(record["code_hash"], _hash_code(user_id, code)):
        logger.info("Rejected login code for user %s: mismatch", user_id)
        raise OtpInvalid()
    if now > _as_utc(record["expires_at"]):
        logger.info("Rejected login code for user %s: expired", user_id)
        raise OtpExpired()

    consumed = db["otp"].find_one_and_update(
        {"_id": record["_id"], "consumed_at": None},
        {"$set": {"consumed_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    # a concurrent verification got there first
    if consumed is None:
        raise OtpNotFound()
