"""Accounts, credential checks with lockout, session tokens and admin OTP.

Sessions live in the ``session`` collection and one-time codes in ``otp``;
both carry an ``expires_at`` TTL index so every server instance sees the same
state. Expiry is also checked against the injected clock on read, which keeps
the behaviour testable without waiting on the TTL monitor.
"""

import hashlib
import hmac
import logging
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional, Tuple

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import as_utc, create_document, to_object_id, utcnow
from errors import (
    AccountLocked,
    DeliveryFailed,
    DuplicateAccount,
    ForbiddenError,
    InvalidCredentials,
    InvalidOtp,
    TooManyRequests,
    Unauthenticated,
    ValidationError,
)
from notify import Notifier
from schemas import Account, RegisterRequest
from settings import Settings

logger = logging.getLogger(__name__)

PHONE_RE = re.compile(r"^(0\d{9}|\+84\d{9})$")
USER_SCOPE = "user"
ADMIN_SCOPE = "admin"


def hash_password(password: str, salt: Optional[str] = None) -> Tuple[str, str]:
    if not salt:
        salt = secrets.token_hex(16)
    h = hashlib.sha256((salt + password).encode()).hexdigest()
    return h, salt


def verify_password(password: str, salt: str, expected_hash: str) -> bool:
    h, _ = hash_password(password, salt)
    return hmac.compare_digest(h, expected_hash)


def valid_phone(phone: Optional[str]) -> bool:
    return bool(phone) and bool(PHONE_RE.match(phone.strip()))


def mask_email(email: str) -> str:
    return re.sub(r"(.{2})(.*)(@.*)", r"\1***\3", email)


def public_account(doc: dict) -> dict:
    return {
        "id": str(doc["_id"]),
        "name": doc.get("name", ""),
        "email": doc.get("email"),
        "phone": doc.get("phone") or "",
        "role": doc.get("role", "user"),
    }


@dataclass(frozen=True)
class Caller:
    """Identity attached to an authenticated request."""

    account_id: str
    role: str
    scope: str

    @property
    def is_admin(self) -> bool:
        return self.scope == ADMIN_SCOPE and self.role == "admin"


class AccountService:
    def __init__(self, db: Database, settings: Settings, notifier: Notifier, clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.settings = settings
        self.notifier = notifier
        self.clock = clock
        self.accounts = db["account"]
        self.sessions = db["session"]
        self.otps = db["otp"]

    # -------------------- Registration & login --------------------

    def register(self, payload: RegisterRequest) -> Tuple[dict, str]:
        email = payload.email.lower() if payload.email else None
        phone = payload.phone.strip() if payload.phone and payload.phone.strip() else None
        if not email and not phone:
            raise ValidationError("Email or phone number is required")
        if phone and not valid_phone(phone):
            raise ValidationError("Invalid phone number")
        if len(payload.password) < 8:
            raise ValidationError("Password must be at least 8 characters")
        if email and self.accounts.find_one({"email": email}):
            raise DuplicateAccount("Email")
        if phone and self.accounts.find_one({"phone": phone}):
            raise DuplicateAccount("Phone number")

        pw_hash, salt = hash_password(payload.password)
        account = Account(
            name=payload.name.strip(),
            email=email,
            phone=phone,
            password_hash=pw_hash,
            salt=salt,
            register_type="phone" if phone else "email",
        )
        try:
            account_id = create_document(self.db, "account", account.model_dump(exclude_none=True))
        except DuplicateKeyError:
            raise DuplicateAccount("Email or phone number")
        doc = self.accounts.find_one({"email": email} if email else {"phone": phone})
        logger.info("account registered: %s", account_id)
        return doc, self._issue_session(doc, USER_SCOPE)

    def login(self, identifier: str, password: str) -> Tuple[dict, str]:
        account = self._check_credentials(self._identifier_query(identifier), password)
        return account, self._issue_session(account, USER_SCOPE)

    def admin_login(self, identifier: str, password: str) -> dict:
        """First admin factor: check the password and send a one-time code."""
        query = self._identifier_query(identifier)
        query["role"] = "admin"
        account = self._check_credentials(query, password)
        if not account.get("email"):
            raise ValidationError("Admin account has no email for verification")
        self._send_otp(account)
        return {
            "require_otp": True,
            "email": mask_email(account["email"]),
            "expires_in": self.settings.otp_ttl_seconds,
        }

    def verify_otp(self, email: str, code: str) -> Tuple[dict, str]:
        email = email.strip().lower()
        now = self.clock()
        record = self.otps.find_one(
            {"email": email, "verified": False}, sort=[("created_at", DESCENDING)]
        )
        if not record or as_utc(record["expires_at"]) <= now:
            raise InvalidOtp("Verification code is invalid or expired")
        if record.get("attempts", 0) >= self.settings.otp_max_attempts:
            self.otps.delete_one({"_id": record["_id"]})
            raise InvalidOtp("Too many wrong codes, please log in again")
        if not hmac.compare_digest(record["code"], code.strip()):
            updated = self.otps.find_one_and_update(
                {"_id": record["_id"]}, {"$inc": {"attempts": 1}}, return_document=ReturnDocument.AFTER
            )
            remaining = max(self.settings.otp_max_attempts - updated.get("attempts", 0), 0)
            raise InvalidOtp(f"Verification code is incorrect, {remaining} attempts left")

        self.otps.update_one({"_id": record["_id"]}, {"$set": {"verified": True}})
        account = self.accounts.find_one({"_id": record["account_id"], "role": "admin"})
        if not account or not account.get("is_active", True):
            raise InvalidOtp("Account is no longer available")
        logger.info("admin verified: %s", account["_id"])
        return account, self._issue_session(account, ADMIN_SCOPE)

    def resend_otp(self, email: str) -> None:
        email = email.strip().lower()
        account = self.accounts.find_one({"email": email, "role": "admin"})
        if not account:
            raise InvalidOtp("Unknown admin email")
        latest = self.otps.find_one({"email": email}, sort=[("created_at", DESCENDING)])
        cooldown = timedelta(seconds=self.settings.otp_resend_seconds)
        if latest and as_utc(latest["created_at"]) > self.clock() - cooldown:
            raise TooManyRequests("Please wait before requesting another code")
        self._send_otp(account)

    def _send_otp(self, account: dict) -> None:
        now = self.clock()
        code = f"{secrets.randbelow(10 ** 6):06d}"
        self.otps.delete_many({"email": account["email"], "verified": False})
        result = self.otps.insert_one({
            "email": account["email"],
            "code": code,
            "account_id": account["_id"],
            "expires_at": now + timedelta(seconds=self.settings.otp_ttl_seconds),
            "verified": False,
            "attempts": 0,
            "created_at": now,
        })
        try:
            self.notifier.deliver_code(account["email"], code)
        except DeliveryFailed:
            self.otps.delete_one({"_id": result.inserted_id})
            logger.error("code delivery failed for account %s", account["_id"])
            raise
        logger.info("verification code sent to account %s", account["_id"])

    def _identifier_query(self, identifier: str) -> dict:
        identifier = (identifier or "").strip()
        if not identifier:
            raise ValidationError("Email or phone number is required")
        return {"$or": [{"email": identifier.lower()}, {"phone": identifier}]}

    def _check_credentials(self, query: dict, password: str) -> dict:
        if not password:
            raise ValidationError("Password is required")
        account = self.accounts.find_one(query)
        if not account:
            raise InvalidCredentials()
        if not account.get("is_active", True):
            raise ForbiddenError("Account is disabled")

        now = self.clock()
        lock_until = as_utc(account.get("lock_until"))
        if lock_until and lock_until > now:
            raise AccountLocked(lock_until)

        if not verify_password(password, account.get("salt", ""), account.get("password_hash", "")):
            self._register_failure(account, lock_until, now)
            raise InvalidCredentials()

        self.accounts.update_one(
            {"_id": account["_id"]},
            {"$set": {"login_attempts": 0, "last_login": now}, "$unset": {"lock_until": ""}},
        )
        return account

    def _register_failure(self, account: dict, lock_until: Optional[datetime], now: datetime) -> None:
        if lock_until and lock_until <= now:
            # expired lock: count this failure as the first of a new run
            self.accounts.update_one(
                {"_id": account["_id"]}, {"$set": {"login_attempts": 1}, "$unset": {"lock_until": ""}}
            )
            return
        updated = self.accounts.find_one_and_update(
            {"_id": account["_id"]}, {"$inc": {"login_attempts": 1}}, return_document=ReturnDocument.AFTER
        )
        if updated and updated.get("login_attempts", 0) >= self.settings.max_login_attempts:
            until = now + timedelta(minutes=self.settings.lock_minutes)
            self.accounts.update_one({"_id": account["_id"]}, {"$set": {"lock_until": until}})
            logger.warning("account %s locked until %s", account["_id"], until.isoformat())

    # -------------------- Sessions --------------------

    def _issue_session(self, account: dict, scope: str) -> str:
        now = self.clock()
        if scope == ADMIN_SCOPE:
            ttl = timedelta(hours=self.settings.admin_session_hours)
        else:
            ttl = timedelta(days=self.settings.user_session_days)
        token = secrets.token_urlsafe(32)
        self.sessions.insert_one({
            "token": token,
            "account_id": str(account["_id"]),
            "role": account.get("role", "user"),
            "scope": scope,
            "expires_at": now + ttl,
            "created_at": now,
        })
        return token

    def authenticate(self, token: Optional[str], scopes: Iterable[str]) -> Caller:
        """Resolve a bearer token issued for one of ``scopes``."""
        if not token:
            raise Unauthenticated()
        session = self.sessions.find_one({"token": token})
        if not session or session.get("scope") not in tuple(scopes):
            raise Unauthenticated("Invalid or expired token")
        if as_utc(session["expires_at"]) <= self.clock():
            self.sessions.delete_one({"_id": session["_id"]})
            raise Unauthenticated("Invalid or expired token")
        account = self.accounts.find_one({"_id": to_object_id(session["account_id"])})
        if not account or not account.get("is_active", True):
            raise Unauthenticated("Account is no longer available")
        return Caller(account_id=str(account["_id"]), role=account.get("role", "user"), scope=session["scope"])

    def get_account(self, account_id: str) -> dict:
        account = self.accounts.find_one({"_id": to_object_id(account_id)})
        if not account:
            raise Unauthenticated("Account is no longer available")
        return account

    def logout(self, token: str) -> None:
        self.sessions.delete_one({"token": token})

    def seed_admin(self, email: str, password: str, name: str = "Admin") -> None:
        email = email.strip().lower()
        pw_hash, salt = hash_password(password)
        existing = self.accounts.find_one({"email": email})
        if existing:
            self.accounts.update_one(
                {"_id": existing["_id"]},
                {"$set": {"role": "admin", "password_hash": pw_hash, "salt": salt, "is_active": True}},
            )
            logger.info("admin account refreshed: %s", existing["_id"])
            return
        account = Account(name=name, email=email, password_hash=pw_hash, salt=salt, role="admin")
        account_id = create_document(self.db, "account", account.model_dump(exclude_none=True))
        logger.info("admin account created: %s", account_id)
