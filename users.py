"""
User directory

Verified accounts live in the "user" collection, unverified signups in
"pending_user" until their code is confirmed.
"""
import logging
from typing import Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import to_object_id, utcnow
from errors import ConflictError
from security import hash_password

logger = logging.getLogger(__name__)

USERS = "user"
PENDING = "pending_user"


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def public_user(user: dict) -> dict:
    """Projection of a user record that is safe to return to clients."""
    return {
        "id": str(user["_id"]),
        "email": user.get("email"),
        "name": user.get("name"),
        "is_admin": user.get("is_admin", False),
    }


class UserDirectory:
    def __init__(self, db):
        self.users = db[USERS]
        self.pending = db[PENDING]

    def find_user(self, email: str) -> Optional[dict]:
        return self.users.find_one({"email": normalize_email(email)})

    def get_user(self, user_id) -> Optional[dict]:
        oid = to_object_id(user_id)
        if oid is None:
            return None
        return self.users.find_one({"_id": oid})

    def find_pending(self, email: str) -> Optional[dict]:
        return self.pending.find_one({"email": normalize_email(email)})

    def upsert_pending(self, name: Optional[str], email: str, password_hash: Optional[str], otp: dict) -> dict:
        now = utcnow()
        return self.pending.find_one_and_update(
            {"email": normalize_email(email)},
            {
                "$set": {
                    "name": name,
                    "password_hash": password_hash,
                    "otp": otp,
                    "updated_at": now,
                },
                "$setOnInsert": {"created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )

    def promote_pending(self, pending: dict) -> dict:
        """Turn a confirmed signup into a verified user and drop the pending record."""
        # the code match keeps a re-issued signup from being claimed with an old code
        code = (pending.get("otp") or {}).get("code")
        claimed = self.pending.find_one_and_delete({"_id": pending["_id"], "otp.code": code})
        if claimed is None:
            raise ConflictError("Signup already verified")

        now = utcnow()
        doc = {
            "name": claimed.get("name"),
            "email": normalize_email(claimed["email"]),
            "password_hash": claimed.get("password_hash"),
            "is_admin": False,
            "is_verified": True,
            "created_at": now,
            "updated_at": now,
        }
        try:
            inserted_id = self.users.insert_one(doc).inserted_id
        except DuplicateKeyError as exc:
            raise ConflictError("Email already in use") from exc
        logger.info("Promoted pending signup %s to user %s", doc["email"], inserted_id)
        return self.users.find_one({"_id": inserted_id})

    def set_otp(self, user: dict, otp: dict) -> None:
        self.users.update_one({"_id": user["_id"]}, {"$set": {"otp": otp, "updated_at": utcnow()}})

    def mark_verified(self, user: dict) -> dict:
        return self.users.find_one_and_update(
            {"_id": user["_id"]},
            {"$set": {"is_verified": True, "updated_at": utcnow()}, "$unset": {"otp": ""}},
            return_document=ReturnDocument.AFTER,
        )

    def set_reset(self, user: dict, reset: dict) -> None:
        self.users.update_one({"_id": user["_id"]}, {"$set": {"reset": reset, "updated_at": utcnow()}})

    def set_password(self, user: dict, password_hash: str) -> None:
        self.users.update_one(
            {"_id": user["_id"]},
            {"$set": {"password_hash": password_hash, "updated_at": utcnow()}, "$unset": {"reset": ""}},
        )

    def ensure_admin(self, email: str, password: str, name: str = "Admin") -> dict:
        """Create the admin account, or upgrade an existing one, without touching a set password."""
        email = normalize_email(email)
        existing = self.users.find_one({"email": email})
        now = utcnow()
        if existing is None:
            doc = {
                "name": name,
                "email": email,
                "password_hash": hash_password(password),
                "is_admin": True,
                "is_verified": True,
                "created_at": now,
                "updated_at": now,
            }
            try:
                inserted_id = self.users.insert_one(doc).inserted_id
            except DuplicateKeyError:
                # created concurrently; fall through to the upgrade path
                existing = self.users.find_one({"email": email})
            else:
                logger.info("Created admin user: %s", email)
                return self.users.find_one({"_id": inserted_id})

        changes = {}
        if not existing.get("is_admin"):
            changes["is_admin"] = True
        if not existing.get("password_hash"):
            changes["password_hash"] = hash_password(password)
        if not existing.get("is_verified"):
            changes["is_verified"] = True
        if not changes:
            return existing
        changes["updated_at"] = now
        logger.info("Admin user ensured: %s (%s)", email, ", ".join(sorted(changes)))
        return self.users.find_one_and_update(
            {"_id": existing["_id"]}, {"$set": changes}, return_document=ReturnDocument.AFTER
        )
