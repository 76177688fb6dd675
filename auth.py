"""
Authentication workflow

Signup and login are confirmed with a six digit code mailed to the user.
Until the code is verified a signup only exists as a pending record; the
first successful verification promotes it to a real, verified user.
"""
import logging
from typing import Optional
from urllib.parse import urlencode

from config import Settings
from database import utcnow
from errors import AuthenticationError, ConflictError, NotFoundError, NotificationError, ValidationError
from notifications import Mailer
from security import codes_match, create_token, expiry, generate_otp, hash_password, verify_password
from users import UserDirectory, normalize_email, public_user

logger = logging.getLogger(__name__)


def check_code(record: Optional[dict], given: Optional[str], field: str, labels: tuple) -> None:
    """Validate a stored {<field>, expires_at} entry against the code the client sent.

    `labels` are the messages for: nothing requested, expired, mismatch.
    """
    missing, expired, invalid = labels
    if not record or not record.get(field):
        raise ValidationError(missing)
    expires_at = record.get("expires_at")
    if expires_at is None or expires_at < utcnow():
        raise ValidationError(expired)
    if not codes_match(record[field], given):
        raise ValidationError(invalid)


OTP_LABELS = ("No OTP requested", "OTP expired", "Invalid OTP")
RESET_LABELS = ("No reset requested", "Reset token expired", "Invalid reset token")


class AuthWorkflow:
    def __init__(self, directory: UserDirectory, settings: Settings, mailer: Mailer):
        self.directory = directory
        self.settings = settings
        self.mailer = mailer

    def _new_otp(self) -> dict:
        return {"code": generate_otp(), "expires_at": expiry(self.settings.otp_ttl_minutes)}

    def _send_otp(self, email: str, name: Optional[str], code: str) -> None:
        try:
            self.mailer.send_otp(email, name, code)
        except NotificationError:
            logger.exception("Failed to send OTP email to %s", email)

    def _otp_response(self, code: str) -> dict:
        resp = {"ok": True, "message": "OTP stored"}
        if self.settings.expose_dev_codes:
            resp["dev_otp"] = code
        return resp

    def _token_response(self, user: dict) -> dict:
        return {"ok": True, "token": create_token(user, self.settings), "user": public_user(user)}

    def signup(self, name: Optional[str], email: str, password: Optional[str] = None) -> dict:
        email = normalize_email(email)
        if not email:
            raise ValidationError("Email required")
        if self.directory.find_user(email):
            raise ConflictError("Email already in use")

        password_hash = hash_password(password) if password else None
        otp = self._new_otp()
        self.directory.upsert_pending(name, email, password_hash, otp)
        logger.info("Signup code issued for %s", email)
        self._send_otp(email, name, otp["code"])
        return self._otp_response(otp["code"])

    def request_otp(self, email: str) -> dict:
        user = self.directory.find_user(email)
        if not user:
            raise NotFoundError("User")
        return self._issue_login_otp(user)

    def _issue_login_otp(self, user: dict) -> dict:
        otp = self._new_otp()
        self.directory.set_otp(user, otp)
        logger.info("Login code issued for %s", user["email"])
        self._send_otp(user["email"], user.get("name"), otp["code"])
        return self._otp_response(otp["code"])

    def verify_otp(self, email: str, code: str) -> dict:
        if not email or not code:
            raise ValidationError("Email and code required")

        pending = self.directory.find_pending(email)
        if pending:
            check_code(pending.get("otp"), code, "code", OTP_LABELS)
            user = self.directory.promote_pending(pending)
            return self._token_response(user)

        user = self.directory.find_user(email)
        if not user:
            raise NotFoundError("User")
        check_code(user.get("otp"), code, "code", OTP_LABELS)
        user = self.directory.mark_verified(user)
        return self._token_response(user)

    def is_admin_credentials(self, email: str, password: Optional[str]) -> bool:
        if not self.settings.admin_configured or not password:
            return False
        return normalize_email(email) == self.settings.admin_email and codes_match(self.settings.admin_password, password)

    def admin_login(self) -> dict:
        """Bootstrap path: the configured admin pair always gets an admin token, no OTP involved."""
        admin = self.directory.ensure_admin(
            self.settings.admin_email, self.settings.admin_password, self.settings.admin_name
        )
        token = create_token(admin, self.settings, is_admin=True)
        return {"ok": True, "token": token, "user": public_user(admin)}

    def login(self, email: str, password: Optional[str] = None) -> dict:
        if not email:
            raise ValidationError("Email required")
        if self.is_admin_credentials(email, password):
            return self.admin_login()

        user = self.directory.find_user(email)
        if not user:
            raise NotFoundError("User")

        if password:
            if not user.get("password_hash"):
                raise ValidationError("Password login not available for this account")
            if not verify_password(password, user["password_hash"]):
                raise AuthenticationError("Invalid credentials")
            return self._token_response(user)

        return self._issue_login_otp(user)

    def me(self, user: Optional[dict]) -> dict:
        if not user:
            raise AuthenticationError("Unauthorized")
        return {"ok": True, "user": public_user(user)}

    def forgot_password(self, email: str) -> dict:
        if not email:
            raise ValidationError("Email required")
        user = self.directory.find_user(email)
        if not user:
            raise NotFoundError("User")

        token = generate_otp()
        self.directory.set_reset(user, {"token": token, "expires_at": expiry(self.settings.reset_ttl_minutes)})
        query = urlencode({"email": user["email"], "token": token})
        reset_url = f"{self.settings.frontend_url}/reset-password?{query}"
        try:
            self.mailer.send_password_reset(user["email"], user.get("name"), token, reset_url)
        except NotificationError:
            logger.exception("Failed to send password reset email to %s", user["email"])

        resp = {"ok": True, "message": "Password reset code sent"}
        if self.settings.expose_dev_codes:
            resp["dev_reset_token"] = token
        return resp

    def reset_password(self, email: str, token: str, new_password: str) -> dict:
        if not email or not token or not new_password:
            raise ValidationError("Email, token and new password required")
        user = self.directory.find_user(email)
        if not user:
            raise NotFoundError("User")
        check_code(user.get("reset"), token, "token", RESET_LABELS)
        self.directory.set_password(user, hash_password(new_password))
        logger.info("Password reset for %s", user["email"])
        return {"ok": True, "message": "Password updated"}
