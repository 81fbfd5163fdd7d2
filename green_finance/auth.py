"""
Authentication Module

Local stand-in for the hosted auth service: sign-up with an out-of-band
email confirmation token, password sign-in returning a JWT session token,
password reset through single-use tokens, and token-to-principal resolution.
Sign-in fails closed on every error path.
"""

import hashlib
import secrets
from datetime import datetime, timezone, timedelta, date
from typing import Any, Dict, Optional

import jwt

from .audit import UserAction, UserLogTrail
from .errors import AuthenticationError, ValidationError
from .identity import IdentityProvider, Principal, Role
from .logging_config import get_logger, log_action
from .storage import StorageInterface
from .users import USERS_COLLECTION, UserAccount, UserManager, normalize_email

logger = get_logger("green_finance.auth")

CREDENTIALS_COLLECTION = "user_credentials"
CONFIRMATIONS_COLLECTION = "email_confirmations"
PASSWORD_RESETS_COLLECTION = "password_resets"


class LocalAuthProvider:
    """
    Password authentication and JWT sessions over the lending storage
    """

    def __init__(
        self,
        storage: StorageInterface,
        user_manager: UserManager,
        user_log: UserLogTrail,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        jwt_expiry_hours: int = 24,
        password_min_length: int = 6,
        confirmation_token_hours: int = 48,
        reset_token_hours: int = 1
    ):
        self.storage = storage
        self.user_manager = user_manager
        self.user_log = user_log
        self.jwt_secret = jwt_secret
        self.jwt_algorithm = jwt_algorithm
        self.jwt_expiry_hours = jwt_expiry_hours
        self.password_min_length = password_min_length
        self.confirmation_token_hours = confirmation_token_hours
        self.reset_token_hours = reset_token_hours

    # Sign-up and confirmation

    def sign_up(
        self,
        email: str,
        password: str,
        full_names: str,
        gender: Optional[str] = None,
        cellphone: Optional[str] = None,
        role: Role = Role.STANDARD_USER,
        date_of_birth: Optional[date] = None
    ) -> Dict[str, Any]:
        """
        Register an unconfirmed account

        Returns:
            Dict with the created ``user`` and the ``confirmation_token`` to be
            delivered by email
        """
        self._check_password(password)

        account = self.user_manager.create_account(
            email=email,
            full_names=full_names,
            role=role,
            gender=gender,
            cellphone=cellphone,
            date_of_birth=date_of_birth,
            confirmed=False
        )

        self.storage.insert(CREDENTIALS_COLLECTION, {'id': account.id, **self._credentials(password)})

        token = self.issue_confirmation_token(account.id)
        self.user_log.record(
            UserAction.USER_SIGNED_UP, f"Account created for {account.email}",
            user_id=account.id, entity_type="user", entity_id=account.id
        )
        log_action(logger, "info", "User signed up", user_id=account.id,
                   action="sign_up", resource="auth")
        return {'user': account, 'confirmation_token': token}

    def issue_confirmation_token(self, user_id: str) -> str:
        """Create a single-use email confirmation token"""
        return self._issue_single_use_token(CONFIRMATIONS_COLLECTION, user_id, self.confirmation_token_hours)

    def confirm_email(self, token: str) -> str:
        """
        Exchange a confirmation token for a confirmed session

        Returns:
            JWT session token for the now-confirmed account
        """
        user = self._consume_single_use_token(CONFIRMATIONS_COLLECTION, token, "Confirmation link")

        self.storage.update(USERS_COLLECTION, user.id, {'confirmed': True})
        user.confirmed = True
        self.user_log.record(
            UserAction.EMAIL_CONFIRMED, "Email address confirmed",
            user_id=user.id, entity_type="user", entity_id=user.id
        )
        return self.issue_token(user)

    # Password reset

    def request_password_reset(self, email: str) -> Optional[str]:
        """
        Issue a single-use password reset token

        Returns:
            Token to be delivered by email, or None when no account uses the
            address. Callers must answer both cases the same way.
        """
        user = self.user_manager.get_user_by_email(email)
        if not user:
            log_action(logger, "info", "Password reset requested for unknown email",
                       action="password_reset_requested", resource="auth")
            return None

        token = self._issue_single_use_token(PASSWORD_RESETS_COLLECTION, user.id, self.reset_token_hours)
        self.user_log.record(
            UserAction.PASSWORD_RESET_REQUESTED, "Password reset requested",
            user_id=user.id, entity_type="user", entity_id=user.id
        )
        return token

    def reset_password(self, token: str, new_password: str) -> UserAccount:
        """
        Replace the password of the account a reset token was issued for

        Raises:
            ValidationError: New password too short (token left unused)
            AuthenticationError: Unknown, used or expired token
        """
        self._check_password(new_password)
        user = self._consume_single_use_token(PASSWORD_RESETS_COLLECTION, token, "Password reset link")

        self.storage.update(CREDENTIALS_COLLECTION, user.id, self._credentials(new_password))
        self.user_log.record(
            UserAction.PASSWORD_RESET, "Password reset",
            user_id=user.id, entity_type="user", entity_id=user.id
        )
        log_action(logger, "info", "Password reset", user_id=user.id,
                   action="password_reset", resource="auth")
        return user

    # Sign-in

    def sign_in(self, email: str, password: str, device_info: Optional[str] = None) -> str:
        """
        Authenticate with email and password

        Returns:
            JWT session token

        Raises:
            AuthenticationError: Unknown email, wrong password or unconfirmed email
        """
        user = self.user_manager.get_user_by_email(email)
        credentials = self.storage.get(CREDENTIALS_COLLECTION, user.id) if user else None

        if not user or not credentials or not self._verify_password(credentials, password):
            self.user_log.record(
                UserAction.LOGIN_FAILED, "Sign-in failed",
                user_id=user.id if user else None, device_info=device_info,
                metadata={'email': normalize_email(email)}
            )
            log_action(logger, "warning", "Authentication failed", action="login_failed",
                       resource="auth", extra={'email': normalize_email(email)})
            raise AuthenticationError("Invalid credentials")

        if not user.confirmed:
            raise AuthenticationError("Email address not confirmed")

        self.user_log.record(
            UserAction.LOGIN_SUCCESS, "Signed in",
            user_id=user.id, entity_type="user", entity_id=user.id, device_info=device_info
        )
        return self.issue_token(user)

    def sign_out(self, principal: Principal, device_info: Optional[str] = None) -> None:
        """Sessions are stateless JWTs; signing out only records the event"""
        self.user_log.record(
            UserAction.LOGOUT, "Signed out",
            user_id=principal.id, entity_type="user", entity_id=principal.id, device_info=device_info
        )

    def issue_token(self, user: UserAccount) -> str:
        """Encode a session JWT for an account"""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user.id,
            "email": user.email,
            "role": int(user.role),
            "iat": now,
            "exp": now + timedelta(hours=self.jwt_expiry_hours)
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=self.jwt_algorithm)

    def principal_from_token(self, token: str) -> Principal:
        """
        Resolve a session token to the current principal

        The account is re-read so role changes, deletions and withdrawn
        confirmation apply immediately.
        """
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[self.jwt_algorithm])
        except jwt.ExpiredSignatureError:
            raise AuthenticationError("Token expired")
        except jwt.InvalidTokenError:
            raise AuthenticationError("Invalid token")

        user_id = payload.get("sub")
        user = self.user_manager.get_user(user_id) if user_id else None
        if not user:
            raise AuthenticationError("Invalid token")
        if not user.confirmed:
            raise AuthenticationError("Email address not confirmed")
        return user.to_principal()

    # Single-use tokens

    def _issue_single_use_token(self, collection: str, user_id: str, hours: int) -> str:
        token = secrets.token_urlsafe(32)
        self.storage.insert(collection, {
            'id': token,
            'user_id': user_id,
            'expires_at': datetime.now(timezone.utc) + timedelta(hours=hours)
        })
        return token

    def _consume_single_use_token(self, collection: str, token: str, label: str) -> UserAccount:
        record = self.storage.get(collection, token) if token else None
        if not record:
            raise AuthenticationError(f"Invalid or already used {label.lower()}")
        self.storage.delete(collection, token)

        if datetime.fromisoformat(record['expires_at']) < datetime.now(timezone.utc):
            raise AuthenticationError(f"{label} has expired")

        user = self.user_manager.get_user(record['user_id'])
        if not user:
            raise AuthenticationError("Account no longer exists")
        return user

    # Password hashing

    def _check_password(self, password: str) -> None:
        if len(password or "") < self.password_min_length:
            raise ValidationError({
                'password': [f"Password must be at least {self.password_min_length} characters"]
            })

    def _credentials(self, password: str) -> Dict[str, Any]:
        salt = secrets.token_hex(16)
        return {
            'password_salt': salt,
            'password_hash': self._hash_password(password, salt),
            'password_changed_at': datetime.now(timezone.utc)
        }

    def _hash_password(self, password: str, salt: str) -> str:
        """Hash password with salt using scrypt"""
        return hashlib.scrypt(
            password.encode(),
            salt=salt.encode(),
            n=16384, r=8, p=1
        ).hex()

    def _verify_password(self, credentials: Dict[str, Any], password: str) -> bool:
        if not credentials.get('password_hash') or not credentials.get('password_salt'):
            return False
        expected = self._hash_password(password or "", credentials['password_salt'])
        return secrets.compare_digest(expected, credentials['password_hash'])


class TokenIdentityProvider(IdentityProvider):
    """Identity provider bound to one request's bearer token"""

    def __init__(self, auth: LocalAuthProvider, token: Optional[str]):
        self.auth = auth
        self.token = token

    def current_principal(self) -> Optional[Principal]:
        if not self.token:
            return None
        return self.auth.principal_from_token(self.token)
