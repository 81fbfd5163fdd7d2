"""
User Management Module

Reads and admin mutations over users_account: profile edits by the owner,
role and confirmation changes and deletion by administrators, and profile
picture upload.
"""

import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone, date
from typing import Any, Dict, List, Optional

from .audit import UserAction, UserLogTrail
from .documents import BlobStore, Document
from .errors import ValidationError, UserNotFoundError
from .identity import Principal, Role, require_admin, require_self_or_admin
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord

logger = get_logger("green_finance.users")

USERS_COLLECTION = "users_account"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

# Fields a user may change on their own profile
PROFILE_FIELDS = {"full_names", "gender", "date_of_birth", "cellphone", "home_address"}


@dataclass
class UserAccount(StorageRecord):
    """System principal as stored in users_account"""
    email: str
    full_names: str
    role: Role = Role.STANDARD_USER
    confirmed: bool = False
    user_number: Optional[int] = None
    gender: Optional[str] = None
    date_of_birth: Optional[date] = None
    cellphone: Optional[str] = None
    home_address: Optional[str] = None
    profile_picture: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_principal(self) -> Principal:
        return Principal(id=self.id, email=self.email, role=self.role, confirmed=self.confirmed)


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class UserManager:
    """
    Manages user accounts
    """

    def __init__(
        self,
        storage: StorageInterface,
        blob_store: BlobStore,
        user_log: UserLogTrail,
        profile_bucket: str = "users",
        max_picture_bytes: int = 5 * 1024 * 1024
    ):
        self.storage = storage
        self.blob_store = blob_store
        self.user_log = user_log
        self.profile_bucket = profile_bucket
        self.max_picture_bytes = max_picture_bytes

    # Reads

    def get_user(self, user_id: str) -> Optional[UserAccount]:
        """Get user by ID"""
        data = self.storage.get(USERS_COLLECTION, user_id)
        if not data:
            return None
        return UserAccount.from_dict(data)

    def get_user_by_email(self, email: str) -> Optional[UserAccount]:
        """Get user by email (case-insensitive)"""
        matches = self.storage.query(USERS_COLLECTION, {'email': normalize_email(email)})
        if not matches:
            return None
        return UserAccount.from_dict(matches[0])

    def list_users(self, role: Optional[Role] = None, search: Optional[str] = None) -> List[UserAccount]:
        """
        List users ordered by display number

        Args:
            role: Only users holding this role
            search: Case-insensitive match on name, email or cellphone
        """
        filters = {'role': role} if role is not None else None
        users = [UserAccount.from_dict(d) for d in
                 self.storage.query(USERS_COLLECTION, filters, order_by='user_number')]

        if search:
            needle = search.strip().lower()
            users = [
                u for u in users
                if needle in (u.full_names or "").lower()
                or needle in (u.email or "").lower()
                or needle in (u.cellphone or "").lower()
            ]
        return users

    # Creation

    def create_account(
        self,
        email: str,
        full_names: str,
        role: Role = Role.STANDARD_USER,
        user_id: Optional[str] = None,
        gender: Optional[str] = None,
        cellphone: Optional[str] = None,
        date_of_birth: Optional[date] = None,
        home_address: Optional[str] = None,
        confirmed: bool = False
    ) -> UserAccount:
        """
        Create a users_account row. Callers are responsible for authorization.

        Raises:
            ValidationError: On a malformed or already registered email
        """
        errors: Dict[str, List[str]] = {}
        email = normalize_email(email)
        if not EMAIL_PATTERN.match(email):
            errors.setdefault('email', []).append("Please enter a valid email address")
        elif self.get_user_by_email(email):
            errors.setdefault('email', []).append("An account with this email already exists")
        if len((full_names or "").strip()) < 2:
            errors.setdefault('full_names', []).append("Full name must be at least 2 characters")
        if role not in list(Role):
            errors.setdefault('role', []).append("Unknown role")
        if errors:
            raise ValidationError(errors)

        account = UserAccount(
            id=user_id or "",
            email=email,
            full_names=full_names.strip(),
            role=Role(role),
            confirmed=confirmed,
            user_number=self._next_user_number(),
            gender=gender,
            date_of_birth=date_of_birth,
            cellphone=cellphone,
            home_address=home_address,
            created_at=datetime.now(timezone.utc)
        )
        stored = self.storage.insert(USERS_COLLECTION, account.to_dict())
        account.id = stored['id']
        return account

    def add_user(self, principal: Optional[Principal], **fields: Any) -> UserAccount:
        """Admin creation of an account from the user management screen"""
        require_admin(principal, "add users")
        account = self.create_account(**fields)
        self.user_log.record(
            UserAction.USER_UPDATED, f"User {account.email} added by admin",
            user_id=principal.id, entity_type="user", entity_id=account.id
        )
        return account

    # Mutations

    def update_profile(self, user_id: str, changes: Dict[str, Any],
                       principal: Optional[Principal]) -> UserAccount:
        """
        Update profile fields on an account

        Only the owner or an admin may edit; role and confirmation status are
        changed through set_role / set_confirmed.
        """
        require_self_or_admin(principal, user_id, "update profile")
        unknown = set(changes) - PROFILE_FIELDS
        if unknown:
            raise ValidationError({name: ["Field cannot be edited"] for name in unknown})
        if 'full_names' in changes and len((changes['full_names'] or "").strip()) < 2:
            raise ValidationError({'full_names': ["Full name must be at least 2 characters"]})

        self._require_user(user_id)
        self.storage.update(USERS_COLLECTION, user_id, changes)
        self.user_log.record(
            UserAction.USER_UPDATED, "Profile updated",
            user_id=principal.id, entity_type="user", entity_id=user_id,
            metadata={'fields': sorted(changes)}
        )
        return self._require_user(user_id)

    def set_role(self, user_id: str, role: int, principal: Optional[Principal]) -> UserAccount:
        """Change a user's role (admin only)"""
        require_admin(principal, "change roles")
        try:
            new_role = Role(role)
        except ValueError:
            raise ValidationError({'role': [f"Unknown role {role}"]})

        user = self._require_user(user_id)
        self.storage.update(USERS_COLLECTION, user_id, {'role': new_role})
        log_action(logger, "info", f"Role of {user.email} set to {new_role.label}",
                   user_id=principal.id, action="set_role", resource=user_id)
        self.user_log.record(
            UserAction.ROLE_CHANGED, f"Role changed to {new_role.label}",
            user_id=principal.id, entity_type="user", entity_id=user_id,
            metadata={'previous_role': user.role, 'role': new_role}
        )
        user.role = new_role
        return user

    def set_confirmed(self, user_id: str, confirmed: bool, principal: Optional[Principal]) -> UserAccount:
        """Activate or deactivate a user's confirmed status (admin only)"""
        require_admin(principal, "change confirmation status")
        user = self._require_user(user_id)
        self.storage.update(USERS_COLLECTION, user_id, {'confirmed': bool(confirmed)})
        self.user_log.record(
            UserAction.CONFIRMATION_CHANGED,
            "User activated" if confirmed else "User deactivated",
            user_id=principal.id, entity_type="user", entity_id=user_id
        )
        user.confirmed = bool(confirmed)
        return user

    def delete_user(self, user_id: str, principal: Optional[Principal]) -> bool:
        """Permanently delete a user account (admin only)"""
        require_admin(principal, "delete users")
        user = self._require_user(user_id)
        removed = self.storage.delete(USERS_COLLECTION, user_id)
        log_action(logger, "info", f"User {user.email} deleted",
                   user_id=principal.id, action="delete_user", resource=user_id)
        self.user_log.record(
            UserAction.USER_DELETED, f"User {user.email} deleted",
            user_id=principal.id, entity_type="user", entity_id=user_id
        )
        return removed

    def upload_profile_picture(self, user_id: str, document: Document,
                               principal: Optional[Principal]) -> str:
        """Upload a profile picture and store its public URL on the account"""
        require_self_or_admin(principal, user_id, "upload a profile picture")
        if document.size == 0:
            raise ValidationError({'profile_picture': ["File is empty"]})
        if document.size > self.max_picture_bytes:
            raise ValidationError({'profile_picture': ["The maximum file size is 5MB"]})
        self._require_user(user_id)

        path = f"profile-pictures/{user_id}-{int(time.time() * 1000)}.{document.extension}"
        url = self.blob_store.upload(self.profile_bucket, path, document.content, document.content_type)
        self.storage.update(USERS_COLLECTION, user_id, {'profile_picture': url})
        self.user_log.record(
            UserAction.PROFILE_PICTURE_UPLOADED, "Profile picture uploaded",
            user_id=principal.id, entity_type="user", entity_id=user_id
        )
        return url

    # Helpers

    def _require_user(self, user_id: str) -> UserAccount:
        user = self.get_user(user_id)
        if not user:
            raise UserNotFoundError(f"User {user_id} not found")
        return user

    def _next_user_number(self) -> int:
        users = self.storage.query(USERS_COLLECTION, order_by='user_number', descending=True)
        if users and users[0].get('user_number') is not None:
            return int(users[0]['user_number']) + 1
        return 1
