"""
User Log Module

Hash-chained, append-only log of user actions with SHA-256 for tamper
detection. Every state-changing operation records an entry here; writes are
best-effort from the caller's point of view and never fail the action they
describe.
"""

import hashlib
import json
import threading
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum

from .storage import StorageInterface, StorageRecord, serialize_value
from .logging_config import get_logger

logger = get_logger("green_finance.audit")


class UserAction(Enum):
    """Action codes recorded in the user log"""
    # Loan events
    LOAN_SUBMITTED = "loan_submitted"
    DOCUMENT_UPLOADED = "document_uploaded"
    LOAN_APPROVED = "loan_approved"
    LOAN_REJECTED = "loan_rejected"
    LOAN_RECONCILED = "loan_reconciled"
    LOAN_SETTLED = "loan_settled"

    # Account events
    USER_SIGNED_UP = "user_signed_up"
    EMAIL_CONFIRMED = "email_confirmed"
    LOGIN_SUCCESS = "login_success"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    USER_UPDATED = "user_updated"
    ROLE_CHANGED = "role_changed"
    CONFIRMATION_CHANGED = "confirmation_changed"
    USER_DELETED = "user_deleted"
    PROFILE_PICTURE_UPLOADED = "profile_picture_uploaded"


@dataclass
class UserLog(StorageRecord):
    """
    Immutable user log entry chained to its predecessor by hash
    """
    sequence: int
    action: UserAction
    description: str
    created_at: datetime
    previous_hash: str
    current_hash: str
    user_id: Optional[str] = None
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    device_info: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.metadata:
            self.metadata = serialize_value(self.metadata)

    def calculate_hash(self) -> str:
        """
        Calculate SHA-256 hash of this entry
        Hash includes all fields except current_hash to prevent circular reference
        """
        hash_data = {
            'id': self.id,
            'sequence': self.sequence,
            'created_at': self.created_at.isoformat(),
            'action': self.action.value,
            'description': self.description,
            'user_id': self.user_id,
            'entity_type': self.entity_type,
            'entity_id': self.entity_id,
            'device_info': self.device_info,
            'previous_hash': self.previous_hash,
            'metadata': self.metadata
        }

        json_data = json.dumps(hash_data, sort_keys=True, separators=(',', ':'))
        return hashlib.sha256(json_data.encode('utf-8')).hexdigest()

    def verify_hash(self) -> bool:
        """Verify that the current hash is correct"""
        return self.current_hash == self.calculate_hash()


class UserLogTrail:
    """
    Hash-chained user log
    """

    def __init__(self, storage: StorageInterface, collection: str = "user_logs",
                 enabled: bool = True):
        self.storage = storage
        self.collection = collection
        self.enabled = enabled
        self._lock = threading.Lock()

    def _last_entry(self) -> Optional[Dict[str, Any]]:
        entries = self.storage.query(self.collection, order_by='sequence', descending=True)
        return entries[0] if entries else None

    def log_event(
        self,
        action: UserAction,
        description: str,
        user_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        device_info: Optional[str] = None
    ) -> UserLog:
        """
        Append an entry to the log

        Args:
            action: Action code
            description: Human readable description
            user_id: Acting user, None for anonymous actions
            entity_type: Type of entity acted upon (loan_application, user, ...)
            entity_id: ID of that entity
            metadata: Additional event-specific data
            device_info: Client device / user agent string

        Returns:
            Created UserLog entry
        """
        with self._lock:
            last = self._last_entry()
            entry = UserLog(
                id="",
                sequence=(last['sequence'] + 1) if last else 1,
                action=action,
                description=description,
                created_at=datetime.now(timezone.utc),
                previous_hash=last['current_hash'] if last else "",
                current_hash="",
                user_id=user_id,
                entity_type=entity_type,
                entity_id=entity_id,
                device_info=device_info,
                metadata=metadata or {}
            )
            entry.id = f"log-{entry.sequence:08d}"
            entry.current_hash = entry.calculate_hash()
            self.storage.insert(self.collection, entry.to_dict())
            return entry

    def record(self, action: UserAction, description: str, **kwargs) -> Optional[UserLog]:
        """
        Best-effort variant of log_event.

        A failed log write is reported at WARNING and never propagates.
        """
        if not self.enabled:
            return None
        try:
            return self.log_event(action, description, **kwargs)
        except Exception as e:
            logger.warning(f"User log write failed for {action.value}: {e}")
            return None

    def get_all_entries(self, limit: Optional[int] = None) -> List[UserLog]:
        """All entries in chain order; with limit, the most recent N"""
        entries = [UserLog.from_dict(d) for d in
                   self.storage.query(self.collection, order_by='sequence')]
        if limit:
            entries = entries[-limit:]
        return entries

    def get_entries_for_user(self, user_id: str) -> List[UserLog]:
        """Entries recorded for an acting user"""
        return [UserLog.from_dict(d) for d in
                self.storage.query(self.collection, {'user_id': user_id}, order_by='sequence')]

    def get_entries_for_entity(self, entity_type: str, entity_id: str) -> List[UserLog]:
        """Entries recorded against a specific entity"""
        filters = {'entity_type': entity_type, 'entity_id': entity_id}
        return [UserLog.from_dict(d) for d in
                self.storage.query(self.collection, filters, order_by='sequence')]

    def verify_integrity(self) -> Dict[str, Any]:
        """
        Verify the integrity of the entire chain

        Returns:
            Dictionary with integrity check results
        """
        result = {
            'valid': True,
            'total_entries': 0,
            'hash_errors': [],
            'chain_breaks': []
        }

        entries = self.get_all_entries()
        result['total_entries'] = len(entries)

        previous_hash = ""
        for position, entry in enumerate(entries):
            if not entry.verify_hash():
                result['valid'] = False
                result['hash_errors'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_hash': entry.calculate_hash(),
                    'actual_hash': entry.current_hash
                })
            if entry.previous_hash != previous_hash:
                result['valid'] = False
                result['chain_breaks'].append({
                    'entry_id': entry.id,
                    'position': position,
                    'expected_previous_hash': previous_hash,
                    'actual_previous_hash': entry.previous_hash
                })
            previous_hash = entry.current_hash

        return result
