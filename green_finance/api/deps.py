"""
Application container and request dependencies
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from ..audit import UserLogTrail
from ..auth import LocalAuthProvider
from ..config import LendingConfig, get_config
from ..documents import BlobStore, create_blob_store
from ..errors import AuthenticationError
from ..identity import Principal
from ..loans import LoanLifecycleEngine
from ..reporting import ReportingService
from ..stokvela import StokvelaSchedule
from ..storage import StorageInterface, create_storage
from ..users import UserManager


class LendingSystem:
    """Lending system with all components initialized"""

    def __init__(
        self,
        config: Optional[LendingConfig] = None,
        storage: Optional[StorageInterface] = None,
        blob_store: Optional[BlobStore] = None
    ):
        self.config = config or get_config()

        # Initialize storage
        if storage is None:
            storage = create_storage(
                self.config.storage_backend,
                sqlite_path=self.config.sqlite_path,
                supabase_url=self.config.supabase_url,
                supabase_key=self.config.supabase_key
            )
        if blob_store is None:
            blob_store = create_blob_store(
                self.config.blob_backend,
                directory=self.config.blob_directory,
                base_url=self.config.blob_base_url,
                supabase_url=self.config.supabase_url,
                supabase_key=self.config.supabase_key
            )
        self.storage = storage
        self.blob_store = blob_store

        # Initialize core components
        self.user_log = UserLogTrail(self.storage, enabled=self.config.enable_audit_logging)
        self.user_manager = UserManager(
            self.storage, self.blob_store, self.user_log,
            profile_bucket=self.config.profile_pictures_bucket,
            max_picture_bytes=self.config.max_document_bytes
        )
        self.auth = LocalAuthProvider(
            self.storage, self.user_manager, self.user_log,
            jwt_secret=self.config.jwt_secret,
            jwt_algorithm=self.config.jwt_algorithm,
            jwt_expiry_hours=self.config.jwt_expiry_hours,
            password_min_length=self.config.password_min_length,
            confirmation_token_hours=self.config.confirmation_token_hours,
            reset_token_hours=self.config.reset_token_hours
        )
        self.loan_engine = LoanLifecycleEngine(
            self.storage, self.blob_store, self.user_log,
            interest_rate=self.config.interest_rate_decimal,
            max_document_bytes=self.config.max_document_bytes,
            documents_bucket=self.config.loan_documents_bucket
        )
        self.reporting = ReportingService(self.loan_engine)
        self.stokvela = StokvelaSchedule(self.storage)


# Global lending system instance, built on first use
lending_system: Optional[LendingSystem] = None


# Dependency to get lending system
def get_lending_system() -> LendingSystem:
    global lending_system
    if lending_system is None:
        lending_system = LendingSystem()
    return lending_system


security = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    system: LendingSystem = Depends(get_lending_system)
) -> Optional[Principal]:
    """Principal for the bearer token, or None for anonymous requests"""
    if not credentials:
        return None
    return system.auth.principal_from_token(credentials.credentials)


def require_principal(principal: Optional[Principal] = Depends(get_current_principal)) -> Principal:
    """Dependency for routes that need a signed-in user"""
    if principal is None:
        raise AuthenticationError("Authentication required")
    return principal
