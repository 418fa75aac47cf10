import logging
from typing import TYPE_CHECKING

from .cancellation import CancelToken
from .client import ApiClient
from .config import ClientConfig
from .credential_store import CredentialStore, FileCredentialStore, MemoryCredentialStore
from .error_handler import (
    ApiError,
    AuthorizationError,
    BadRequestError,
    ConflictError,
    ErrorKind,
    NetworkError,
    NotFoundError,
    RateLimitedError,
    RequestCancelledError,
    ServerError,
    UnauthenticatedError,
    UnexpectedResponseError,
    ValidationError,
)
from .renewal_coordinator import RenewalCoordinator, RenewalState

# The cache layer is lazy-loaded via __getattr__; pipeline-only users skip it
if TYPE_CHECKING:
    from .data_store import DataStore
    from .entity_cache import DomainConfig, EntityCache, TTLClass
    from .mutations import MutationEngine
    from .session import AuthSession

logging.getLogger("dashboard_client").addHandler(logging.NullHandler())

__all__ = [
    "ApiClient",
    "ClientConfig",
    "CancelToken",
    "CredentialStore",
    "FileCredentialStore",
    "MemoryCredentialStore",
    "RenewalCoordinator",
    "RenewalState",
    "ApiError",
    "ErrorKind",
    "BadRequestError",
    "UnauthenticatedError",
    "AuthorizationError",
    "NotFoundError",
    "ConflictError",
    "ValidationError",
    "RateLimitedError",
    "ServerError",
    "NetworkError",
    "RequestCancelledError",
    "UnexpectedResponseError",
    "DataStore",
    "DomainConfig",
    "EntityCache",
    "TTLClass",
    "MutationEngine",
    "AuthSession",
]


def __getattr__(name):
    """Lazy-load the cache layer and the auth session."""
    if name == "DataStore":
        from .data_store import DataStore

        return DataStore
    if name in ("DomainConfig", "EntityCache", "TTLClass"):
        from . import entity_cache

        return getattr(entity_cache, name)
    if name == "MutationEngine":
        from .mutations import MutationEngine

        return MutationEngine
    if name == "AuthSession":
        from .session import AuthSession

        return AuthSession
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
