"""IdP access: token cache, management API client, error taxonomy."""

from celine.idsync.idp.client import (
    IdpClient,
    prepare_email_payload,
    prepare_import_payload,
    prepare_profile_payload,
    prepare_username_payload,
)
from celine.idsync.idp.errors import ErrorKind, IdpError, IdpResult, RetryableSyncError
from celine.idsync.idp.token import CachedToken, TokenCache

__all__ = [
    "CachedToken",
    "ErrorKind",
    "IdpClient",
    "IdpError",
    "IdpResult",
    "RetryableSyncError",
    "TokenCache",
    "prepare_email_payload",
    "prepare_import_payload",
    "prepare_profile_payload",
    "prepare_username_payload",
]
