from dataclasses import dataclass
from typing import List, Optional

from cache_dropin.domain.dropin import ErrorKind


@dataclass(frozen=True)
class RecoveryAction:
    action_id: str
    label: str
    description: str


@dataclass(frozen=True)
class ErrorCatalogEntry:
    kind: Optional[ErrorKind]
    title: str
    user_message: str
    actions: List[RecoveryAction]


GENERIC_REJECTION = "Invalid request."

ERROR_CATALOG: List[ErrorCatalogEntry] = [
    ErrorCatalogEntry(
        kind=ErrorKind.MODIFICATIONS_DISALLOWED,
        title="File modifications disallowed",
        user_message="File modifications are not allowed.",
        actions=[
            RecoveryAction("review_config", "Review configuration", "Unset DISALLOW_FILE_MODS to manage the drop-in."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.CREDENTIALS_UNAVAILABLE,
        title="Filesystem unavailable",
        user_message="Could not initialize filesystem.",
        actions=[
            RecoveryAction("supply_credentials", "Supply credentials", "Submit the connection form or set FS_METHOD."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.DIRECTORY_NOT_WRITABLE,
        title="Content directory not writable",
        user_message="Content directory is not writable.",
        actions=[
            RecoveryAction("fix_permissions", "Fix permissions", "Grant the web server user write access to the content directory."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.SOURCE_MISSING,
        title="Bundled drop-in missing",
        user_message="Object cache file doesn't exist.",
        actions=[
            RecoveryAction("reinstall_package", "Reinstall", "Reinstall the package to restore the bundled drop-in."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.COPY_FAILED,
        title="Copy failed",
        user_message="Failed to copy the drop-in file.",
        actions=[
            RecoveryAction("check_disk", "Check disk", "Verify free space and filesystem health."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.VERIFICATION_MISMATCH,
        title="Verification mismatch",
        user_message="Couldn't verify test file contents.",
        actions=[
            RecoveryAction("check_proxies", "Check caching layers", "A filesystem cache or proxy may serve stale file contents."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.CLEANUP_FAILED,
        title="Cleanup failed",
        user_message="Copied test file couldn't be deleted.",
        actions=[
            RecoveryAction("remove_manually", "Remove manually", "Delete leftover object-cache.*.tmp files in the content directory."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.TARGET_NOT_WRITABLE,
        title="Drop-in not writable",
        user_message="Object cache drop-in is not writable.",
        actions=[
            RecoveryAction("fix_permissions", "Fix permissions", "Grant write access to object-cache.php."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.DELETE_FAILED,
        title="Delete failed",
        user_message="Object cache drop-in couldn't be deleted.",
        actions=[
            RecoveryAction("remove_manually", "Remove manually", "Delete object-cache.php from the content directory."),
        ],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.INVALID_TOKEN,
        title="Invalid request",
        user_message=GENERIC_REJECTION,
        actions=[],
    ),
    ErrorCatalogEntry(
        kind=ErrorKind.UNAUTHORIZED,
        title="Invalid request",
        user_message=GENERIC_REJECTION,
        actions=[],
    ),
    ErrorCatalogEntry(
        kind=None,
        title="Unknown error",
        user_message="An unknown error occurred.",
        actions=[],
    ),
]


def get_catalog_entry(kind: Optional[ErrorKind]) -> ErrorCatalogEntry:
    for entry in ERROR_CATALOG:
        if entry.kind == kind:
            return entry
    return next(entry for entry in ERROR_CATALOG if entry.kind is None)


def user_message(kind: Optional[ErrorKind]) -> str:
    return get_catalog_entry(kind).user_message
