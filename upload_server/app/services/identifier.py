import hashlib
import re
import secrets
import string
from pathlib import PurePosixPath
from typing import Optional

from upload_server import config

ALPHABET = string.ascii_letters + string.digits
DELETE_TOKEN_BYTES = 24

_IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9]+(\.[A-Za-z0-9]{1,10})?$')
_EXTENSION_PATTERN = re.compile(r'^[A-Za-z0-9]{1,10}$')


def get_extension(filename: Optional[str]) -> Optional[str]:
    """Return the lowercase extension of a client filename if it is safe to reuse."""
    if not filename:
        return None
    suffix = PurePosixPath(filename.replace("\\", "/")).suffix
    extension = suffix[1:]
    if not _EXTENSION_PATTERN.match(extension):
        return None
    return extension.lower()


def is_valid_identifier(value: str) -> bool:
    """Check that a path segment could have been produced by the allocator."""
    if not value or len(value) > config.MAX_ID_LENGTH:
        return False
    return bool(_IDENTIFIER_PATTERN.match(value))


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class IdentifierAllocator:
    """Random, content independent identifiers.

    Identical uploads receive unrelated identifiers; uniqueness against live
    artifacts is enforced by the storage manager when publishing.
    """

    def __init__(self, length: int = config.ID_LENGTH):
        if length <= 0:
            raise ValueError("Identifier length must be positive")
        self.length = length

    def allocate(self, original_filename: Optional[str] = None) -> str:
        token = ''.join(secrets.choice(ALPHABET) for _ in range(self.length))
        extension = get_extension(original_filename)
        if extension:
            return f"{token}.{extension}"
        return token

    @staticmethod
    def new_delete_token() -> str:
        return secrets.token_urlsafe(DELETE_TOKEN_BYTES)
