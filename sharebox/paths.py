"""Map user supplied file names onto locations inside the storage root.

Every operation that touches storage with a caller provided name goes through
:class:`PathResolver` first, so the rules below are the only barrier against
path traversal on upload, fetch and delete.
"""

import os
import re
from pathlib import Path
from typing import Union

from .errors import InvalidName

MAX_FILENAME_LENGTH = 255

_RESERVED_CHAR_PATTERN = re.compile(r'[<>:"|?*\x00-\x1f\x7f]')
_SEPARATORS = ("/", "\\")
_RESERVED_DEVICE_NAMES = {
    "CON",
    "PRN",
    "AUX",
    "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}


def validate_name(raw_name: object) -> str:
    """Return *raw_name* unchanged if it is a safe base name.

    Raises :class:`InvalidName` otherwise. Non-ASCII names are accepted as-is.
    """

    if not isinstance(raw_name, str) or not raw_name.strip():
        raise InvalidName("File name cannot be empty", None)

    name = raw_name
    if len(name) > MAX_FILENAME_LENGTH:
        raise InvalidName(
            f"File name exceeds maximum length of {MAX_FILENAME_LENGTH} characters",
            name,
        )
    try:
        encoded_length = len(os.fsencode(name))
    except UnicodeEncodeError:
        raise InvalidName("File name is not valid text", name) from None
    # Filesystems limit the encoded name, not the character count.
    if encoded_length > MAX_FILENAME_LENGTH:
        raise InvalidName(
            f"File name exceeds maximum length of {MAX_FILENAME_LENGTH} bytes",
            name,
        )
    if any(separator in name for separator in _SEPARATORS):
        raise InvalidName("File name cannot contain path separators", name)
    if ".." in name:
        raise InvalidName("File name cannot contain '..'", name)
    if _RESERVED_CHAR_PATTERN.search(name):
        raise InvalidName("File name contains reserved characters", name)
    if name.startswith("."):
        raise InvalidName("File name cannot start with '.'", name)
    if name.split(".", 1)[0].upper() in _RESERVED_DEVICE_NAMES:
        raise InvalidName("File name is reserved", name)
    return name


class PathResolver:
    """Resolve validated names to paths directly below ``root``."""

    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root).expanduser().resolve()

    def resolve(self, raw_name: object) -> Path:
        name = validate_name(raw_name)
        candidate = self.root / name
        # Only the base name is honoured; anything else is a bug in the rules.
        if candidate.parent != self.root or candidate.name != name:
            raise InvalidName("File name does not resolve inside storage", name)
        return candidate
