from pathlib import PurePosixPath
from typing import Iterable, Optional

from chibi_upload.core.exceptions import ValidationError


def _normalize(extension: str) -> str:
    return extension.strip().lstrip(".").lower()


def get_suffix(filename: str) -> str:
    """Suffix of the base name, dot included and case kept (".tar.gz" -> ".gz")."""
    # Browsers may send Windows paths as the part name
    name = PurePosixPath(filename.replace("\\", "/")).name
    return PurePosixPath(name).suffix


def get_extension(filename: str) -> str:
    """Extension of `filename` without the dot, lower-cased ("" if none)."""
    return _normalize(get_suffix(filename))


def validate_extension(
    filename: str,
    allowed_extensions: Optional[Iterable[str]] = None,
    blocked_extensions: Optional[Iterable[str]] = None,
) -> None:
    allowed = {_normalize(ext) for ext in allowed_extensions or []}
    blocked = {_normalize(ext) for ext in blocked_extensions or []}
    if not allowed and not blocked:
        return

    extension = get_extension(filename)
    if not extension:
        raise ValidationError("File extension could not be determined", {"filename": filename})
    if allowed and extension not in allowed:
        raise ValidationError("File extension is not allowed", {"extension": extension})
    if extension in blocked:
        raise ValidationError("File extension is not allowed", {"extension": extension})
