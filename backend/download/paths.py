"""Turn sender-supplied file names into paths confined to the save directory."""

import os
import re
from pathlib import Path

FALLBACK_NAME = "unnamed"

_SEPARATORS = re.compile(r"[\\/]+")
_DRIVE = re.compile(r"^[A-Za-z]:")


def sanitize_relative_path(file_name: str, fallback: str = FALLBACK_NAME) -> str:
    """
    Reduce a file name to a safe relative path using "/" separators.

    Leading separators and drive prefixes are dropped, "." segments are
    removed and ".." segments only cancel segments already kept, so the
    result can never climb above the directory it is joined onto.
    Never raises; returns `fallback` if nothing usable remains.
    """
    name = file_name.replace("\x00", "")
    name = _DRIVE.sub("", name)

    parts: list[str] = []
    for segment in _SEPARATORS.split(name):
        segment = segment.strip()
        if segment in ("", "."):
            continue
        if segment == "..":
            if parts:
                parts.pop()
            continue
        parts.append(segment)

    if not parts:
        return fallback
    return "/".join(parts)


def resolve_destination(root: str | os.PathLike, file_name: str) -> Path:
    """Join the sanitized file name onto `root`."""
    root_path = Path(os.path.normpath(os.path.abspath(root)))
    target = root_path.joinpath(*sanitize_relative_path(file_name).split("/"))
    target = Path(os.path.normpath(target))
    if target != root_path and root_path not in target.parents:
        raise ValueError(f"{file_name!r} escapes {root_path}")
    return target
