"""Helpers for reading and writing files in the flat media folder."""

from __future__ import annotations

import errno
import logging
import os
import posixpath
from pathlib import Path
from typing import List, Union

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class StorageError(RuntimeError):
    """Raised when a storage operation fails."""


class InvalidFilename(StorageError, ValueError):
    """Raised when a filename would resolve outside the media folder."""


class WriteFailed(StorageError):
    """Raised when a new media file cannot be written."""


class RenameFailed(StorageError):
    """Raised when a media file cannot be renamed."""


def resolve_media_path(name: str, media_dir: PathLike) -> Path:
    """Return the absolute path of ``name`` inside ``media_dir``.

    Directory components are dropped, so ``"uploads/photo.jpg"`` resolves to
    ``<media_dir>/photo.jpg``. Names that climb out of the folder (``..``),
    absolute paths and empty names raise :class:`InvalidFilename`. Every other
    function of this module goes through here before touching the disk.
    """

    raw = str(name or "")
    if not raw.strip() or "\x00" in raw:
        raise InvalidFilename(f"Nome de arquivo inválido: {name!r}")

    unified = raw.replace("\\", "/")
    if posixpath.isabs(unified) or os.path.isabs(raw):
        raise InvalidFilename(f"Nome de arquivo inválido: {name!r}")

    normalized = posixpath.normpath(unified)
    if any(part == ".." for part in normalized.split("/")):
        raise InvalidFilename(f"Nome de arquivo inválido: {name!r}")

    base_name = posixpath.basename(normalized)
    if base_name in {"", "."} or ".." in base_name:
        raise InvalidFilename(f"Nome de arquivo inválido: {name!r}")

    root = Path(media_dir).resolve()
    target = root / base_name
    if target.parent != root:
        raise InvalidFilename(f"Nome de arquivo inválido: {name!r}")
    return target


def media_file_exists(media_dir: PathLike, name: str) -> bool:
    """Return True when ``name`` is a regular file inside the media folder."""

    if not name:
        return False

    try:
        return resolve_media_path(name, media_dir).is_file()
    except (InvalidFilename, OSError):
        return False


def delete_media_file(media_dir: PathLike, name: str) -> None:
    """Remove ``name`` from the media folder; a missing file is not an error."""

    if not name:
        return

    path = resolve_media_path(name, media_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        return
    except OSError as exc:
        logger.warning("Could not delete media file %s", path, exc_info=exc)
        return

    logger.info("Deleted media file %s", path)


def rename_media_file(
    media_dir: PathLike, old_name: str, new_name: str, *, overwrite: bool = False
) -> None:
    """Rename a media file.

    An existing ``new_name`` is only replaced when ``overwrite`` is true;
    otherwise :class:`RenameFailed` is raised and both files are left alone.
    """

    if not old_name or not new_name:
        raise RenameFailed("Nome de arquivo ausente para a renomeação.")

    try:
        old_path = resolve_media_path(old_name, media_dir)
        new_path = resolve_media_path(new_name, media_dir)
        if not overwrite and new_path.exists():
            raise FileExistsError(errno.EEXIST, "File exists", str(new_path))
        old_path.replace(new_path)
    except (InvalidFilename, OSError) as exc:
        logger.error("Could not rename %s to %s", old_name, new_name, exc_info=exc)
        raise RenameFailed(
            f"Não foi possível renomear '{old_name}' para '{new_name}': {exc}"
        ) from exc

    logger.info("Renamed media file %s to %s", old_name, new_name)


def write_media_file(media_dir: PathLike, name: str, data: bytes) -> Path:
    """Create ``name`` with ``data``; existing files are never overwritten."""

    path = resolve_media_path(name, media_dir)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("xb") as handle:
            handle.write(data)
    except OSError as exc:
        raise WriteFailed(f"Não foi possível gravar '{name}': {exc}") from exc

    logger.info("Saved media file %s (%d bytes)", path, len(data))
    return path


def list_media_files(media_dir: PathLike) -> List[str]:
    """Return the file names of the media folder, or [] if it does not exist."""

    root = Path(media_dir)
    try:
        entries = list(root.iterdir())
    except (FileNotFoundError, NotADirectoryError):
        return []

    return sorted(entry.name for entry in entries if entry.is_file())
