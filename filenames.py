"""Regras de nomenclatura dos arquivos de mídia."""

from __future__ import annotations

import posixpath
import re
import time
from pathlib import Path
from typing import Iterable, Optional, Tuple

from werkzeug.utils import secure_filename

from storage import PathLike, StorageError, list_media_files

# Comentário: a ordem importa, o primeiro formato encontrado vence.
SUPPORTED_IMAGE_EXTENSIONS = (".jpeg", ".jpg", ".png", ".webp", ".gif", ".svg")

MIME_TYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "image/svg+xml": ".svg",
}

EXTENSION_MIME_TYPES = {
    ".jpeg": "image/jpeg",
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".svg": "image/svg+xml",
}

SHADOW_PREFIX = "prev-"
DEFAULT_UPLOAD_NAME = "image"

_VERSION_SUFFIX = re.compile(r"_v(\d+)$")
_UNSAFE_CHARACTERS = re.compile(r"[^a-z0-9_-]")


def find_actual_file(
    media_dir: PathLike, base_name: str, listing: Optional[Iterable[str]] = None
) -> Optional[str]:
    """Localiza o arquivo real (com extensão) associado a ``base_name``."""

    if not base_name:
        return None

    available = set(list_media_files(media_dir) if listing is None else listing)
    for extension in SUPPORTED_IMAGE_EXTENSIONS:
        candidate = f"{base_name}{extension}"
        if candidate in available:
            return candidate
    return None


def strip_version_suffix(base_name: str) -> str:
    """Remove o sufixo ``_v<N>`` final, se existir."""

    return _VERSION_SUFFIX.sub("", base_name)


def next_versioned_name(
    media_dir: PathLike, root_base_name: str, new_extension: str
) -> Tuple[str, str]:
    """Calcula a próxima versão livre de ``root_base_name``.

    Retorna ``(nome_base, nome_completo)``, por exemplo
    ``("logo_v4", "logo_v4.png")`` quando já existem ``logo_v1`` e ``logo_v3``.
    """

    pattern = re.compile(
        rf"^{re.escape(root_base_name)}_v(\d+)(?:\.[A-Za-z0-9]+)?$"
    )

    try:
        listing = list_media_files(media_dir)
    except OSError as exc:
        raise StorageError(
            f"Não foi possível ler a pasta de mídia para versionar '{root_base_name}': {exc}"
        ) from exc

    highest = 0
    for filename in listing:
        match = pattern.match(filename)
        if match:
            highest = max(highest, int(match.group(1)))

    versioned_base = f"{root_base_name}_v{highest + 1}"
    return versioned_base, f"{versioned_base}{new_extension}"


def upload_extension(filename: str, content_type: str) -> str:
    """Extensão usada para gravar o upload.

    O tipo declarado (já validado) decide; a extensão do nome só é mantida
    quando corresponde ao mesmo tipo, como ``.jpeg`` para ``image/jpeg``.
    """

    extension = Path(filename or "").suffix.lower()
    declared = (content_type or "").lower()
    if declared in MIME_TYPE_EXTENSIONS:
        if EXTENSION_MIME_TYPES.get(extension) == declared:
            return extension
        return MIME_TYPE_EXTENSIONS[declared]
    if extension in SUPPORTED_IMAGE_EXTENSIONS:
        return extension
    return extension or ".bin"


def sanitize_upload_name(filename: str) -> str:
    """Gera um nome base seguro (sem extensão, minúsculo) a partir do upload."""

    secure_name = secure_filename(filename or "")
    stem = Path(secure_name).stem if secure_name else ""
    cleaned = _UNSAFE_CHARACTERS.sub("_", stem.lower()).strip("_")
    return cleaned or DEFAULT_UPLOAD_NAME


def timestamped_base_name(safe_name: str) -> str:
    """Nome base de uma imagem nova: ``<timestamp em ms>-<nome>``."""

    return f"{int(time.time() * 1000)}-{safe_name}"


def unique_base_name(
    media_dir: PathLike, base_name: str, reserved: Iterable[str] = ()
) -> str:
    """Acrescenta ``-2``, ``-3``... até ``base_name`` ficar livre.

    Um nome está ocupado quando algum arquivo da pasta tem esse nome base
    (com qualquer extensão) ou quando já foi reservado na mesma atualização.
    """

    taken = set(reserved)
    taken.update(Path(filename).stem for filename in list_media_files(media_dir))

    candidate = base_name
    counter = 2
    while candidate in taken:
        candidate = f"{base_name}-{counter}"
        counter += 1
    return candidate


def shadow_name(filename: str) -> str:
    return f"{SHADOW_PREFIX}{filename}"


def free_shadow_name(media_dir: PathLike, filename: str) -> str:
    """``prev-<arquivo>``, ou ``prev-<nome>-<n><ext>`` se a sombra já existir."""

    available = set(list_media_files(media_dir))
    candidate = shadow_name(filename)
    stem, extension = posixpath.splitext(filename)
    counter = 2
    while candidate in available:
        candidate = shadow_name(f"{stem}-{counter}{extension}")
        counter += 1
    return candidate
