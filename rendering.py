"""Prepara o conteúdo armazenado para exibição nas páginas."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from content_store import (
    DEFAULT_MEDIA_URL_PREFIX,
    Document,
    load_content,
    to_base_name,
    walk_image_fields,
)
from filenames import find_actual_file
from storage import PathLike, list_media_files

logger = logging.getLogger(__name__)


def media_url(filename: str, media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX) -> str:
    return f"{media_url_prefix.rstrip('/')}/{filename}"


def resolve_image_references(
    document: Document,
    media_dir: PathLike,
    media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX,
) -> Document:
    """Troca, no próprio documento, cada nome base pela URL servível.

    Imagens sem arquivo correspondente viram string vazia e geram um aviso,
    para que a página continue sendo exibida.
    """

    listing = list_media_files(media_dir)
    for container, key, path in walk_image_fields(document):
        base_name = to_base_name(container[key], media_url_prefix)
        field_path = ".".join(path)

        if not base_name:
            logger.warning("Imagem não selecionada para o campo %s", field_path)
            container[key] = ""
            continue

        actual = find_actual_file(media_dir, base_name, listing)
        if actual is None:
            logger.warning(
                "Imagem ausente na pasta de mídia: '%s' (campo %s)",
                base_name,
                field_path,
            )
            container[key] = ""
            continue

        container[key] = media_url(actual, media_url_prefix)
    return document


def renderable_content(
    content_path: Path,
    media_dir: PathLike,
    media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX,
    *,
    page_key: Optional[str] = None,
) -> Optional[Document]:
    """Lê o documento e devolve as imagens já como URLs.

    Erros de leitura do documento são propagados; imagens ausentes não.
    Com ``page_key`` apenas aquela página é resolvida (``None`` se não existir).
    """

    document = load_content(content_path)
    if page_key is not None:
        page = document.get(page_key)
        if not isinstance(page, dict):
            return None
        return resolve_image_references({page_key: page}, media_dir, media_url_prefix)[
            page_key
        ]
    return resolve_image_references(document, media_dir, media_url_prefix)
