"""Utilitários para leitura e escrita do conteúdo público do site.

O conteúdo fica em um único arquivo JSON no formato
``página -> seção -> campo -> texto``. Campos cujo nome contém "image"
guardam apenas o nome base do arquivo de mídia (sem extensão nem URL).
"""

from __future__ import annotations

import copy
import json
import os
import re
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Tuple

DEFAULT_MEDIA_URL_PREFIX = "/api/media"

Document = Dict[str, Any]


class ContentError(RuntimeError):
    """Erro base para problemas com o documento de conteúdo."""


class ContentReadError(ContentError):
    """O arquivo de conteúdo não pôde ser lido."""


class ContentParseError(ContentError):
    """O arquivo de conteúdo não contém JSON válido."""


class InvalidStructure(ContentError):
    """A raiz do documento não é um objeto JSON."""


class ContentWriteError(ContentError):
    """O documento não pôde ser gravado em disco."""


def is_image_field(key: str) -> bool:
    """Indica se o campo guarda uma imagem (nome contém "image")."""

    return "image" in str(key).lower()


def to_base_name(value: Any, media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX) -> str:
    """Reduz uma referência de imagem ao nome base armazenado no JSON.

    ``"/api/media/logo.png"`` e ``"logo.png"`` viram ``"logo"``; um valor
    que já é nome base é devolvido sem alterações.
    """

    if value is None:
        return ""

    text = str(value).strip()
    prefix = media_url_prefix.rstrip("/") + "/"
    if prefix != "/" and text.startswith(prefix):
        text = text[len(prefix):]

    text = text.replace("\\", "/").rsplit("/", 1)[-1]
    if "." in text:
        text = text.split(".", 1)[0]
    return text


def walk_image_fields(
    node: Any, path: Tuple[str, ...] = ()
) -> Iterator[Tuple[Dict[str, Any], str, Tuple[str, ...]]]:
    """Percorre a árvore e produz ``(objeto, chave, caminho)`` de cada imagem."""

    if not isinstance(node, dict):
        return

    for key in list(node.keys()):
        value = node[key]
        if is_image_field(key) and not isinstance(value, dict):
            yield node, key, path + (key,)
        elif isinstance(value, dict):
            yield from walk_image_fields(value, path + (key,))


def normalize_image_references(
    document: Document, media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX
) -> Document:
    """Retorna uma cópia do documento com todas as imagens em nome base."""

    normalized = copy.deepcopy(document)
    for container, key, _path in walk_image_fields(normalized):
        container[key] = to_base_name(container[key], media_url_prefix)
    return normalized


def normalize_section_data(section: Any) -> Dict[str, str]:
    """Converte uma seção para ``{campo: texto}``; ``None`` vira string vazia."""

    if not isinstance(section, dict):
        return {}

    return {
        str(key): "" if value is None else str(value)
        for key, value in section.items()
    }


def generate_label(key: str) -> str:
    """Gera o rótulo exibido no formulário a partir da chave do campo."""

    spaced = re.sub(r"([A-Z])", r" \1", key)
    spaced = re.sub(r"[_-]", " ", spaced).strip()
    spaced = re.sub(r"\s+", " ", spaced)
    return spaced[:1].upper() + spaced[1:]


def load_content(path: Path) -> Document:
    """Carrega o arquivo JSON com o conteúdo de todas as páginas."""

    try:
        data = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as error:
        raise ContentReadError(
            f"Não foi possível ler o arquivo de conteúdo {path}: {error}"
        ) from error

    try:
        parsed = json.loads(data)
    except json.JSONDecodeError as error:
        raise ContentParseError(f"Conteúdo inválido no arquivo {path}: {error}") from error

    if not isinstance(parsed, dict):
        found = "array" if isinstance(parsed, list) else type(parsed).__name__
        raise InvalidStructure(
            f"Estrutura inválida em {path}: a raiz deve ser um objeto (encontrado: {found})."
        )

    return parsed


def serialize_content(
    data: Document, media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX
) -> str:
    """Serializa o documento já com as imagens reduzidas a nome base."""

    cleaned = normalize_image_references(data, media_url_prefix)
    return json.dumps(cleaned, ensure_ascii=False, indent=2) + "\n"


def save_content(
    path: Path,
    data: Document,
    *,
    media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX,
) -> None:
    """Persiste o conteúdo em disco substituindo o arquivo inteiro."""

    path = Path(path)
    try:
        serialized = serialize_content(data, media_url_prefix)
    except (TypeError, ValueError) as error:
        raise ContentWriteError(f"Conteúdo não serializável: {error}") from error

    temp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        # Comentário: grava em arquivo temporário e troca de uma vez só.
        fd, temp_name = tempfile.mkstemp(
            dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(serialized)
        os.replace(temp_name, path)
    except OSError as error:
        if temp_name and os.path.exists(temp_name):
            os.unlink(temp_name)
        raise ContentWriteError(
            f"Falha ao atualizar o arquivo de conteúdo {path}: {error}"
        ) from error


def create_backup(source: Path, destination: Path) -> Path:
    """Cria uma cópia de segurança do ``source`` dentro de ``destination``."""

    destination.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    backup_path = destination / f"content_{timestamp}.json"
    backup_path.write_text(source.read_text(encoding="utf-8"), encoding="utf-8")
    return backup_path
