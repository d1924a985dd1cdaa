"""Configurações centrais da aplicação Flask."""

from __future__ import annotations

import os
import sys
from pathlib import Path


def _repair_surrogates(value: str) -> str:
    """Reinterpreta variáveis com caracteres substitutos oriundos do Windows."""

    # Comentário: em ambientes Windows, variáveis com caracteres fora de ASCII
    # podem chegar como "surrogateescape" (\udc80-\udcff). Reconstruímos os
    # bytes originais e decodificamos usando codificações compatíveis.
    if not any("\udc80" <= char <= "\udcff" for char in value):
        return value

    raw_bytes = value.encode("utf-8", "surrogateescape")
    for encoding in ("utf-8", sys.getfilesystemencoding() or "utf-8", "latin-1"):
        try:
            return raw_bytes.decode(encoding)
        except UnicodeDecodeError:
            continue

    return raw_bytes.decode("utf-8", "ignore")


def _env(name: str, default: str) -> str:
    value = os.getenv(name)
    if not value:
        return default
    return _repair_surrogates(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if not value:
        return default
    try:
        return max(float(value), 0.1)
    except (TypeError, ValueError):
        return default


class Config:
    """Configuração padrão com valores voltados ao ambiente local."""

    # Comentário: o diretório base é calculado para facilitar o uso em qualquer SO.
    BASE_DIR = Path(__file__).resolve().parent

    # Comentário: chave secreta utilizada para sessões e formulários.
    SECRET_KEY = os.getenv("SECRET_KEY", "conteudo-site-dev")

    # Comentário: credenciais de acesso ao painel administrativo.
    ADMIN_USERNAME = os.getenv("ADMIN_USERNAME", "admin")
    ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD", "senha-segura")

    # Comentário: documento JSON com todo o conteúdo das páginas.
    CONTENT_FILE_PATH = _env("CONTENT_FILE_PATH", str(BASE_DIR / "content" / "content.json"))
    CONTENT_SEED_PATH = str(BASE_DIR / "content" / "default_content.json")
    CONTENT_BACKUP_PATH = _env("CONTENT_BACKUP_PATH", str(BASE_DIR / "content" / "backups"))

    # Comentário: pasta plana com as imagens enviadas pelo painel.
    MEDIA_FOLDER = _env("MEDIA_FOLDER", str(BASE_DIR / "media"))
    MEDIA_URL_PREFIX = _env("MEDIA_URL_PREFIX", "/api/media")
    MEDIA_CACHE_MAX_AGE = 31536000

    MAX_IMAGE_SIZE = 5 * 1024 * 1024  # 5 MB
    ALLOWED_IMAGE_MIME_TYPES = {
        "image/jpeg",
        "image/png",
        "image/webp",
        "image/gif",
        "image/svg+xml",
    }

    # Comentário: prazo máximo de uma atualização de seção antes do rollback.
    CONTENT_UPDATE_TIMEOUT = _env_float("CONTENT_UPDATE_TIMEOUT", 30.0)

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
