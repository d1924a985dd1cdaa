"""Atualização transacional de uma seção do conteúdo e das imagens associadas.

Uma atualização recebe os campos de texto editados, zero ou mais uploads de
imagem e eventuais pedidos de limpeza de imagem. Ela grava os arquivos novos,
sincroniza o nome base em todo o documento, persiste o JSON e, se algo falhar
no meio do caminho, desfaz as alterações feitas na pasta de mídia.

Imagens substituídas nunca são apagadas: o arquivo novo recebe um nome
versionado (``logo_v2``) e o antigo fica órfão até uma limpeza posterior.
Imagens removidas pelo painel são renomeadas para ``prev-<arquivo>`` (ou
``prev-<nome>-2.<ext>`` quando essa sombra já existe).
"""

from __future__ import annotations

import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import portalocker
from blinker import Namespace

from content_store import (
    DEFAULT_MEDIA_URL_PREFIX,
    ContentError,
    Document,
    is_image_field,
    load_content,
    normalize_image_references,
    normalize_section_data,
    save_content,
    walk_image_fields,
)
from filenames import (
    MIME_TYPE_EXTENSIONS,
    find_actual_file,
    free_shadow_name,
    next_versioned_name,
    sanitize_upload_name,
    strip_version_suffix,
    timestamped_base_name,
    unique_base_name,
    upload_extension,
)
from storage import PathLike, StorageError, delete_media_file, rename_media_file, write_media_file

logger = logging.getLogger(__name__)

DEFAULT_MAX_IMAGE_SIZE = 5 * 1024 * 1024
DEFAULT_ALLOWED_TYPES = frozenset(MIME_TYPE_EXTENSIONS)
ADMIN_PATH = "/admin"

signals = Namespace()

# Comentário: enviado com ``path=<caminho lógico>`` após cada atualização.
content_updated = signals.signal("content-updated")

# Comentário: serializa as threads do processo; o arquivo ``.lock`` serializa os processos.
_update_lock = threading.Lock()


class SectionUpdateError(RuntimeError):
    """Erro base das atualizações de seção."""


class FileTooLarge(SectionUpdateError):
    """O arquivo enviado excede o tamanho máximo."""


class UnsupportedFileType(SectionUpdateError):
    """O tipo declarado do arquivo não é uma imagem aceita."""


class MalformedRequest(SectionUpdateError):
    """Os dados enviados pelo formulário são inconsistentes."""


class UpdateFailed(SectionUpdateError):
    """A atualização falhou depois de iniciar e foi desfeita."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


@dataclass
class UploadedImage:
    """Arquivo de imagem enviado para um campo da seção."""

    field_key: str
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @classmethod
    def from_file_storage(cls, field_key: str, file_storage) -> "UploadedImage":
        """Constrói a partir de um ``werkzeug.datastructures.FileStorage``."""

        return cls(
            field_key=field_key,
            filename=file_storage.filename or "",
            content_type=(file_storage.mimetype or file_storage.content_type or ""),
            data=file_storage.read(),
        )


@dataclass
class UpdateResult:
    success: bool
    message: str
    updated_section: Optional[Dict[str, str]] = None
    error: Optional[Exception] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "message": self.message}
        if self.updated_section is not None:
            payload["updatedSection"] = self.updated_section
        return payload


@dataclass
class RollbackEntry:
    kind: str
    name: str
    original: Optional[str] = None


@dataclass
class RollbackLog:
    """Registro das operações de arquivo feitas até o momento da falha."""

    media_dir: PathLike
    entries: List[RollbackEntry] = field(default_factory=list)

    def record_write(self, name: str) -> None:
        self.entries.append(RollbackEntry("delete", name))

    def record_rename(self, original: str, shadow: str) -> None:
        self.entries.append(RollbackEntry("rename_back", shadow, original))

    def rollback(self) -> None:
        """Desfaz as operações em ordem inversa; falhas são apenas registradas."""

        for entry in reversed(self.entries):
            try:
                if entry.kind == "delete":
                    logger.info("Rollback: removendo %s", entry.name)
                    delete_media_file(self.media_dir, entry.name)
                else:
                    logger.info("Rollback: restaurando %s -> %s", entry.name, entry.original)
                    rename_media_file(self.media_dir, entry.name, entry.original)
            except Exception:
                logger.exception("Falha no rollback da operação %s em %s", entry.kind, entry.name)
        self.entries.clear()


def page_path(page_key: str) -> str:
    """Caminho público da página: ``home`` é a raiz do site."""

    return "/" if page_key == "home" else f"/{page_key}"


def parse_section_data(section_data_json: Optional[str]) -> Dict[str, str]:
    """Interpreta o JSON de campos enviado pelo painel."""

    if not section_data_json:
        raise MalformedRequest("Dados da seção ausentes.")

    try:
        parsed = json.loads(section_data_json)
    except json.JSONDecodeError as exc:
        raise MalformedRequest(f"Formato inválido dos dados da seção ({exc}).") from exc

    if not isinstance(parsed, dict):
        raise MalformedRequest("Os dados da seção devem ser um objeto.")
    return normalize_section_data(parsed)


def pair_uploads(files: Sequence[Any], field_keys: Sequence[str]) -> List[UploadedImage]:
    """Associa cada arquivo enviado ao campo declarado na mesma posição."""

    present = [item for item in files if item is not None and getattr(item, "filename", "")]
    keys = [key for key in field_keys if key]
    if len(present) != len(keys):
        raise MalformedRequest(
            "A quantidade de arquivos enviados não corresponde à quantidade de campos de imagem."
        )
    return [UploadedImage.from_file_storage(key, item) for item, key in zip(present, keys)]


def validate_uploads(
    uploads: Iterable[UploadedImage],
    *,
    max_size: int = DEFAULT_MAX_IMAGE_SIZE,
    allowed_types: Iterable[str] = DEFAULT_ALLOWED_TYPES,
) -> None:
    """Valida os uploads antes de qualquer alteração em disco."""

    allowed = {item.lower() for item in allowed_types}
    seen = set()
    for upload in uploads:
        if not is_image_field(upload.field_key):
            raise MalformedRequest(f"Campo de imagem inválido: {upload.field_key}")
        if upload.field_key in seen:
            raise MalformedRequest(f"Mais de um arquivo enviado para o campo {upload.field_key}.")
        seen.add(upload.field_key)
        if not upload.filename:
            raise MalformedRequest(f"Arquivo sem nome para o campo {upload.field_key}.")
        if upload.size > max_size:
            limit_mb = max_size / (1024 * 1024)
            limit_text = (
                f"{int(limit_mb)} MB" if float(limit_mb).is_integer() else f"{limit_mb:.1f} MB"
            )
            raise FileTooLarge(f"Imagem excede o tamanho máximo permitido de {limit_text}.")
        if (upload.content_type or "").lower() not in allowed:
            raise UnsupportedFileType(
                "Formato de arquivo não suportado. Utilize imagens "
                + ", ".join(sorted(allowed))
                + "."
            )


def synchronize_base_name(document: Document, old_base: str, new_base: str) -> int:
    """Troca ``old_base`` por ``new_base`` em todos os campos de imagem."""

    replaced = 0
    for container, key, _path in walk_image_fields(document):
        if container[key] == old_base:
            container[key] = new_base
            replaced += 1
    return replaced


def lock_path_for(content_path: PathLike) -> Path:
    return Path(f"{content_path}.lock")


@contextmanager
def document_lock(content_path: PathLike, timeout: Optional[float] = None):
    """Trava exclusiva entre processos para o documento de conteúdo.

    A trava fica num arquivo irmão (``content.json.lock``) porque o próprio
    documento é substituído por ``os.replace`` a cada gravação. Sem
    ``timeout`` a espera é indefinida; com ``timeout`` esgotado a atualização
    falha com o motivo ``timeout``.
    """

    path = lock_path_for(content_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if timeout is None:
        lock = portalocker.Lock(str(path), flags=portalocker.LOCK_EX)
    else:
        lock = portalocker.Lock(str(path), timeout=timeout)

    try:
        lock.acquire()
    except portalocker.LockException as exc:
        logger.warning("Documento %s ocupado por outra atualização", content_path)
        raise UpdateFailed("timeout") from exc

    try:
        yield
    finally:
        lock.release()


def _send_content_updated(path: str) -> None:
    content_updated.send(path=path)


class SectionUpdater:
    """Executa a atualização de uma seção sobre o documento e a pasta de mídia."""

    def __init__(
        self,
        content_path: Path,
        media_dir: PathLike,
        *,
        media_url_prefix: str = DEFAULT_MEDIA_URL_PREFIX,
        max_image_size: int = DEFAULT_MAX_IMAGE_SIZE,
        allowed_types: Iterable[str] = DEFAULT_ALLOWED_TYPES,
        timeout: Optional[float] = None,
        invalidate: Callable[[str], None] = _send_content_updated,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.content_path = Path(content_path)
        self.media_dir = media_dir
        self.media_url_prefix = media_url_prefix
        self.max_image_size = max_image_size
        self.allowed_types = frozenset(allowed_types)
        self.timeout = timeout
        self.invalidate = invalidate
        self.clock = clock

    @classmethod
    def from_config(cls, config, **kwargs) -> "SectionUpdater":
        """Cria o executor a partir de ``app.config``."""

        return cls(
            Path(config["CONTENT_FILE_PATH"]),
            Path(config["MEDIA_FOLDER"]),
            media_url_prefix=config.get("MEDIA_URL_PREFIX", DEFAULT_MEDIA_URL_PREFIX),
            max_image_size=config.get("MAX_IMAGE_SIZE", DEFAULT_MAX_IMAGE_SIZE),
            allowed_types=config.get("ALLOWED_IMAGE_MIME_TYPES", DEFAULT_ALLOWED_TYPES),
            timeout=config.get("CONTENT_UPDATE_TIMEOUT"),
            **kwargs,
        )

    def update(
        self,
        page_key: str,
        section_key: str,
        field_edits: Dict[str, str],
        uploads: Sequence[UploadedImage] = (),
    ) -> Dict[str, str]:
        """Aplica a atualização e devolve a seção como ficou gravada."""

        validate_uploads(
            uploads, max_size=self.max_image_size, allowed_types=self.allowed_types
        )
        field_edits = normalize_section_data(field_edits)

        wait = -1 if self.timeout is None else self.timeout
        if not _update_lock.acquire(timeout=wait):
            raise UpdateFailed("timeout")
        try:
            with document_lock(self.content_path, self.timeout):
                return self._update_locked(page_key, section_key, field_edits, list(uploads))
        finally:
            _update_lock.release()

    def _update_locked(
        self,
        page_key: str,
        section_key: str,
        field_edits: Dict[str, str],
        uploads: List[UploadedImage],
    ) -> Dict[str, str]:
        logger.info("Atualizando seção %s/%s", page_key, section_key)

        document = load_content(self.content_path)
        working = normalize_image_references(document, self.media_url_prefix)

        page = working.get(page_key)
        if not isinstance(page, dict):
            raise MalformedRequest(f"Página inexistente: {page_key}")
        section = page.get(section_key)
        if not isinstance(section, dict):
            raise MalformedRequest(f"Seção inexistente: {page_key}/{section_key}")

        deadline = None if self.timeout is None else self.clock() + self.timeout
        journal = RollbackLog(self.media_dir)

        try:
            assignments = self._store_uploads(section, uploads, journal, deadline)
            for old_base, new_base in assignments["renames"]:
                count = synchronize_base_name(working, old_base, new_base)
                logger.info(
                    "Nome base '%s' substituído por '%s' em %d campo(s)", old_base, new_base, count
                )
            for key, base_name in assignments["fields"].items():
                section[key] = base_name

            for key, value in field_edits.items():
                if not is_image_field(key):
                    section[key] = value

            uploaded_keys = {upload.field_key for upload in uploads}
            for key, value in field_edits.items():
                if is_image_field(key) and value == "" and key not in uploaded_keys:
                    self._clear_image(working, section, key, journal, deadline)

            self._check_deadline(deadline)
            save_content(self.content_path, working, media_url_prefix=self.media_url_prefix)
        except Exception as exc:
            logger.error(
                "Erro ao atualizar a seção %s/%s; desfazendo alterações",
                page_key,
                section_key,
                exc_info=exc,
            )
            journal.rollback()
            if isinstance(exc, UpdateFailed):
                raise
            raise UpdateFailed(str(exc)) from exc

        for path in (page_path(page_key), ADMIN_PATH):
            try:
                self.invalidate(path)
            except Exception:
                logger.exception("Falha ao invalidar o cache de %s", path)

        logger.info("Seção %s/%s atualizada", page_key, section_key)
        return dict(section)

    def _store_uploads(
        self,
        section: Dict[str, Any],
        uploads: List[UploadedImage],
        journal: RollbackLog,
        deadline: Optional[float],
    ) -> Dict[str, Any]:
        renames: List[tuple] = []
        fields: Dict[str, str] = {}
        reserved: set = set()

        for upload in uploads:
            extension = upload_extension(upload.filename, upload.content_type)
            current = section.get(upload.field_key) or ""

            if current:
                root = strip_version_suffix(current)
                base_name, filename = next_versioned_name(self.media_dir, root, extension)
                if base_name != current:
                    renames.append((current, base_name))
            else:
                base_name = unique_base_name(
                    self.media_dir,
                    timestamped_base_name(sanitize_upload_name(upload.filename)),
                    reserved,
                )
                filename = f"{base_name}{extension}"

            write_media_file(self.media_dir, filename, upload.data)
            journal.record_write(filename)
            reserved.add(base_name)
            fields[upload.field_key] = base_name
            self._check_deadline(deadline)

        return {"renames": renames, "fields": fields}

    def _clear_image(
        self,
        working: Document,
        section: Dict[str, Any],
        key: str,
        journal: RollbackLog,
        deadline: Optional[float],
    ) -> None:
        old_base = section.get(key) or ""
        section[key] = ""
        if not old_base:
            return

        still_used = any(
            container[field_key] == old_base
            for container, field_key, _path in walk_image_fields(working)
        )
        if still_used:
            logger.info("Imagem '%s' continua em uso; arquivo mantido", old_base)
            return

        actual = find_actual_file(self.media_dir, old_base)
        if actual is None:
            return

        shadow = free_shadow_name(self.media_dir, actual)
        rename_media_file(self.media_dir, actual, shadow)
        journal.record_rename(actual, shadow)
        self._check_deadline(deadline)

    def _check_deadline(self, deadline: Optional[float]) -> None:
        # Comentário: verificado entre as etapas; uma chamada de disco travada não é interrompida.
        if deadline is not None and self.clock() > deadline:
            raise UpdateFailed("timeout")


def update_section_content(
    updater: SectionUpdater,
    page_key: str,
    section_key: str,
    section_data_json: Optional[str],
    files: Sequence[Any] = (),
    field_keys: Sequence[str] = (),
) -> UpdateResult:
    """Ponto de entrada usado pelo painel: nunca lança os erros conhecidos."""

    try:
        field_edits = parse_section_data(section_data_json)
        uploads = pair_uploads(files, field_keys)
        updated = updater.update(page_key, section_key, field_edits, uploads)
    except UpdateFailed as exc:
        return UpdateResult(
            success=False,
            message=f"Falha ao atualizar a seção '{section_key}'. Motivo: {exc.reason}",
            error=exc,
        )
    except (SectionUpdateError, ContentError, StorageError) as exc:
        return UpdateResult(success=False, message=f"Erro: {exc}", error=exc)

    return UpdateResult(
        success=True,
        message=f"Seção '{section_key}' da página '{page_key}' atualizada com sucesso!",
        updated_section=updated,
    )
