"""Painel administrativo para edição das seções do conteúdo."""

from __future__ import annotations

import copy
from datetime import datetime
from pathlib import Path

from flask import (
    Blueprint,
    current_app,
    flash,
    jsonify,
    redirect,
    render_template,
    request,
    url_for,
)
from flask_login import login_required

from content_store import (
    ContentError,
    generate_label,
    is_image_field,
    load_content,
    walk_image_fields,
)
from forms import SectionUpdateForm
from rendering import resolve_image_references
from section_update import (
    FileTooLarge,
    SectionUpdater,
    UpdateFailed,
    UpdateResult,
    update_section_content,
)

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


def _content_path() -> Path:
    return Path(current_app.config["CONTENT_FILE_PATH"])


def _media_dir() -> Path:
    return Path(current_app.config["MEDIA_FOLDER"])


def _wants_json() -> bool:
    best = request.accept_mimetypes.best_match(["application/json", "text/html"])
    return best == "application/json" or request.headers.get("X-Requested-With") == "XMLHttpRequest"


def _status_for(result: UpdateResult) -> int:
    if result.success:
        return 200
    if isinstance(result.error, FileTooLarge):
        return 413
    if isinstance(result.error, (UpdateFailed, ContentError)):
        return 500
    return 400


def _respond(result: UpdateResult, page_key: str, section_key: str):
    status = _status_for(result)
    if _wants_json():
        return jsonify(result.to_dict()), status

    flash(result.message, "success" if result.success else "error")
    return redirect(url_for("admin.index", _anchor=f"{page_key}-{section_key}"))


@admin_bp.route("/")
@login_required
def index():
    """Lista todas as páginas e seções com um formulário por seção."""

    content_path = _content_path()
    try:
        stored = load_content(content_path)
    except ContentError as exc:
        current_app.logger.exception("Falha ao carregar o conteúdo para o painel.")
        flash(str(exc), "error")
        stored = {}

    previews = resolve_image_references(
        copy.deepcopy(stored),
        _media_dir(),
        current_app.config["MEDIA_URL_PREFIX"],
    )

    image_fields = list(walk_image_fields(stored))
    missing_images = sum(
        1
        for container, key, path in walk_image_fields(previews)
        if not container[key] and _lookup(stored, path)
    )
    stats = {
        "pages": len(stored),
        "sections": sum(len(page) for page in stored.values() if isinstance(page, dict)),
        "images": len(image_fields),
        "missing_images": missing_images,
    }

    last_modified = None
    if content_path.exists():
        last_modified = datetime.fromtimestamp(content_path.stat().st_mtime)

    return render_template(
        "admin/index.html",
        content=stored,
        previews=previews,
        stats=stats,
        content_last_modified=last_modified,
        form=SectionUpdateForm(),
        is_image_field=is_image_field,
        generate_label=generate_label,
    )


def _lookup(document, path):
    node = document
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


@admin_bp.route("/sections/<page_key>/<section_key>", methods=["POST"])
@login_required
def update_section(page_key: str, section_key: str):
    """Recebe o formulário de uma seção e aplica a atualização."""

    form = SectionUpdateForm()
    if not form.validate_on_submit():
        messages = [error for errors in form.errors.values() for error in errors]
        result = UpdateResult(
            success=False,
            message="Erro: " + (" ".join(messages) or "Requisição inválida."),
        )
        return _respond(result, page_key, section_key)

    updater = SectionUpdater.from_config(current_app.config)
    result = update_section_content(
        updater,
        page_key,
        section_key,
        form.section_data_json.data,
        request.files.getlist("image_file"),
        request.form.getlist("image_field_key"),
    )

    if not result.success:
        current_app.logger.warning(
            "Atualização da seção %s/%s recusada: %s", page_key, section_key, result.message
        )
    return _respond(result, page_key, section_key)


@admin_bp.route("/content.json")
@login_required
def raw_content():
    """Documento armazenado, sem resolver as imagens."""

    try:
        return jsonify(load_content(_content_path()))
    except ContentError as exc:
        current_app.logger.exception("Falha ao carregar o conteúdo bruto.")
        return jsonify({"error": str(exc)}), 500
