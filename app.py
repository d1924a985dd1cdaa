"""Aplicação Flask principal do site institucional."""

from __future__ import annotations

import logging
import mimetypes
from pathlib import Path
from typing import Any, Mapping, Optional

import click
from flask import (
    Blueprint,
    Flask,
    abort,
    current_app,
    flash,
    has_app_context,
    jsonify,
    redirect,
    render_template,
    request,
    send_from_directory,
    url_for,
)
from flask_login import (
    LoginManager,
    UserMixin,
    current_user,
    login_required,
    login_user,
    logout_user,
)
from werkzeug.security import check_password_hash, generate_password_hash

import storage
from admin import admin_bp
from config import Config
from content_store import (
    ContentError,
    create_backup,
    is_image_field,
    load_content,
    save_content,
    to_base_name,
    walk_image_fields,
)
from filenames import find_actual_file
from forms import LoginForm
from rendering import renderable_content
from section_update import content_updated

# Comentário: chaves de configuração que apontam para arquivos ou pastas.
PATH_CONFIG_KEYS = (
    "CONTENT_FILE_PATH",
    "CONTENT_SEED_PATH",
    "CONTENT_BACKUP_PATH",
    "MEDIA_FOLDER",
)
ADMIN_PASSWORD_EXTENSION_KEY = "admin_password_hash"

login_manager = LoginManager()


class AdminUser(UserMixin):
    """Administrador único definido pelas variáveis de ambiente."""

    def __init__(self, username: str):
        self.id = username
        self.username = username


@content_updated.connect
def _log_content_updated(sender: Any, path: str = "", **_extra: Any) -> None:
    """Registra a invalidação; as páginas sempre releem o documento do disco."""

    logger = current_app.logger if has_app_context() else logging.getLogger(__name__)
    logger.info("Conteúdo atualizado, cache invalidado para %s", path)


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
    """Cria e configura a aplicação Flask."""

    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    for key in PATH_CONFIG_KEYS:
        path = Path(app.config[key])
        if not path.is_absolute():
            path = Path(app.root_path) / path
        app.config[key] = str(path)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    app.extensions[ADMIN_PASSWORD_EXTENSION_KEY] = generate_password_hash(
        app.config.get("ADMIN_PASSWORD") or ""
    )

    login_manager.init_app(app)
    login_manager.login_view = "auth.login"
    login_manager.login_message = "Realize o login para acessar o painel."
    login_manager.login_message_category = "error"

    @login_manager.user_loader
    def load_user(user_id: str) -> AdminUser | None:
        username = (current_app.config.get("ADMIN_USERNAME") or "").strip().lower()
        if username and user_id == username:
            return AdminUser(username)
        return None

    def _content_path() -> Path:
        return Path(app.config["CONTENT_FILE_PATH"])

    def _media_dir() -> Path:
        return Path(app.config["MEDIA_FOLDER"])

    auth_bp = Blueprint("auth", __name__, url_prefix="/auth")

    @auth_bp.route("/login", methods=["GET", "POST"])
    def login():
        if current_user.is_authenticated:
            return redirect(url_for("admin.index"))

        form = LoginForm()
        if form.validate_on_submit():
            username = (form.username.data or "").strip().lower()
            expected = (app.config.get("ADMIN_USERNAME") or "").strip().lower()
            password_hash = app.extensions[ADMIN_PASSWORD_EXTENSION_KEY]

            if expected and username == expected and check_password_hash(
                password_hash, form.password.data or ""
            ):
                login_user(AdminUser(username))

                next_url = request.args.get("next")
                if not next_url or not next_url.startswith("/"):
                    next_url = url_for("admin.index")
                return redirect(next_url)

            flash("Credenciais inválidas.", "error")

        return render_template("auth/login.html", form=form)

    @auth_bp.route("/logout")
    @login_required
    def logout():
        logout_user()
        flash("Sessão encerrada com sucesso.", "success")
        return redirect(url_for("auth.login"))

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)

    media_prefix = app.config["MEDIA_URL_PREFIX"].rstrip("/")

    @app.route(f"{media_prefix}/<path:filename>")
    def media_file(filename: str):
        """Entrega um arquivo da pasta de mídia com cache de longa duração."""

        try:
            path = storage.resolve_media_path(filename, _media_dir())
        except storage.InvalidFilename:
            abort(400)

        if not path.is_file():
            abort(404)

        mimetype = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        response = send_from_directory(
            str(path.parent),
            path.name,
            mimetype=mimetype,
            max_age=app.config["MEDIA_CACHE_MAX_AGE"],
        )
        response.cache_control.public = True
        response.cache_control.immutable = True
        return response

    @app.route("/api/content")
    def content_api():
        """Conteúdo completo com as imagens já convertidas em URL."""

        try:
            document = renderable_content(
                _content_path(), _media_dir(), app.config["MEDIA_URL_PREFIX"]
            )
        except ContentError as exc:
            app.logger.exception("Falha ao carregar o conteúdo para a API.")
            return jsonify({"error": str(exc)}), 500
        return jsonify(document)

    def _render_page(page_key: str) -> str:
        try:
            sections = renderable_content(
                _content_path(),
                _media_dir(),
                app.config["MEDIA_URL_PREFIX"],
                page_key=page_key,
            )
        except ContentError:
            # Comentário: documento corrompido não é mascarado com conteúdo padrão.
            app.logger.exception("Falha ao carregar o conteúdo da página %s.", page_key)
            abort(500)

        if sections is None:
            abort(404)

        return render_template(
            "page.html",
            page_key=page_key,
            sections=sections,
            is_image_field=is_image_field,
        )

    @app.route("/")
    def index() -> str:
        """Rota principal que exibe a página inicial."""

        return _render_page("home")

    @app.route("/<page_key>")
    def show_page(page_key: str) -> str:
        """Exibe a página do documento associada à chave informada."""

        return _render_page(page_key)

    @app.errorhandler(404)
    def handle_not_found(_: Exception) -> tuple[str, int]:
        """Exibe uma página personalizada para recursos inexistentes."""

        return render_template("404.html"), 404

    @app.errorhandler(500)
    def handle_internal_error(_: Exception) -> tuple[str, int]:
        """Garante mensagem em português quando ocorrer erro interno."""

        return render_template("500.html"), 500

    @app.cli.command("ensure-content")
    def ensure_content() -> None:
        """Cria o documento de conteúdo a partir do modelo, se ainda não existir."""

        content_path = _content_path()
        if content_path.exists():
            click.echo(f"Documento de conteúdo já existe: {content_path}")
            return

        try:
            seed = load_content(Path(app.config["CONTENT_SEED_PATH"]))
            save_content(
                content_path, seed, media_url_prefix=app.config["MEDIA_URL_PREFIX"]
            )
        except ContentError as exc:
            raise click.ClickException(str(exc)) from exc

        click.echo(f"Documento de conteúdo criado em {content_path}")

    @app.cli.command("backup-content")
    def backup_content() -> None:
        """Grava uma cópia datada do documento de conteúdo."""

        content_path = _content_path()
        if not content_path.exists():
            raise click.ClickException(
                f"Arquivo de conteúdo não encontrado: {content_path}"
            )

        backup_path = create_backup(content_path, Path(app.config["CONTENT_BACKUP_PATH"]))
        click.echo(f"Cópia de segurança criada em {backup_path}")

    @app.cli.command("check-media")
    def check_media() -> None:
        """Lista os campos de imagem sem arquivo correspondente na pasta de mídia."""

        try:
            document = load_content(_content_path())
        except ContentError as exc:
            raise click.ClickException(str(exc)) from exc

        media_dir = _media_dir()
        listing = storage.list_media_files(media_dir)
        missing = 0
        for container, key, path in walk_image_fields(document):
            base_name = to_base_name(container[key], app.config["MEDIA_URL_PREFIX"])
            if base_name and find_actual_file(media_dir, base_name, listing) is None:
                missing += 1
                click.echo(f"{'.'.join(path)}: '{base_name}' não encontrado")

        if missing:
            raise click.ClickException(f"{missing} imagem(ns) ausente(s).")
        click.echo("Todas as imagens referenciadas foram encontradas.")

    return app


# Comentário: instância utilizada por servidores WSGI ou pelo Flask CLI.
app = create_app()


if __name__ == "__main__":
    # Comentário: execução direta do módulo para ambientes de desenvolvimento.
    app.run(debug=True)
