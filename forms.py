"""Formulários utilizados nas telas administrativas."""

from __future__ import annotations

from flask_wtf import FlaskForm
from wtforms import HiddenField, PasswordField, StringField
from wtforms.validators import DataRequired, Length


class LoginForm(FlaskForm):
    """Formulário de autenticação para o painel administrativo."""

    username = StringField(
        "Usuário",
        validators=[DataRequired(message="Informe o usuário."), Length(max=80)],
    )
    password = PasswordField(
        "Senha",
        validators=[DataRequired(message="Informe a senha."), Length(min=6, max=128)],
    )


class SectionUpdateForm(FlaskForm):
    """Envio de uma seção: campos em JSON e imagens em ``image_file``.

    Os arquivos e as chaves de imagem chegam como campos repetidos
    (``image_file`` / ``image_field_key``) e são lidos direto de ``request``.
    """

    # Comentário: objeto ``{campo: texto}`` serializado pelo editor.
    section_data_json = HiddenField(
        "Dados da seção",
        validators=[DataRequired(message="Dados da seção ausentes.")],
    )
