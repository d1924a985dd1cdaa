from pathlib import Path
import json
import sys

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture
def media_dir(tmp_path):
    path = tmp_path / "media"
    path.mkdir()
    return path


@pytest.fixture
def content_path(tmp_path):
    return tmp_path / "content" / "content.json"


@pytest.fixture
def write_document(content_path):
    def _write(document):
        content_path.parent.mkdir(parents=True, exist_ok=True)
        content_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        return content_path

    return _write


@pytest.fixture
def read_document(content_path):
    def _read():
        return json.loads(content_path.read_text(encoding="utf-8"))

    return _read


@pytest.fixture
def app(tmp_path, media_dir, content_path):
    from app import create_app

    flask_app = create_app(
        {
            "TESTING": True,
            "WTF_CSRF_ENABLED": False,
            "LOGIN_DISABLED": True,
            "SECRET_KEY": "testes",
            "ADMIN_USERNAME": "admin",
            "ADMIN_PASSWORD": "senha-segura",
            "CONTENT_FILE_PATH": str(content_path),
            "CONTENT_BACKUP_PATH": str(tmp_path / "backups"),
            "MEDIA_FOLDER": str(media_dir),
        }
    )
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()
