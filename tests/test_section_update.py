import io
import itertools
import json
import multiprocessing
import re
import time

import portalocker
import pytest
from werkzeug.datastructures import FileStorage

import section_update
from content_store import ContentReadError, ContentWriteError
from section_update import (
    FileTooLarge,
    MalformedRequest,
    SectionUpdater,
    UnsupportedFileType,
    UpdateFailed,
    UploadedImage,
    content_updated,
    lock_path_for,
    page_path,
    parse_section_data,
    update_section_content,
)


@pytest.fixture
def events():
    return []


@pytest.fixture
def updater(content_path, media_dir, events):
    return SectionUpdater(content_path, media_dir, invalidate=events.append)


def _png(field_key="image1", filename="photo.png", data=b"\x89PNG-new"):
    return UploadedImage(field_key=field_key, filename=filename, content_type="image/png", data=data)


def test_text_edit_keeps_images(write_document, read_document, updater, events):
    write_document({"home": {"section1": {"title": "Hi", "image1": "pic"}}})

    updated = updater.update("home", "section1", {"title": "Hello"})

    assert updated == {"title": "Hello", "image1": "pic"}
    assert read_document() == {"home": {"section1": {"title": "Hello", "image1": "pic"}}}
    assert events == ["/", "/admin"]


def test_clearing_image_moves_file_to_shadow(write_document, read_document, updater, media_dir):
    write_document({"home": {"section1": {"title": "Hi", "image1": "pic"}}})
    (media_dir / "pic.png").write_bytes(b"old")

    updated = updater.update("home", "section1", {"title": "Hi", "image1": ""})

    assert updated["image1"] == ""
    assert read_document()["home"]["section1"]["image1"] == ""
    assert not (media_dir / "pic.png").exists()
    assert (media_dir / "prev-pic.png").read_bytes() == b"old"


def test_clearing_shared_image_keeps_file(write_document, read_document, updater, media_dir):
    write_document(
        {
            "home": {"section1": {"image1": "logo"}},
            "about": {"section1": {"image2": "logo"}},
        }
    )
    (media_dir / "logo.png").write_bytes(b"logo")

    updater.update("home", "section1", {"image1": ""})

    stored = read_document()
    assert stored["home"]["section1"]["image1"] == ""
    assert stored["about"]["section1"]["image2"] == "logo"
    assert (media_dir / "logo.png").exists()


def test_clearing_image_without_file(write_document, read_document, updater, media_dir):
    write_document({"home": {"section1": {"image1": "ghost"}}})

    updater.update("home", "section1", {"image1": ""})

    assert read_document()["home"]["section1"]["image1"] == ""
    assert list(media_dir.iterdir()) == []


def test_replacement_is_synchronized_across_pages(
    write_document, read_document, updater, media_dir
):
    write_document(
        {
            "home": {"section1": {"title": "Início", "image1": "logo"}},
            "about": {"section1": {"image2": "logo", "image3": "other"}},
        }
    )
    (media_dir / "logo.png").write_bytes(b"old")

    updated = updater.update("home", "section1", {"title": "Início"}, [_png()])

    stored = read_document()
    assert updated["image1"] == "logo_v1"
    assert stored["home"]["section1"]["image1"] == "logo_v1"
    assert stored["about"]["section1"]["image2"] == "logo_v1"
    assert stored["about"]["section1"]["image3"] == "other"
    assert (media_dir / "logo_v1.png").read_bytes() == b"\x89PNG-new"
    # o arquivo antigo fica órfão, nunca é apagado na hora
    assert (media_dir / "logo.png").read_bytes() == b"old"


def test_replacement_of_versioned_image(write_document, read_document, updater, media_dir):
    write_document({"home": {"section1": {"image1": "logo_v2"}}})
    for name in ("logo_v2.png", "logo_v3.jpg"):
        (media_dir / name).write_bytes(b"")

    updater.update("home", "section1", {}, [_png(filename="novo.png")])

    assert read_document()["home"]["section1"]["image1"] == "logo_v4"
    assert (media_dir / "logo_v4.png").exists()


def test_new_image_gets_timestamped_name(write_document, read_document, updater, media_dir):
    write_document({"home": {"section1": {"title": "t", "image1": ""}}})

    updated = updater.update("home", "section1", {}, [_png(filename="Minha Foto.PNG")])

    base_name = updated["image1"]
    assert re.fullmatch(r"\d+-minha_foto", base_name)
    assert read_document()["home"]["section1"]["image1"] == base_name
    assert (media_dir / f"{base_name}.png").exists()


def test_two_uploads_sharing_a_base_name(write_document, read_document, updater, media_dir):
    write_document(
        {
            "home": {"section1": {"image1": "logo", "image2": "logo"}},
            "about": {"section1": {"image1": "logo"}},
        }
    )
    (media_dir / "logo.png").write_bytes(b"")

    updater.update(
        "home",
        "section1",
        {},
        [_png("image1", data=b"one"), _png("image2", data=b"two")],
    )

    stored = read_document()
    assert stored["home"]["section1"] == {"image1": "logo_v1", "image2": "logo_v2"}
    assert stored["about"]["section1"]["image1"] == "logo_v1"
    assert (media_dir / "logo_v1.png").read_bytes() == b"one"
    assert (media_dir / "logo_v2.png").read_bytes() == b"two"


def test_image_values_from_form_are_ignored(write_document, read_document, updater):
    write_document({"home": {"section1": {"image1": "pic"}}})

    updater.update("home", "section1", {"image1": "/api/media/../../hack.png"})

    assert read_document()["home"]["section1"]["image1"] == "pic"


def test_upload_wins_over_clear_request(write_document, read_document, updater, media_dir):
    write_document({"home": {"section1": {"image1": "pic"}}})
    (media_dir / "pic.png").write_bytes(b"")

    updater.update("home", "section1", {"image1": ""}, [_png()])

    assert read_document()["home"]["section1"]["image1"] == "pic_v1"
    assert (media_dir / "pic.png").exists()
    assert not (media_dir / "prev-pic.png").exists()


def test_drifted_references_are_normalized(write_document, read_document, updater):
    write_document({"home": {"section1": {"title": "a", "image1": "/api/media/pic.png"}}})

    updater.update("home", "section1", {"title": "b"})

    assert read_document()["home"]["section1"] == {"title": "b", "image1": "pic"}


def test_new_text_fields_are_added(write_document, read_document, updater):
    write_document({"home": {"section1": {"title": "a"}}})

    updater.update("home", "section1", {"subtitle": "novo", "count": None})

    assert read_document()["home"]["section1"] == {"title": "a", "subtitle": "novo", "count": ""}


def test_file_too_large(write_document, read_document, content_path, media_dir):
    document = {"home": {"section1": {"image1": ""}}}
    write_document(document)
    updater = SectionUpdater(content_path, media_dir, max_image_size=4, invalidate=lambda _p: None)

    with pytest.raises(FileTooLarge):
        updater.update("home", "section1", {}, [_png(data=b"12345")])

    assert list(media_dir.iterdir()) == []
    assert read_document() == document


def test_unsupported_file_type(write_document, updater, media_dir):
    write_document({"home": {"section1": {"image1": ""}}})
    upload = UploadedImage("image1", "notes.txt", "text/plain", b"texto")

    with pytest.raises(UnsupportedFileType):
        updater.update("home", "section1", {}, [upload])

    assert list(media_dir.iterdir()) == []


@pytest.mark.parametrize(
    "uploads",
    [
        [_png(field_key="title")],
        [_png(), _png()],
        [_png(filename="")],
    ],
)
def test_malformed_uploads(write_document, updater, media_dir, uploads):
    write_document({"home": {"section1": {"title": "", "image1": ""}}})

    with pytest.raises(MalformedRequest):
        updater.update("home", "section1", {}, uploads)

    assert list(media_dir.iterdir()) == []


@pytest.mark.parametrize("page_key, section_key", [("contato", "section1"), ("home", "section9")])
def test_unknown_page_or_section(write_document, updater, page_key, section_key):
    write_document({"home": {"section1": {"title": ""}}})

    with pytest.raises(MalformedRequest):
        updater.update(page_key, section_key, {"title": "x"})


def test_unreadable_document_is_not_wrapped(updater):
    with pytest.raises(ContentReadError):
        updater.update("home", "section1", {"title": "x"})


def test_failed_write_rolls_back_files(
    write_document, read_document, updater, media_dir, events, monkeypatch
):
    document = {
        "home": {"section1": {"image1": "logo", "image2": "pic"}},
        "about": {"section1": {"image1": "logo"}},
    }
    write_document(document)
    (media_dir / "logo.png").write_bytes(b"logo")
    (media_dir / "pic.png").write_bytes(b"pic")

    def _fail(*_args, **_kwargs):
        raise ContentWriteError("disco cheio")

    monkeypatch.setattr("section_update.save_content", _fail)

    with pytest.raises(UpdateFailed) as excinfo:
        updater.update("home", "section1", {"image2": ""}, [_png()])

    assert "disco cheio" in excinfo.value.reason
    assert sorted(p.name for p in media_dir.iterdir()) == ["logo.png", "pic.png"]
    assert (media_dir / "pic.png").read_bytes() == b"pic"
    assert read_document() == document
    assert events == []


def test_rollback_failures_do_not_mask_original_error(
    write_document, updater, media_dir, monkeypatch
):
    write_document({"home": {"section1": {"image1": ""}}})

    def _fail_save(*_args, **_kwargs):
        raise ContentWriteError("falha original")

    def _fail_delete(*_args, **_kwargs):
        raise OSError("falha no rollback")

    monkeypatch.setattr("section_update.save_content", _fail_save)
    monkeypatch.setattr("section_update.delete_media_file", _fail_delete)

    with pytest.raises(UpdateFailed) as excinfo:
        updater.update("home", "section1", {}, [_png()])

    assert "falha original" in excinfo.value.reason


def test_timeout_triggers_rollback(write_document, read_document, content_path, media_dir):
    document = {"home": {"section1": {"image1": ""}}}
    write_document(document)
    ticks = itertools.chain([0.0], itertools.repeat(100.0))
    updater = SectionUpdater(
        content_path,
        media_dir,
        timeout=1.0,
        clock=lambda: next(ticks),
        invalidate=lambda _p: None,
    )

    with pytest.raises(UpdateFailed) as excinfo:
        updater.update("home", "section1", {}, [_png()])

    assert excinfo.value.reason == "timeout"
    assert list(media_dir.iterdir()) == []
    assert read_document() == document


def test_invalidation_errors_do_not_fail_update(write_document, read_document, content_path, media_dir):
    write_document({"home": {"section1": {"title": "a"}}})

    def _broken(_path):
        raise RuntimeError("cache fora do ar")

    updater = SectionUpdater(content_path, media_dir, invalidate=_broken)

    assert updater.update("home", "section1", {"title": "b"}) == {"title": "b"}
    assert read_document()["home"]["section1"]["title"] == "b"


def test_default_invalidation_sends_signal(write_document, content_path, media_dir):
    write_document({"about": {"section1": {"title": "a"}}})
    received = []

    def _receiver(_sender, **kwargs):
        received.append(kwargs["path"])

    with content_updated.connected_to(_receiver):
        SectionUpdater(content_path, media_dir).update("about", "section1", {"title": "b"})

    assert received == ["/about", "/admin"]


def test_page_path():
    assert page_path("home") == "/"
    assert page_path("about") == "/about"


@pytest.mark.parametrize("payload", [None, "", "{", "[1, 2]"])
def test_parse_section_data_rejects_bad_payloads(payload):
    with pytest.raises(MalformedRequest):
        parse_section_data(payload)


def test_entry_point_success(write_document, updater):
    write_document({"home": {"section1": {"title": "Hi", "image1": ""}}})
    upload = FileStorage(stream=io.BytesIO(b"gif"), filename="anim.gif", content_type="image/gif")

    result = update_section_content(
        updater, "home", "section1", json.dumps({"title": "Hello"}), [upload], ["image1"]
    )

    assert result.success
    payload = result.to_dict()
    assert payload["message"] == "Seção 'section1' da página 'home' atualizada com sucesso!"
    assert payload["updatedSection"]["title"] == "Hello"
    assert payload["updatedSection"]["image1"].endswith("-anim")


def test_entry_point_count_mismatch(write_document, updater, media_dir):
    write_document({"home": {"section1": {"image1": ""}}})
    upload = FileStorage(stream=io.BytesIO(b"png"), filename="a.png", content_type="image/png")

    result = update_section_content(updater, "home", "section1", "{}", [upload], [])

    assert not result.success
    assert isinstance(result.error, MalformedRequest)
    assert "updatedSection" not in result.to_dict()
    assert list(media_dir.iterdir()) == []


def test_entry_point_ignores_empty_file_inputs(write_document, updater):
    write_document({"home": {"section1": {"title": "a", "image1": "pic"}}})
    empty = FileStorage(stream=io.BytesIO(b""), filename="", content_type="application/octet-stream")

    result = update_section_content(updater, "home", "section1", '{"title": "b"}', [empty], [""])

    assert result.success
    assert result.updated_section == {"title": "b", "image1": "pic"}


def test_entry_point_reports_update_failure(write_document, updater, monkeypatch):
    write_document({"home": {"section1": {"title": "a"}}})

    def _fail(*_args, **_kwargs):
        raise ContentWriteError("sem permissão")

    monkeypatch.setattr("section_update.save_content", _fail)

    result = update_section_content(updater, "home", "section1", '{"title": "b"}')

    assert not result.success
    assert isinstance(result.error, UpdateFailed)
    assert result.message == "Falha ao atualizar a seção 'section1'. Motivo: sem permissão"


def test_two_new_images_with_same_filename(
    write_document, read_document, updater, media_dir, monkeypatch
):
    write_document({"home": {"section1": {"image1": "", "image2": ""}}})
    monkeypatch.setattr("filenames.time.time", lambda: 1700000000.0)

    updater.update(
        "home",
        "section1",
        {},
        [_png("image1", data=b"um"), _png("image2", data=b"dois")],
    )

    stored = read_document()["home"]["section1"]
    assert stored == {"image1": "1700000000000-photo", "image2": "1700000000000-photo-2"}
    assert (media_dir / "1700000000000-photo.png").read_bytes() == b"um"
    assert (media_dir / "1700000000000-photo-2.png").read_bytes() == b"dois"


def test_new_image_name_skips_existing_files(
    write_document, read_document, updater, media_dir, monkeypatch
):
    write_document({"home": {"section1": {"image1": ""}}})
    (media_dir / "1700000000000-photo.jpg").write_bytes(b"outro")
    monkeypatch.setattr("filenames.time.time", lambda: 1700000000.0)

    updater.update("home", "section1", {}, [_png()])

    assert read_document()["home"]["section1"]["image1"] == "1700000000000-photo-2"
    assert (media_dir / "1700000000000-photo.jpg").read_bytes() == b"outro"


def test_declared_type_decides_extension(write_document, read_document, updater, media_dir):
    write_document({"home": {"section1": {"image1": ""}}})
    upload = UploadedImage("image1", "desenho.svg", "image/png", b"\x89PNG")

    updater.update("home", "section1", {}, [upload])

    base_name = read_document()["home"]["section1"]["image1"]
    assert [p.name for p in media_dir.iterdir()] == [f"{base_name}.png"]


def test_clearing_image_keeps_older_shadow(write_document, read_document, updater, media_dir):
    write_document({"home": {"section1": {"image1": "pic"}}})
    (media_dir / "pic.png").write_bytes(b"atual")
    (media_dir / "prev-pic.png").write_bytes(b"antiga")

    updater.update("home", "section1", {"image1": ""})

    assert (media_dir / "prev-pic.png").read_bytes() == b"antiga"
    assert (media_dir / "prev-pic-2.png").read_bytes() == b"atual"
    assert not (media_dir / "pic.png").exists()


def test_rollback_restores_image_next_to_older_shadow(
    write_document, read_document, updater, media_dir, monkeypatch
):
    document = {"home": {"section1": {"image1": "pic"}}}
    write_document(document)
    (media_dir / "pic.png").write_bytes(b"atual")
    (media_dir / "prev-pic.png").write_bytes(b"antiga")

    def _fail(*_args, **_kwargs):
        raise ContentWriteError("disco cheio")

    monkeypatch.setattr("section_update.save_content", _fail)

    with pytest.raises(UpdateFailed):
        updater.update("home", "section1", {"image1": ""})

    assert sorted(p.name for p in media_dir.iterdir()) == ["pic.png", "prev-pic.png"]
    assert (media_dir / "pic.png").read_bytes() == b"atual"
    assert (media_dir / "prev-pic.png").read_bytes() == b"antiga"
    assert read_document() == document


def test_busy_document_times_out(write_document, read_document, content_path, media_dir):
    document = {"home": {"section1": {"title": "a"}}}
    write_document(document)
    updater = SectionUpdater(content_path, media_dir, timeout=0.3, invalidate=lambda _p: None)

    with portalocker.Lock(str(lock_path_for(content_path)), flags=portalocker.LOCK_EX):
        with pytest.raises(UpdateFailed) as excinfo:
            updater.update("home", "section1", {"title": "b"})

    assert excinfo.value.reason == "timeout"
    assert read_document() == document


def _slow_title_update(content_path, media_dir, section_key, title):
    original = section_update.load_content

    def _slow_load(path):
        document = original(path)
        time.sleep(0.4)
        return document

    section_update.load_content = _slow_load
    SectionUpdater(content_path, media_dir, invalidate=lambda _p: None).update(
        "home", section_key, {"title": title}
    )


@pytest.mark.skipif(
    "fork" not in multiprocessing.get_all_start_methods(), reason="requer fork"
)
def test_updates_from_two_processes_are_serialized(
    write_document, read_document, content_path, media_dir
):
    write_document({"home": {"s1": {"title": "a"}, "s2": {"title": "b"}}})
    context = multiprocessing.get_context("fork")
    workers = [
        context.Process(target=_slow_title_update, args=(content_path, media_dir, key, title))
        for key, title in (("s1", "A"), ("s2", "B"))
    ]

    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=30)

    assert [worker.exitcode for worker in workers] == [0, 0]
    stored = read_document()["home"]
    assert (stored["s1"]["title"], stored["s2"]["title"]) == ("A", "B")
