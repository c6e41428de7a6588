import io
import json
from pathlib import Path

import pytest
from werkzeug.datastructures import FileStorage

from media_manager import (
    IMAGE_KIND,
    PARTIAL_MARKER,
    REJECTED_KIND,
    VIDEO_KIND,
    MediaManagerError,
    NotFoundError,
    PayloadTooLarge,
    ValidationError,
    output_name,
    partial_path,
    reconcile_order,
    sanitize_filename,
    sanitize_name,
    strip_staging_prefix,
)


def _storage(name, data=b"data", mimetype="image/jpeg"):
    return FileStorage(stream=io.BytesIO(data), filename=name, content_type=mimetype)


class TestSanitizers:
    def test_folder_names_keep_safe_characters_only(self):
        assert sanitize_name("left-Side_1") == "left-Side_1"
        assert sanitize_name("../etc/passwd") == "etcpasswd"
        assert sanitize_name("a b.c") == "abc"
        assert sanitize_name(None) == ""

    def test_filenames_drop_directories(self):
        assert sanitize_filename("../../secret.txt") == "secret.txt"
        assert sanitize_filename("C:\\Users\\me\\photo 1.JPG") == "photo1.JPG"
        assert sanitize_filename("clip (final).mp4") == "clipfinal.mp4"

    def test_dot_only_filenames_are_rejected(self):
        assert sanitize_filename("..") == ""
        assert sanitize_filename("/tmp/..") == ""
        assert sanitize_filename("") == ""

    def test_output_name_replaces_extension(self):
        assert output_name("holiday.photo.jpeg", ".webp") == "holiday.photo.webp"
        assert output_name("movie.MOV", ".mp4") == "movie.mp4"
        assert output_name(".jpg", ".webp") == "jpg.webp"

    def test_strip_staging_prefix(self):
        assert strip_staging_prefix("1700000000000-clip.mov") == "clip.mov"
        assert strip_staging_prefix("clip.mov") == "clip.mov"

    def test_work_file_marker_never_survives_sanitizing(self):
        assert PARTIAL_MARKER not in sanitize_filename(f"clip{PARTIAL_MARKER}.mp4")
        work = partial_path(Path("/x/1700-clip.mov"), ".mp4")
        assert work.parent == Path("/x")
        assert work.name == f"1700-clip.mov{PARTIAL_MARKER}.mp4"


class TestClassifier:
    def test_routes_by_declared_mime(self, media):
        classifier = media.classifier
        assert classifier.classify("image/jpeg") == IMAGE_KIND
        assert classifier.classify("IMAGE/PNG") == IMAGE_KIND
        assert classifier.classify("video/quicktime") == VIDEO_KIND
        assert classifier.classify("video/mp4; codecs=avc1") == VIDEO_KIND
        assert classifier.classify("application/pdf") == REJECTED_KIND
        assert classifier.classify(None) == REJECTED_KIND

    def test_size_ceilings_are_independent(self, media):
        classifier = media.classifier
        sixty_mb = 60 * 1024 * 1024
        assert classifier.check_file("clip.mp4", "video/mp4", sixty_mb) == VIDEO_KIND
        with pytest.raises(PayloadTooLarge) as excinfo:
            classifier.check_file("photo.jpg", "image/jpeg", sixty_mb)
        assert excinfo.value.status == 413
        assert excinfo.value.code == "FILE_TOO_LARGE"

    def test_disallowed_type_is_validation_error(self, media):
        with pytest.raises(ValidationError) as excinfo:
            media.classifier.check_file("notes.pdf", "application/pdf", 10)
        assert excinfo.value.status == 400

    def test_batch_limit(self, media):
        media.classifier.check_batch(20)
        with pytest.raises(ValidationError):
            media.classifier.check_batch(21)


class TestReconcileOrder:
    def test_saved_order_first_then_rest(self):
        assert reconcile_order(["a", "b", "c"], ["c", "a"]) == ["c", "a", "b"]

    def test_absent_and_duplicate_names_are_skipped(self):
        assert reconcile_order(["a", "b"], ["zz", "b", "b", 7, "a"]) == ["b", "a"]

    def test_non_list_order_is_ignored(self):
        assert reconcile_order(["a", "b"], "b,a") == ["a", "b"]
        assert reconcile_order(["a", "b"], None) == ["a", "b"]


class TestStaging:
    def test_stage_uploads_writes_prefixed_files(self, media):
        staged = media.stage_uploads("left", [_storage("../my photo.jpg", b"abc")])
        assert len(staged) == 1
        item = staged[0]
        assert item.side == "left"
        assert item.kind == IMAGE_KIND
        assert item.original_name == "myphoto.jpg"
        assert item.path.parent == media.staging_path("left")
        assert strip_staging_prefix(item.path.name) == "myphoto.jpg"
        assert item.path.read_bytes() == b"abc"
        assert item.size == 3
        assert item.target_name == "myphoto.webp"

    def test_same_name_twice_gets_distinct_paths(self, media):
        staged = media.stage_uploads("left", [_storage("a.jpg", b"1"), _storage("a.jpg", b"2")])
        assert staged[0].path != staged[1].path
        assert sorted(p.path.read_bytes() for p in staged) == [b"1", b"2"]

    def test_rejected_type_writes_nothing(self, media):
        files = [_storage("ok.jpg"), _storage("bad.exe", mimetype="application/octet-stream")]
        with pytest.raises(ValidationError):
            media.stage_uploads("left", files)
        assert not media.staging_path("left").exists()

    def test_oversize_upload_is_rejected_before_writing(self, media):
        big = b"\0" * (50 * 1024 * 1024 + 1)
        with pytest.raises(PayloadTooLarge):
            media.stage_uploads("left", [_storage("huge.jpg", big)])
        assert not media.staging_path("left").exists()

    def test_empty_batch_and_missing_folder(self, media):
        with pytest.raises(ValidationError):
            media.stage_uploads("left", [])
        with pytest.raises(ValidationError):
            media.stage_uploads("../", [_storage("a.jpg")])


class TestListing:
    def _publish(self, media, side, *names):
        folder = media.ensure_folder(side)
        for name in names:
            (folder / name).write_bytes(b"x")
        return folder

    def test_excludes_staging_thumbnails_and_dotfiles(self, media):
        folder = self._publish(media, "left", "a.webp", "clip.mp4", "clip_thumb.jpg", ".hidden")
        (folder / "subdir").mkdir()
        assert media.list_files("left") == ["a.webp", "clip.mp4"]

    def test_dotted_names_containing_partial_are_listed(self, media):
        self._publish(media, "left", "report.partial.webp", "clip.partial.mp4")
        assert media.list_files("left") == ["clip.partial.mp4", "report.partial.webp"]

    def test_orders_by_saved_file_order(self, media, side_configs):
        self._publish(media, "left", "a.webp", "b.webp", "c.webp")
        side_configs.save("left", {"fileOrder": ["c.webp", "gone.webp", "a.webp"]})
        assert media.list_files("left") == ["c.webp", "a.webp", "b.webp"]

    def test_listing_is_idempotent(self, media, side_configs):
        self._publish(media, "left", "b.webp", "a.webp", "c.mp4")
        side_configs.save("left", {"fileOrder": ["c.mp4"]})
        first = media.list_folder("left")
        assert media.list_folder("left") == first

    def test_corrupt_config_falls_back_to_directory_order(self, media, side_configs):
        self._publish(media, "left", "b.webp", "a.webp")
        path = side_configs.config_path("left")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("{not json", encoding="utf-8")
        assert media.list_files("left") == ["a.webp", "b.webp"]

    def test_missing_folder_lists_empty(self, media):
        assert media.list_folder("nobody") == {"files": [], "processing": []}

    def test_processing_hints_strip_prefix_and_extension(self, media):
        staging = media.ensure_folder("left") / ".processing"
        (staging / "1700000000000-holiday.mov").write_bytes(b"x")
        (staging / "1700000000000-holiday.mov~partial.mp4").write_bytes(b"x")
        (staging / "1700000000001-report.partial.jpg").write_bytes(b"x")
        assert media.processing_hints("left") == ["holiday", "report.partial"]

    def test_listing_requires_folder(self, media):
        with pytest.raises(ValidationError):
            media.list_folder("")


class TestDeletion:
    def test_delete_removes_file_thumbnail_and_config_refs(self, media, side_configs):
        folder = media.ensure_folder("left")
        (folder / "clip.mp4").write_bytes(b"x")
        (folder / "clip_thumb.jpg").write_bytes(b"x")
        side_configs.save(
            "left",
            {"secondsBetweenImages": 5, "fileOrder": ["a.webp", "clip.mp4"], "fullscreenMedia": ["clip.mp4"]},
        )

        media.delete_file("left", "clip.mp4")

        assert not (folder / "clip.mp4").exists()
        assert not (folder / "clip_thumb.jpg").exists()
        saved = json.loads(side_configs.config_path("left").read_text(encoding="utf-8"))
        assert saved == {"secondsBetweenImages": 5, "fileOrder": ["a.webp"], "fullscreenMedia": []}

    def test_delete_without_config_reference_does_not_write(self, media, side_configs):
        folder = media.ensure_folder("left")
        (folder / "a.webp").write_bytes(b"x")
        media.delete_file("left", "a.webp")
        assert not side_configs.config_path("left").exists()

    def test_unchanged_config_is_not_rewritten(self, media, side_configs, monkeypatch):
        folder = media.ensure_folder("left")
        (folder / "a.webp").write_bytes(b"x")
        side_configs.save("left", {"fileOrder": ["b.webp"]})
        writes = []
        monkeypatch.setattr(side_configs, "save", lambda side, data: writes.append(data))
        media.delete_file("left", "a.webp")
        assert writes == []

    def test_image_delete_leaves_similarly_named_thumbnail(self, media):
        folder = media.ensure_folder("left")
        (folder / "a.webp").write_bytes(b"x")
        (folder / "a_thumb.jpg").write_bytes(b"x")
        media.delete_file("left", "a.webp")
        assert (folder / "a_thumb.jpg").exists()

    def test_missing_file_surfaces_as_500(self, media):
        media.ensure_folder("left")
        with pytest.raises(NotFoundError) as excinfo:
            media.delete_file("left", "nope.webp")
        assert excinfo.value.status == 500

    def test_traversal_cannot_escape_folder(self, media, tmp_path):
        outside = media.uploads_dir / "secret.txt"
        media.ensure_folder("left")
        outside.write_text("keep", encoding="utf-8")
        with pytest.raises(NotFoundError):
            media.delete_file("left", "../secret.txt")
        assert outside.exists()

    def test_config_cleanup_failure_is_swallowed(self, media, side_configs, monkeypatch):
        folder = media.ensure_folder("left")
        (folder / "a.webp").write_bytes(b"x")

        def broken(side, filename):
            raise OSError("disk full")

        monkeypatch.setattr(side_configs, "remove_references", broken)
        media.delete_file("left", "a.webp")
        assert not (folder / "a.webp").exists()

    def test_requires_folder_and_filename(self, media):
        with pytest.raises(ValidationError):
            media.delete_file("left", "")
        with pytest.raises(ValidationError):
            media.delete_file("", "a.webp")

    def test_directory_target_fails_without_removal(self, media):
        media.ensure_folder("left")
        with pytest.raises(MediaManagerError) as excinfo:
            media.delete_file("left", ".processing")
        assert excinfo.value.status == 500
        assert media.staging_path("left").is_dir()


class TestRecovery:
    def test_removes_staging_leftovers_and_partials(self, media):
        left = media.ensure_folder("left")
        right = media.ensure_folder("right")
        (left / ".processing" / "1700-a.jpg").write_bytes(b"x")
        (left / ".processing" / "1700-b.mov~partial.mp4").write_bytes(b"x")
        (right / ".processing" / "nested").mkdir()
        (right / "kept.webp").write_bytes(b"x")
        (right / "report.partial.webp").write_bytes(b"x")

        removed = media.recover_staging()

        assert removed == 3
        assert list((left / ".processing").iterdir()) == []
        assert list((right / ".processing").iterdir()) == []
        assert sorted(p.name for p in right.iterdir() if p.is_file()) == ["kept.webp", "report.partial.webp"]
        assert media.list_folder("left") == {"files": [], "processing": []}

    def test_missing_uploads_root_is_not_an_error(self, media):
        assert not media.uploads_dir.exists()
        assert media.recover_staging() == 0
