import subprocess
from datetime import datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from genie_sync import stamping
from genie_sync.errors import AssetFetchFailure
from genie_sync.stamping import (
    ExiftoolWriter,
    MediaType,
    StampKind,
    apply_stamp,
    classify_media,
    derive_caption,
    plan_stamp,
    prepare_timestamp,
    sidecar_path,
)
from genie_sync.timestamps import Basis, ResolvedTimestamp

LA = ZoneInfo("America/Los_Angeles")


@pytest.fixture
def prepared():
    resolved = ResolvedTimestamp(
        instant=datetime(2024, 3, 1, 18, 0, 5, tzinfo=timezone.utc),
        basis=Basis.ABSOLUTE,
        raw="2024-03-01 18:00:05",
    )
    return prepare_timestamp(resolved, LA)


class RecordingWriter:
    def __init__(self):
        self.calls = []

    def write(self, path, tags):
        self.calls.append(("write", path, dict(tags)))

    def write_sidecar(self, path, tags):
        self.calls.append(("sidecar", path, dict(tags)))
        return sidecar_path(path)


def test_classify_media_by_mime_then_url():
    assert classify_media({"mimeType": "video/mp4"}) is MediaType.VIDEO
    assert classify_media({"type": "image/jpeg"}) is MediaType.IMAGE
    assert classify_media({"public_url": "https://cdn.test/clip.MOV?sig=1"}) is MediaType.VIDEO
    assert classify_media({"public_url": "https://cdn.test/pic.webp"}) is MediaType.IMAGE
    assert classify_media({"public_url": "https://cdn.test/file.pdf"}) is MediaType.UNKNOWN


def test_caption_only_for_activities():
    assert derive_caption({"type": "Activity", "payload": "Painting\n\n  with   friends "}) == "Painting with friends"
    assert derive_caption({"type": "Activity", "description": "Sand table"}) == "Sand table"
    assert derive_caption({"type": "Activity", "payload": {"text": "hi"}}) == '{"text":"hi"}'
    assert derive_caption({"type": "Nap", "payload": "Slept well"}) is None
    assert derive_caption({"type": "Activity", "payload": "   "}) is None


def test_prepare_timestamp_renders_local_wall_clock(prepared):
    assert prepared.exif == "2024:03:01 10:00:05"
    assert prepared.xmp == "2024-03-01T10:00:05-08:00"
    assert prepared.iptc_date == "2024:03:01"
    assert prepared.iptc_time == "10:00:05-08:00"
    assert prepared.file == prepared.xmp


def test_plan_for_video(prepared):
    plan = plan_stamp(Path("clip.mp4"), prepared, "Dance", MediaType.UNKNOWN)
    assert plan.kind is StampKind.VIDEO
    assert plan.embedded["QuickTime:CreateDate"] == "2024:03:01 10:00:05"
    assert plan.embedded["QuickTime:Comment"] == "Dance"
    assert plan.embedded["FileModifyDate"] == "2024-03-01T10:00:05-08:00"
    assert plan.sidecar == {}


def test_plan_for_rich_raster(prepared):
    plan = plan_stamp(Path("photo.jpg"), prepared, "Art", MediaType.IMAGE)
    assert plan.kind is StampKind.RICH_RASTER
    assert plan.embedded["AllDates"] == "2024:03:01 10:00:05"
    assert plan.embedded["IPTC:TimeCreated"] == "10:00:05-08:00"
    assert plan.embedded["IPTC:Caption-Abstract"] == "Art"
    assert plan.sidecar == {}


def test_plan_for_limited_raster_adds_sidecar(prepared):
    plan = plan_stamp(Path("shot.PNG"), prepared, None, MediaType.IMAGE)
    assert plan.kind is StampKind.LIMITED_RASTER
    assert plan.embedded["XMP:CreateDate"] == prepared.xmp
    assert "AllDates" not in plan.embedded
    assert plan.sidecar["XMP-photoshop:DateCreated"] == prepared.xmp
    assert "XMP-dc:Description" not in plan.sidecar


def test_plan_for_unknown_file(prepared):
    plan = plan_stamp(Path("blob.bin"), prepared, "Note", MediaType.UNKNOWN)
    assert plan.kind is StampKind.GENERIC
    assert plan.embedded == {"FileModifyDate": prepared.file}
    assert plan.sidecar["XMP-dc:Description"] == "Note"


def test_exiftool_arguments():
    writer = ExiftoolWriter("/usr/bin/exiftool")
    args = writer.build_args(Path("/tmp/a.jpg"), {"AllDates": "2024:03:01 10:00:05", "IPTC:DateCreated": "2024:03:01"})
    assert args == [
        "/usr/bin/exiftool",
        "-overwrite_original",
        "-P",
        "-m",
        "-AllDates=2024:03:01 10:00:05",
        "-IPTC:DateCreated=2024:03:01",
        "/tmp/a.jpg",
    ]
    sidecar_args = writer.build_args(Path("/tmp/a.png"), {"XMP:CreateDate": "x"}, sidecar=True)
    assert sidecar_args[-3:] == ["-o", "%d%f.xmp", "/tmp/a.png"]


def test_generic_files_get_sidecar_before_mtime(prepared):
    writer = RecordingWriter()
    path = Path("blob.bin")
    apply_stamp(writer, path, plan_stamp(path, prepared, None, MediaType.UNKNOWN))
    assert [call[0] for call in writer.calls] == ["sidecar", "write"]


def test_limited_raster_writes_embedded_then_sidecar(prepared):
    writer = RecordingWriter()
    path = Path("shot.webp")
    apply_stamp(writer, path, plan_stamp(path, prepared, None, MediaType.IMAGE))
    assert [call[0] for call in writer.calls] == ["write", "sidecar"]


def test_exiftool_failure_raises(monkeypatch, tmp_path):
    def fake_run(args, **kwargs):
        return subprocess.CompletedProcess(args, 1, stdout="", stderr="Error: not a valid JPG")

    monkeypatch.setattr(stamping.subprocess, "run", fake_run)
    with pytest.raises(AssetFetchFailure) as excinfo:
        ExiftoolWriter().write(tmp_path / "a.jpg", {"AllDates": "x"})
    assert "not a valid JPG" in str(excinfo.value)


def test_missing_exiftool_raises(monkeypatch, tmp_path):
    def fake_run(args, **kwargs):
        raise FileNotFoundError("exiftool")

    monkeypatch.setattr(stamping.subprocess, "run", fake_run)
    with pytest.raises(AssetFetchFailure):
        ExiftoolWriter().write(tmp_path / "a.jpg", {"AllDates": "x"})


def test_write_sidecar_replaces_existing_file(monkeypatch, tmp_path):
    target = tmp_path / "a.png"
    stale = tmp_path / "a.xmp"
    stale.write_text("old")
    seen = []

    def fake_run(args, **kwargs):
        seen.append(stale.exists())
        return subprocess.CompletedProcess(args, 0, stdout="", stderr="")

    monkeypatch.setattr(stamping.subprocess, "run", fake_run)
    assert ExiftoolWriter().write_sidecar(target, {"XMP:CreateDate": "x"}) == stale
    assert seen == [False]
