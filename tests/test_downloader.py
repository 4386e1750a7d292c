from datetime import datetime, timezone

import pytest

from genie_sync.downloader import MediaDownloader, collect_media_entries, destination_filename
from genie_sync.stamping import MediaType, StampKind


class FakeResponse:
    def __init__(self, status_code=200, body=b"", reason="OK"):
        self.status_code = status_code
        self.reason = reason
        self._body = body

    def iter_content(self, chunk_size=1):
        for start in range(0, len(self._body), chunk_size):
            yield self._body[start : start + chunk_size]

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    def get(self, url, stream=False, timeout=None):
        self.calls.append(url)
        return self.responses[url]


class RecordingWriter:
    def __init__(self):
        self.calls = []

    def write(self, path, tags):
        self.calls.append((path.name, dict(tags)))

    def write_sidecar(self, path, tags):
        self.calls.append((path.name + ".xmp", dict(tags)))
        return path.with_suffix(".xmp")


def test_destination_filename_disambiguates(tmp_path):
    reserved = set()
    (tmp_path / "existing.jpg").write_bytes(b"")

    assert destination_filename(tmp_path, "https://cdn.test/a/photo.jpg?sig=1", 0, reserved) == "photo.jpg"
    assert destination_filename(tmp_path, "https://cdn.test/b/photo.jpg", 1, reserved) == "photo-1.jpg"
    assert destination_filename(tmp_path, "https://cdn.test/existing.jpg", 2, reserved) == "existing-1.jpg"
    assert destination_filename(tmp_path, "https://cdn.test/", 3, reserved) == "media-3.bin"
    assert destination_filename(tmp_path, "https://cdn.test/my%20clip.mp4", 4, reserved) == "my clip.mp4"


def test_collect_media_entries_inherits_note_context():
    items = [
        {
            "id": 1,
            "type": "Activity",
            "payload": "Blocks",
            "createAtUtc": "2024-03-01 10:00:00",
            "media": [
                {"public_url": "https://cdn.test/1.jpg"},
                {"publicUrl": "https://cdn.test/2.mp4", "createAtUtc": "2024-03-01 09:00:00"},
                {"note": "no url"},
            ],
        },
        {"id": 2, "payload": "text only"},
    ]

    descriptors = collect_media_entries(items, timezone.utc)

    assert [d.url for d in descriptors] == ["https://cdn.test/1.jpg", "https://cdn.test/2.mp4"]
    assert descriptors[0].timestamp.instant == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert descriptors[1].timestamp.instant == datetime(2024, 3, 1, 9, tzinfo=timezone.utc)
    assert descriptors[1].media_type is MediaType.VIDEO
    assert all(d.caption == "Blocks" for d in descriptors)


def test_run_downloads_and_stamps(tmp_path):
    items = [
        {
            "id": 1,
            "createAtUtc": "2024-03-01 18:00:00",
            "media": [
                {"public_url": "https://cdn.test/a.jpg"},
                {"public_url": "https://cdn.test/missing.jpg"},
            ],
        },
        {"id": 2, "media": [{"public_url": "https://cdn.test/untimed.png"}]},
    ]
    session = FakeSession(
        {
            "https://cdn.test/a.jpg": FakeResponse(body=b"jpeg-bytes"),
            "https://cdn.test/missing.jpg": FakeResponse(status_code=404, reason="Not Found"),
            "https://cdn.test/untimed.png": FakeResponse(body=b"png-bytes"),
        }
    )
    writer = RecordingWriter()
    downloader = MediaDownloader(writer, timezone.utc, session=session, concurrency=2)

    report = downloader.run(items, tmp_path / "ada", label="Ada")

    outdir = tmp_path / "ada"
    assert (outdir / "a.jpg").read_bytes() == b"jpeg-bytes"
    assert (outdir / "untimed.png").read_bytes() == b"png-bytes"
    assert not (outdir / "missing.jpg").exists()
    assert not list(outdir.glob("*.partial"))

    assert sorted(p.name for p in report.succeeded) == ["a.jpg", "untimed.png"]
    assert [url for url, _ in report.failed] == ["https://cdn.test/missing.jpg"]
    assert "404" in report.failed[0][1]
    assert [p.name for p in report.unstamped] == ["untimed.png"]
    assert report.total == 3

    assert len(writer.calls) == 1
    name, tags = writer.calls[0]
    assert name == "a.jpg"
    assert tags["AllDates"] == "2024:03:01 18:00:00"


def test_stamping_failure_is_isolated(tmp_path):
    from genie_sync.errors import AssetFetchFailure

    class FailingWriter(RecordingWriter):
        def write(self, path, tags):
            raise AssetFetchFailure(str(path), "exiftool exited 1")

    items = [
        {"createAtUtc": "2024-03-01 18:00:00", "media": [{"public_url": "https://cdn.test/a.jpg"}]},
        {"createAtUtc": "2024-03-01 18:00:00", "media": [{"public_url": "https://cdn.test/b.mp4"}]},
    ]
    session = FakeSession(
        {
            "https://cdn.test/a.jpg": FakeResponse(body=b"a"),
            "https://cdn.test/b.mp4": FakeResponse(body=b"b"),
        }
    )
    report = MediaDownloader(FailingWriter(), timezone.utc, session=session).run(items, tmp_path)

    assert report.succeeded == []
    assert len(report.failed) == 2
    assert (tmp_path / "a.jpg").exists()


def test_run_with_no_media_does_nothing(tmp_path):
    session = FakeSession({})
    report = MediaDownloader(RecordingWriter(), timezone.utc, session=session).run([{"id": 1}], tmp_path / "x")
    assert report.total == 0
    assert session.calls == []
    assert not (tmp_path / "x").exists()


@pytest.mark.parametrize(
    "url, kind",
    [
        ("https://cdn.test/v.mov", StampKind.VIDEO),
        ("https://cdn.test/p.webp", StampKind.LIMITED_RASTER),
        ("https://cdn.test/f.pdf", StampKind.GENERIC),
    ],
)
def test_stamp_kind_follows_downloaded_file(monkeypatch, tmp_path, url, kind):
    from genie_sync import downloader as downloader_module

    seen = []
    original = downloader_module.apply_stamp

    def spy(writer, path, plan):
        seen.append(plan.kind)
        original(writer, path, plan)

    items = [{"createAtUtc": "2024-03-01 18:00:00", "media": [{"public_url": url}]}]
    session = FakeSession({url: FakeResponse(body=b"x")})
    monkeypatch.setattr(downloader_module, "apply_stamp", spy)

    MediaDownloader(RecordingWriter(), timezone.utc, session=session).run(items, tmp_path)

    assert seen == [kind]
