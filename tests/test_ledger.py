import json

from sitemirror.ledger import DownloadLedger


def test_missing_file_is_empty(tmp_path):
    ledger = DownloadLedger.load(tmp_path / "nope.json")
    assert len(ledger) == 0
    assert not ledger.has("https://ex.com/a.css")


def test_save_and_load(tmp_path):
    path = tmp_path / "out" / ".sitemirror-ledger.json"
    ledger = DownloadLedger()
    ledger.record("https://ex.com/a.css", "a.css")
    ledger.record("https://ex.com/img/b.png", "img/b.webp")
    ledger.save(path)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["downloads"] == {
        "https://ex.com/a.css": "a.css",
        "https://ex.com/img/b.png": "img/b.webp",
    }
    assert data["lastUpdated"].endswith("Z")

    again = DownloadLedger.load(path)
    assert again.get("https://ex.com/img/b.png") == "img/b.webp"
    assert again.has("https://ex.com/a.css")
    assert not list(tmp_path.glob("out/*.tmp"))


def test_corrupt_file_is_empty(tmp_path):
    path = tmp_path / "ledger.json"
    path.write_text("{not json", encoding="utf-8")
    assert len(DownloadLedger.load(path)) == 0

    path.write_text(json.dumps({"lastUpdated": "x"}), encoding="utf-8")
    assert len(DownloadLedger.load(path)) == 0


def test_record_is_idempotent():
    ledger = DownloadLedger()
    first = ledger.record("https://ex.com/a.css", "a.css")
    second = ledger.record("https://ex.com/a.css", "other.css")
    assert second.local_path == first.local_path == "a.css"
    assert ledger.get("https://ex.com/a.css") == "a.css"
    assert len(ledger) == 1


def test_clear():
    ledger = DownloadLedger()
    ledger.record("https://ex.com/a.css", "a.css")
    ledger.clear()
    assert ledger.get("https://ex.com/a.css") is None
    assert list(ledger) == []


def test_save_failure_is_not_fatal(tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x", encoding="utf-8")
    ledger = DownloadLedger()
    ledger.record("https://ex.com/a.css", "a.css")
    # parent is a regular file, so the write fails
    ledger.save(blocker / "ledger.json")
