import os
import zipfile

import pytest
from conftest import make_archive

from cellar.modules.errors import FetchError, IntegrityError
from cellar.modules.fetch import Fetcher, file_digest, verify_file
from cellar.modules.formula import Checksum


def test_verify_file(tmp_path):
    path = tmp_path / "blob"
    path.write_bytes(b"cellar")
    good = Checksum("sha256", file_digest(str(path)))
    verify_file(str(path), good, "file://blob")
    verify_file(str(path), None, "file://blob")
    with pytest.raises(IntegrityError) as exc:
        verify_file(str(path), Checksum("md5", "0" * 32), "file://blob", formula="core/x")
    assert exc.value.actual == file_digest(str(path), "md5")
    assert exc.value.formula == "core/x"


def test_download_local_path_and_file_url(tmp_path):
    archive, digest = make_archive(tmp_path / "src", "zlib", "1.2.8")
    dest = tmp_path / "dl"
    dest.mkdir()
    fetcher = Fetcher(retries=0, sleep=lambda s: None)
    path = fetcher.download(archive, str(dest), Checksum("sha256", digest))
    assert os.path.basename(path) == "zlib-1.2.8.tar.gz"
    os.remove(path)
    path = fetcher.download("file://" + archive, str(dest), Checksum("sha256", digest))
    assert file_digest(path) == digest


def test_missing_local_file_not_retried(tmp_path):
    sleeps = []
    fetcher = Fetcher(retries=3, sleep=sleeps.append)
    with pytest.raises(FetchError) as exc:
        fetcher.download(str(tmp_path / "nope.tar.gz"), str(tmp_path))
    assert not exc.value.transient
    assert sleeps == []


def test_transient_errors_retried_with_backoff(tmp_path, monkeypatch):
    sleeps = []
    fetcher = Fetcher(retries=3, backoff=0.5, sleep=sleeps.append)
    attempts = []

    def flaky(url, dest, formula):
        attempts.append(url)
        if len(attempts) < 3:
            raise FetchError("connection reset", url=url, formula=formula)
        with open(dest, "wb") as fh:
            fh.write(b"data")

    monkeypatch.setattr(fetcher, "_download_once", flaky)
    path = fetcher.download("https://example.org/pkg.tar.gz", str(tmp_path))
    assert len(attempts) == 3
    assert sleeps == [0.5, 1.0]
    assert os.path.basename(path) == "pkg.tar.gz"


def test_retries_exhausted(tmp_path, monkeypatch):
    sleeps = []
    fetcher = Fetcher(retries=2, backoff=1.0, sleep=sleeps.append)

    def down(url, dest, formula):
        raise FetchError("HTTP 503", url=url)

    monkeypatch.setattr(fetcher, "_download_once", down)
    with pytest.raises(FetchError):
        fetcher.download("https://example.org/pkg.tar.gz", str(tmp_path))
    assert sleeps == [1.0, 2.0]


def test_checksum_mismatch_not_retried(tmp_path):
    archive, _ = make_archive(tmp_path / "src", "zlib", "1.2.8")
    sleeps = []
    fetcher = Fetcher(retries=3, sleep=sleeps.append)
    dest = tmp_path / "dl"
    dest.mkdir()
    with pytest.raises(IntegrityError):
        fetcher.download(archive, str(dest), Checksum("sha256", "f" * 64))
    assert sleeps == []


def test_unpack_tar_enters_single_directory(tmp_path):
    archive, _ = make_archive(tmp_path / "src", "zlib", "1.2.8", {"README": "x", "src/zlib.c": "int x;"})
    out = tmp_path / "out"
    out.mkdir()
    build_dir = Fetcher.unpack(archive, str(out))
    assert build_dir == str(out / "zlib-1.2.8")
    assert os.path.isfile(os.path.join(build_dir, "src", "zlib.c"))


def test_unpack_zip_with_several_entries(tmp_path):
    archive = tmp_path / "pkg.zip"
    with zipfile.ZipFile(str(archive), "w") as zf:
        zf.writestr("a.txt", "a")
        zf.writestr("b/b.txt", "b")
    out = tmp_path / "out"
    out.mkdir()
    assert Fetcher.unpack(str(archive), str(out)) == str(out)
    assert sorted(os.listdir(str(out))) == ["a.txt", "b"]


def test_unpack_plain_file_copied(tmp_path):
    blob = tmp_path / "install.sh"
    blob.write_text("#!/bin/sh\n")
    out = tmp_path / "out"
    out.mkdir()
    assert Fetcher.unpack(str(blob), str(out)) == str(out)
    assert os.listdir(str(out)) == ["install.sh"]
