from pyln.lspsd import download
from pyln.lspsd.download import (
    archive_filename, downloaded_exe_path, exe_path, extract, parse_sha256sums,
    platform_triple, resolve,
)
from pyln.lspsd.errors import (
    DownloadFailed, ExtractionFailed, IntegrityCheckFailed, InvalidConfiguration,
    UnsupportedPlatform,
)
from pyln.lspsd.version import Version

import hashlib
import io
import os
import pytest
import requests
import tarfile
import zipfile

ENDPOINT = "http://releases.invalid/download"
LINUX = "x86_64-unknown-linux-gnu"
MAC = "x86_64-apple-darwin"
EXE = b"#!/bin/sh\necho lspsd 0.1.5\n"


def make_zip(members):
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in members.items():
            zf.writestr(name, content)
    return buf.getvalue()


def make_tgz(members):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for name, content in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = 0o755
            tf.addfile(info, io.BytesIO(content))
    return buf.getvalue()


class FakeReleases(object):
    """Serves release files in place of `download._fetch`"""
    def __init__(self):
        self.files = {}
        self.fetched = []

    def add_release(self, version, triple, archive, listed_digest=None):
        filename = archive_filename(version, triple)
        self.files["{}/{}/{}".format(ENDPOINT, version, filename)] = archive
        digest = listed_digest or hashlib.sha256(archive).hexdigest()
        self.files["{}/{}/SHA256SUMS".format(ENDPOINT, version)] = \
            "{}  {}\n".format(digest, filename).encode()

    def __call__(self, url, timeout=None):
        self.fetched.append(url)
        if url not in self.files:
            raise DownloadFailed(url, "unexpected HTTP status 404")
        return self.files[url]


@pytest.fixture(autouse=True)
def clean_env(tmp_path, monkeypatch):
    for v in ("LSPSD_EXE", "LSPSD_SKIP_DOWNLOAD", "LSPSD_TARBALL_FILE", "LSPSD_ARCHIVE_SHA256"):
        monkeypatch.delenv(v, raising=False)
    monkeypatch.setenv("LSPSD_CACHE_DIR", str(tmp_path / "cache"))


@pytest.fixture
def releases(monkeypatch):
    r = FakeReleases()
    monkeypatch.setattr(download, "_fetch", r)
    return r


def test_platform_triple():
    assert platform_triple("Linux", "x86_64") == LINUX
    assert platform_triple("Linux", "AMD64") == LINUX
    assert platform_triple("Darwin", "arm64") == "aarch64-apple-darwin"
    assert platform_triple("Windows", "AMD64") == "x86_64-pc-windows-msvc"

    with pytest.raises(UnsupportedPlatform):
        platform_triple("FreeBSD", "x86_64")
    with pytest.raises(UnsupportedPlatform):
        platform_triple("Linux", "riscv64")


def test_archive_filename():
    assert archive_filename("0.1.5", LINUX) == "lspsd-0.1.5-x86_64-unknown-linux-gnu.zip"
    assert archive_filename("0.1.5", MAC) == "lspsd-0.1.5-x86_64-apple-darwin.zip"
    with pytest.raises(UnsupportedPlatform):
        archive_filename("0.1.5", "sparc-sun-solaris")


def test_resolve_unsupported_platform(releases):
    with pytest.raises(UnsupportedPlatform):
        resolve("0.1.5", platform="sparc-sun-solaris", endpoint=ENDPOINT)
    assert releases.fetched == []


def test_parse_sha256sums():
    text = "AB12  lspsd-0.1.5-a.zip\ncd34 *lspsd-0.1.5-b.tar.gz\n\ngarbage\n"
    assert parse_sha256sums(text) == {
        "lspsd-0.1.5-a.zip": "ab12",
        "lspsd-0.1.5-b.tar.gz": "cd34",
    }


def test_resolve_downloads_and_caches(releases):
    releases.add_release("0.1.5", LINUX, make_zip({"lspsd-0.1.5/lspsd": EXE, "README": b"hi"}))

    path = resolve("v0.1.5", platform=LINUX, endpoint=ENDPOINT)
    assert path == downloaded_exe_path("0.1.5", LINUX)
    with open(path, "rb") as f:
        assert f.read() == EXE
    assert os.access(path, os.X_OK)
    assert len(releases.fetched) == 2

    # Cached now, no further requests
    assert resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT) == path
    assert len(releases.fetched) == 2

    # Nothing but the executable is left in the cache directory
    assert os.listdir(os.path.dirname(path)) == ["lspsd"]


def test_resolve_tarball_file_tar_gz(releases, monkeypatch, tmp_path):
    tarball = tmp_path / "lspsd_0.1.5_aarch64-apple-darwin.tar.gz"
    tarball.write_bytes(make_tgz({"lspsd": EXE}))
    monkeypatch.setenv("LSPSD_TARBALL_FILE", str(tarball))

    path = resolve("0.1.5", platform=MAC, endpoint=ENDPOINT)
    assert releases.fetched == []
    with open(path, "rb") as f:
        assert f.read() == EXE


def test_resolve_checksum_mismatch(releases):
    releases.add_release("0.1.5", LINUX, make_zip({"lspsd": EXE}), listed_digest="00" * 32)

    with pytest.raises(IntegrityCheckFailed) as e:
        resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)
    assert e.value.expected == "00" * 32

    # Nothing was installed
    assert not os.path.exists(downloaded_exe_path("0.1.5", LINUX))


def test_resolve_unlisted_archive(releases):
    releases.add_release("0.1.5", LINUX, make_zip({"lspsd": EXE}))
    releases.files["{}/0.1.5/SHA256SUMS".format(ENDPOINT)] = b""

    with pytest.raises(IntegrityCheckFailed):
        resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)
    assert not os.path.exists(downloaded_exe_path("0.1.5", LINUX))


def test_resolve_explicit_sha256(releases):
    archive = make_zip({"lspsd": EXE})
    releases.add_release("0.1.5", LINUX, archive, listed_digest="00" * 32)

    path = resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT,
                   sha256=hashlib.sha256(archive).hexdigest().upper())
    assert os.path.exists(path)
    # The SHA256SUMS file wasn't needed
    assert not any(u.endswith("SHA256SUMS") for u in releases.fetched)


def test_resolve_missing_member(releases):
    releases.add_release("0.1.5", LINUX, make_zip({"bin/other": EXE}))

    with pytest.raises(ExtractionFailed):
        resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)
    assert not os.path.exists(downloaded_exe_path("0.1.5", LINUX))


def test_extract_malformed():
    with pytest.raises(ExtractionFailed):
        extract(b"this is not a zip file", "lspsd.zip", "lspsd")
    with pytest.raises(ExtractionFailed):
        extract(b"this is not a tarball", "lspsd.tar.gz", "lspsd")
    with pytest.raises(ExtractionFailed):
        extract(make_zip({"lspsd": EXE}), "lspsd.rar", "lspsd")


def test_resolve_missing_release(releases):
    with pytest.raises(DownloadFailed):
        resolve("9.9.9", platform=LINUX, endpoint=ENDPOINT)


def test_fetch_errors(monkeypatch):
    def unreachable(url, timeout=None):
        raise requests.ConnectionError("connection refused")
    monkeypatch.setattr(download.requests, "get", unreachable)
    with pytest.raises(DownloadFailed):
        download._fetch("http://releases.invalid/x")

    class NotFound(object):
        status_code = 404
        content = b"Not Found"
    monkeypatch.setattr(download.requests, "get", lambda url, timeout=None: NotFound())
    with pytest.raises(DownloadFailed) as e:
        download._fetch("http://releases.invalid/x")
    assert "404" in str(e.value)


def test_resolve_skip_download(releases, monkeypatch):
    releases.add_release("0.1.5", LINUX, make_zip({"lspsd": EXE}))
    monkeypatch.setenv("LSPSD_SKIP_DOWNLOAD", "1")

    with pytest.raises(DownloadFailed):
        resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)
    assert releases.fetched == []


def test_resolve_tarball_file(releases, monkeypatch, tmp_path):
    archive = make_zip({"lspsd": EXE})
    tarball = tmp_path / archive_filename("0.1.5", LINUX)
    tarball.write_bytes(archive)
    monkeypatch.setenv("LSPSD_TARBALL_FILE", str(tarball))

    path = resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)
    with open(path, "rb") as f:
        assert f.read() == EXE
    assert releases.fetched == []


def test_resolve_tarball_file_digest(releases, monkeypatch, tmp_path):
    tarball = tmp_path / "lspsd.zip"
    tarball.write_bytes(make_zip({"lspsd": EXE}))
    monkeypatch.setenv("LSPSD_TARBALL_FILE", str(tarball))
    monkeypatch.setenv("LSPSD_ARCHIVE_SHA256", "00" * 32)

    with pytest.raises(IntegrityCheckFailed):
        resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)


def test_resolve_explicit_path(tmp_path, releases):
    exe = tmp_path / "lspsd"
    exe.write_bytes(EXE)
    exe.chmod(0o755)
    assert resolve(explicit_path=str(exe)) == str(exe)

    with pytest.raises(InvalidConfiguration):
        resolve(explicit_path=str(tmp_path / "missing"))

    exe.chmod(0o644)
    with pytest.raises(InvalidConfiguration):
        resolve(explicit_path=str(exe))
    assert releases.fetched == []


def test_exe_path_env(tmp_path, monkeypatch, releases):
    exe = tmp_path / "my-lspsd"
    exe.write_bytes(EXE)
    exe.chmod(0o755)
    monkeypatch.setenv("LSPSD_EXE", str(exe))
    assert exe_path() == str(exe)
    assert releases.fetched == []


def test_exe_path_skip_download_uses_path(tmp_path, monkeypatch, releases):
    bindir = tmp_path / "bin"
    bindir.mkdir()
    exe = bindir / "lspsd"
    exe.write_bytes(EXE)
    exe.chmod(0o755)
    monkeypatch.setenv("PATH", str(bindir))
    monkeypatch.setenv("LSPSD_SKIP_DOWNLOAD", "1")

    assert exe_path("0.1.5") == str(exe)
    assert releases.fetched == []


def test_binary_version(lspsd_exe):
    assert download.binary_version(lspsd_exe) == Version(0, 1, 5)


def test_resolve_release_without_sha256sums(releases, monkeypatch):
    archive = make_zip({"lspsd": EXE})
    releases.add_release("0.1.5", LINUX, archive)
    del releases.files["{}/0.1.5/SHA256SUMS".format(ENDPOINT)]

    with pytest.raises(IntegrityCheckFailed) as e:
        resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)
    assert e.value.expected is None
    assert "no digest" in str(e.value)
    assert not os.path.exists(downloaded_exe_path("0.1.5", LINUX))

    # A digest from the environment is enough
    monkeypatch.setenv("LSPSD_ARCHIVE_SHA256", hashlib.sha256(archive).hexdigest())
    path = resolve("0.1.5", platform=LINUX, endpoint=ENDPOINT)
    with open(path, "rb") as f:
        assert f.read() == EXE
