"""Locate, or download and cache, the `lspsd` executable.

Release archives are published per version and platform at
`{endpoint}/{version}/lspsd-{version}-{triple}.{ext}`, next to a
`SHA256SUMS` file listing the digest of every archive of that release.

Downloaded archives are verified before anything is extracted, and the
extracted executable is moved into the cache with an atomic rename, so
concurrent test processes resolving the same version never observe a
partial binary.
"""
from pyln.lspsd.errors import (
    DownloadFailed, ExtractionFailed, IntegrityCheckFailed,
    InvalidConfiguration, UnsupportedPlatform,
)
from pyln.lspsd.utils import env, DOWNLOAD_ENDPOINT, LSPSD_VERSION
from pyln.lspsd.version import Version

import hashlib
import io
import logging
import os
import platform as _platform
import requests
import shutil
import subprocess
import tarfile
import tempfile
import zipfile

DOWNLOAD_TIMEOUT = int(env("LSPSD_DOWNLOAD_TIMEOUT", 120))

# (system, machine) -> release target triple
TRIPLES = {
    ('linux', 'x86_64'): 'x86_64-unknown-linux-gnu',
    ('linux', 'aarch64'): 'aarch64-unknown-linux-gnu',
    ('darwin', 'x86_64'): 'x86_64-apple-darwin',
    ('darwin', 'aarch64'): 'aarch64-apple-darwin',
    ('windows', 'x86_64'): 'x86_64-pc-windows-msvc',
}

# Releases are zip archives; local archives (LSPSD_TARBALL_FILE) may also be
# gzipped tarballs.
ARCHIVE_EXT = "zip"


def platform_triple(system=None, machine=None):
    """Map the running (or given) platform onto a release target triple"""
    system = (system or _platform.system()).lower()
    machine = (machine or _platform.machine()).lower()
    machine = {
        'amd64': 'x86_64',
        'x86-64': 'x86_64',
        'arm64': 'aarch64',
    }.get(machine, machine)

    triple = TRIPLES.get((system, machine))
    if triple is None:
        raise UnsupportedPlatform("{}/{}".format(system, machine))
    return triple


def executable_name(triple):
    return 'lspsd.exe' if 'windows' in triple else 'lspsd'


def archive_filename(version, triple):
    if triple not in TRIPLES.values():
        raise UnsupportedPlatform(triple)
    return "lspsd-{}-{}.{}".format(version, triple, ARCHIVE_EXT)


def cache_dir():
    d = env("LSPSD_CACHE_DIR")
    if d is not None:
        return d
    base = env("XDG_CACHE_HOME", os.path.join(os.path.expanduser("~"), ".cache"))
    return os.path.join(base, "pyln-lspsd")


def downloaded_exe_path(version=None, triple=None):
    """Where the executable for `version` lives once it has been downloaded"""
    version = str(Version.from_str(version or LSPSD_VERSION))
    triple = triple or platform_triple()
    return os.path.join(cache_dir(), version, triple, executable_name(triple))


def skip_download():
    return env("LSPSD_SKIP_DOWNLOAD") is not None


def _fetch(url, timeout=DOWNLOAD_TIMEOUT):
    logging.debug("Fetching %s", url)
    try:
        resp = requests.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise DownloadFailed(url, e) from e
    if resp.status_code != 200:
        raise DownloadFailed(url, "unexpected HTTP status {}".format(resp.status_code))
    return resp.content


def parse_sha256sums(text):
    """Parse `sha256sum` output into a {filename: digest} dict"""
    sums = {}
    for line in text.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        digest, fname = parts
        sums[fname.lstrip('*').strip()] = digest.lower()
    return sums


def expected_sha256(version, filename, sha256=None, endpoint=None):
    """Digest the archive `filename` must have.

    An explicit `sha256` wins, then `LSPSD_ARCHIVE_SHA256`, then the
    release's `SHA256SUMS`. Returns None if no digest is known, either because
    the release publishes no `SHA256SUMS` or because it doesn't list `filename`.
    """
    if sha256 is not None:
        return sha256.lower()
    if env("LSPSD_ARCHIVE_SHA256") is not None:
        return env("LSPSD_ARCHIVE_SHA256").lower()

    url = "{}/{}/SHA256SUMS".format(endpoint or DOWNLOAD_ENDPOINT, version)
    try:
        text = _fetch(url).decode('utf-8', errors='replace')
    except DownloadFailed as e:
        logging.warning("No digest for %s: %s. Set LSPSD_ARCHIVE_SHA256 to download it.",
                        filename, e)
        return None
    sums = parse_sha256sums(text)
    return sums.get(filename)


def verify(data, expected, archive):
    actual = hashlib.sha256(data).hexdigest()
    if expected is None or actual != expected.lower():
        raise IntegrityCheckFailed(archive, expected, actual)
    logging.debug("Verified %s (sha256 %s)", archive, actual)


def extract(data, archive, exe_name):
    """Return the contents of the `exe_name` member of the archive"""
    try:
        if archive.endswith(".tar.gz") or archive.endswith(".tgz"):
            with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tf:
                for member in tf:
                    if member.isfile() and os.path.basename(member.name) == exe_name:
                        f = tf.extractfile(member)
                        if f is None:
                            break
                        with f:
                            return f.read()
        elif archive.endswith(".zip"):
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                for info in zf.infolist():
                    if not info.is_dir() and os.path.basename(info.filename) == exe_name:
                        return zf.read(info)
        else:
            raise ExtractionFailed("Unknown archive format: {}".format(archive))
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as e:
        raise ExtractionFailed("Malformed archive {}: {}".format(archive, e)) from e

    raise ExtractionFailed("{} not found in {}".format(exe_name, archive))


def install(content, dest):
    """Atomically place `content` at `dest` as an executable file"""
    dirname = os.path.dirname(dest)
    os.makedirs(dirname, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".lspsd-", dir=dirname)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(content)
        os.chmod(tmp, 0o755)
        os.replace(tmp, dest)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return dest


def _check_executable(path):
    if not os.path.isfile(path):
        raise InvalidConfiguration("lspsd executable {} does not exist".format(path))
    if not os.access(path, os.X_OK):
        raise InvalidConfiguration("lspsd executable {} is not executable".format(path))
    return path


def resolve(version=None, platform=None, explicit_path=None, sha256=None,
            endpoint=None):
    """Return the path of an `lspsd` executable for `version` on `platform`.

    An `explicit_path` is only validated, never downloaded. Otherwise the
    cache is consulted and, on a miss, the release archive is fetched (or
    read from `LSPSD_TARBALL_FILE`), verified, extracted and cached.
    """
    if explicit_path is not None:
        return _check_executable(str(explicit_path))

    version = str(Version.from_str(version or LSPSD_VERSION))
    triple = platform or platform_triple()
    filename = archive_filename(version, triple)
    exe_name = executable_name(triple)
    dest = downloaded_exe_path(version, triple)

    if os.path.exists(dest):
        logging.debug("Using cached lspsd %s", dest)
        return dest

    tarball = env("LSPSD_TARBALL_FILE")
    if tarball is not None:
        try:
            with open(tarball, "rb") as f:
                data = f.read()
        except OSError as e:
            raise DownloadFailed(tarball, e) from e
        # Tarballs provided by the environment are checked only if a
        # digest was given for them.
        digest = sha256 or env("LSPSD_ARCHIVE_SHA256")
        if digest is not None:
            verify(data, digest, tarball)
        source = tarball
    elif skip_download():
        raise DownloadFailed(filename, "LSPSD_SKIP_DOWNLOAD is set and {} is not cached".format(dest))
    else:
        url = "{}/{}/{}".format(endpoint or DOWNLOAD_ENDPOINT, version, filename)
        logging.info("Downloading lspsd %s for %s from %s", version, triple, url)
        data = _fetch(url)
        verify(data, expected_sha256(version, filename, sha256, endpoint), filename)
        source = url

    content = extract(data, source, exe_name)
    install(content, dest)
    logging.info("Installed lspsd %s at %s", version, dest)
    return dest


def exe_path(version=None):
    """Returns the `lspsd` executable with the following precedence:

    1) If it's specified in the `LSPSD_EXE` env var
    2) The downloaded (or downloadable) release for `version`
    3) If downloading is disabled, the `lspsd` executable found in `PATH`
    """
    if env("LSPSD_EXE") is not None:
        return resolve(explicit_path=env("LSPSD_EXE"))

    if skip_download() and env("LSPSD_TARBALL_FILE") is None:
        cached = downloaded_exe_path(version)
        if os.path.exists(cached):
            return cached
        which = shutil.which("lspsd")
        if which is not None:
            return which

    return resolve(version)


def binary_version(exe, timeout=10):
    """Run `exe --version` and parse what it reports"""
    out = subprocess.run([exe, "--version"], check=True, timeout=timeout,
                         stdout=subprocess.PIPE, stderr=subprocess.STDOUT).stdout
    return Version.from_str(out.decode('utf-8', errors='replace'))
