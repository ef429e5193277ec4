# cellar/modules/fetch.py
"""
Source and patch retrieval.

 - http(s)/ftp/file URLs through urllib, plain paths copied
 - network failures retried with exponential backoff; checksum mismatches never retried
 - git head sources cloned with GitPython
 - tar and zip archives unpacked; a lone top-level directory is entered
"""

from __future__ import annotations
import hashlib
import os
import shutil
import socket
import tarfile
import time
import urllib.error
import urllib.parse
import urllib.request
import zipfile
from typing import Callable, Optional, Tuple

from git import GitCommandError, Repo

from cellar.modules.config import config
from cellar.modules.errors import FetchError, IntegrityError
from cellar.modules.formula import Checksum, HeadSpec
from cellar.modules import logger as _logger


def file_digest(path: str, algorithm: str = "sha256") -> str:
    h = hashlib.new(algorithm)
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            h.update(chunk)
    return h.hexdigest()


def verify_file(path: str, checksum: Optional[Checksum], url: str, formula: Optional[str] = None):
    if checksum is None:
        return
    actual = file_digest(path, checksum.algorithm)
    if actual != checksum.digest:
        raise IntegrityError(url, checksum.digest, actual, formula=formula)


def _is_transient_http(code: int) -> bool:
    return code >= 500 or code in (408, 429)


class Fetcher:
    def __init__(self, retries: Optional[int] = None, backoff: Optional[float] = None,
                 timeout: Optional[int] = None, sleep: Callable[[float], None] = time.sleep):
        self.retries = retries if retries is not None else config.getint("fetch", "retries", fallback=3)
        self.backoff = backoff if backoff is not None else config.getfloat("fetch", "backoff", fallback=1.0)
        self.timeout = timeout if timeout is not None else config.getint("fetch", "timeout", fallback=60)
        self.sleep = sleep
        self.log = _logger.Logger("fetch")

    # ---------------------------
    # Retry wrapper
    # ---------------------------
    def _with_retries(self, what: str, func, *args, **kwargs):
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except FetchError as e:
                if not e.transient or attempt >= self.retries:
                    raise
                delay = self.backoff * (2 ** attempt)
                attempt += 1
                self.log.warning(f"Fetch of {what} failed ({e}); retry {attempt}/{self.retries} in {delay:.1f}s")
                self.sleep(delay)

    # ---------------------------
    # Plain downloads
    # ---------------------------
    def _download_once(self, url: str, dest: str, formula: Optional[str]):
        parsed = urllib.parse.urlparse(url)
        if not parsed.scheme or len(parsed.scheme) == 1:
            # local path (a one letter scheme is a windows drive)
            src = os.path.expanduser(url)
            if not os.path.isfile(src):
                raise FetchError(f"No such file: {src}", url=url, formula=formula, transient=False)
            shutil.copyfile(src, dest)
            return
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as resp, open(dest, "wb") as out:
                shutil.copyfileobj(resp, out)
        except urllib.error.HTTPError as e:
            raise FetchError(f"HTTP {e.code} fetching {url}", url=url, formula=formula,
                             transient=_is_transient_http(e.code))
        except urllib.error.URLError as e:
            reason = getattr(e, "reason", e)
            transient = not isinstance(reason, FileNotFoundError)
            raise FetchError(f"Could not fetch {url}: {reason}", url=url, formula=formula,
                             transient=transient)
        except (socket.timeout, ConnectionError) as e:
            raise FetchError(f"Network error fetching {url}: {e}", url=url, formula=formula)

    def download(self, url: str, dest_dir: str, checksum: Optional[Checksum] = None,
                 formula: Optional[str] = None) -> str:
        """Download url into dest_dir and verify it. Returns the local file path."""
        basename = os.path.basename(urllib.parse.urlparse(url).path) or "download"
        dest = os.path.join(dest_dir, basename)
        self.log.info(f"Fetching {url}")
        self._with_retries(url, self._download_once, url, dest, formula)
        verify_file(dest, checksum, url, formula=formula)
        return dest

    # ---------------------------
    # Version control
    # ---------------------------
    def _clone_once(self, head: HeadSpec, dest: str, formula: Optional[str]) -> str:
        if os.path.exists(dest):
            shutil.rmtree(dest)
        kwargs = {"depth": 1}
        if head.branch:
            kwargs["branch"] = head.branch
        try:
            repo = Repo.clone_from(head.url, dest, **kwargs)
        except GitCommandError as e:
            raise FetchError(f"git clone of {head.url} failed: {e.stderr or e}", url=head.url,
                             formula=formula)
        return repo.head.commit.hexsha

    def clone(self, head: HeadSpec, dest: str, formula: Optional[str] = None) -> str:
        """Shallow-clone head into dest; returns the checked out commit."""
        self.log.info(f"Cloning {head.url} ({head.branch or 'default branch'})")
        return self._with_retries(head.url, self._clone_once, head, dest, formula)

    # ---------------------------
    # Archives
    # ---------------------------
    @staticmethod
    def unpack(archive: str, dest_dir: str) -> str:
        """Unpack archive into dest_dir; return the directory the build should run in."""
        if tarfile.is_tarfile(archive):
            with tarfile.open(archive) as tar:
                if hasattr(tarfile, "data_filter"):
                    tar.extractall(dest_dir, filter="data")
                else:
                    tar.extractall(dest_dir)
        elif zipfile.is_zipfile(archive):
            with zipfile.ZipFile(archive) as zf:
                zf.extractall(dest_dir)
        else:
            shutil.copy2(archive, os.path.join(dest_dir, os.path.basename(archive)))
            return dest_dir
        entries = [e for e in os.listdir(dest_dir) if not e.startswith(".")]
        if len(entries) == 1 and os.path.isdir(os.path.join(dest_dir, entries[0])):
            return os.path.join(dest_dir, entries[0])
        return dest_dir

    def fetch_source(self, formula, workspace) -> Tuple[str, Optional[str]]:
        """Fetch, verify and unpack a formula's source. Returns (build_dir, revision)."""
        if formula.source is not None:
            archive = self.download(formula.source.url, workspace.download_dir,
                                    formula.source.checksum, formula=formula.full_name)
            return self.unpack(archive, workspace.src_dir), None
        checkout = os.path.join(workspace.src_dir, formula.name)
        revision = self.clone(formula.head, checkout, formula=formula.full_name)
        return checkout, revision
