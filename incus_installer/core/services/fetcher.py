"""
Retrying fetcher — downloads and clones with bounded retries.

Sources are tried in preference order. Each source gets up to
``max_retries`` attempts separated by a constant ``delay``; the
first success wins. Whatever an earlier attempt left at the
destination is removed before the next attempt, so a truncated
tarball or a half-cloned tree is never reused.
"""

from __future__ import annotations

import logging
import shutil
import time
import urllib.error
import urllib.request
from collections.abc import Callable
from pathlib import Path

from incus_installer.adapters.base import CommandRunner
from incus_installer.core.errors import FetchError
from incus_installer.core.models.fetch import FetchAttempt, FetchKind, FetchSpec

logger = logging.getLogger(__name__)

_USER_AGENT = "incus-installer/0.1"
_CHUNK = 64 * 1024

# (url, destination, timeout) -> None; raises on failure
Downloader = Callable[[str, Path, int], None]


def http_download(url: str, dest: Path, timeout: int) -> None:
    """Stream ``url`` into ``dest``."""
    req = urllib.request.Request(url, headers={"User-Agent": _USER_AGENT})
    with urllib.request.urlopen(req, timeout=timeout) as resp, dest.open("wb") as f:
        while True:
            chunk = resp.read(_CHUNK)
            if not chunk:
                break
            f.write(chunk)


def discard_partial(path: Path) -> None:
    """Remove whatever a failed attempt left at ``path``."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.is_dir():
        shutil.rmtree(path, ignore_errors=True)


class RetryingFetcher:
    """Fetch an artifact from the first source that works."""

    def __init__(
        self,
        runner: CommandRunner,
        *,
        downloader: Downloader | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._runner = runner
        self._download = downloader or http_download
        self._sleep = sleep

    def fetch(self, spec: FetchSpec) -> Path:
        """Fetch ``spec`` and return the local path.

        Raises:
            FetchError: every source exhausted its retries.
        """
        attempts: list[FetchAttempt] = []
        dest = spec.destination

        for source in spec.sources:
            for n in range(1, spec.max_retries + 1):
                discard_partial(dest)
                logger.info("Fetching %s from %s (attempt %d/%d)",
                            spec.display, source, n, spec.max_retries)
                error = self._attempt(spec, source)
                attempts.append(FetchAttempt(source=source, attempt=n, ok=not error, error=error))

                if not error:
                    logger.info("Fetched %s from %s", spec.display, source)
                    return dest

                logger.warning("Fetch of %s from %s failed (%d/%d): %s",
                               spec.display, source, n, spec.max_retries, error)
                discard_partial(dest)
                if n < spec.max_retries and spec.delay:
                    self._sleep(spec.delay)

        raise FetchError(
            spec,
            attempts,
            diagnostic=f"curl -fsSI {spec.sources[0]}" if spec.kind == FetchKind.HTTP
            else f"git ls-remote {spec.sources[0]}",
        )

    def _attempt(self, spec: FetchSpec, source: str) -> str:
        """Run one attempt; return an error string, empty on success."""
        if spec.kind == FetchKind.GIT:
            result = self._runner.run(
                ["git", "clone", "--depth", "1", source, str(spec.destination)],
                timeout=max(spec.timeout, 600),
            )
            if not result.ok:
                return result.stderr.strip().splitlines()[-1] if result.stderr.strip() else result.error
            if not spec.destination.is_dir():
                return "clone reported success but produced no directory"
            return ""

        try:
            spec.destination.parent.mkdir(parents=True, exist_ok=True)
            self._download(source, spec.destination, spec.timeout)
        except (urllib.error.URLError, OSError, ValueError) as e:
            return str(e)
        if not spec.destination.is_file():
            return "download produced no file"
        return ""
