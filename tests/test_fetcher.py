"""
Tests for the retrying fetcher — retry bounds, source fallback and
partial-artifact cleanup.
"""

import urllib.error
from pathlib import Path

import pytest

from incus_installer.adapters.mock import MockCommandRunner
from incus_installer.core.errors import FetchError, NetworkError
from incus_installer.core.models.fetch import FetchKind, FetchSpec
from incus_installer.core.services.fetcher import RetryingFetcher, discard_partial


class ScriptedDownloader:
    """Fails for URLs in ``failing``; records every attempt."""

    def __init__(self, failing=(), partial=True):
        self.failing = set(failing)
        self.partial = partial
        self.attempts: list[str] = []
        self.seen_existing: list[bool] = []

    def __call__(self, url: str, dest: Path, timeout: int) -> None:
        self.attempts.append(url)
        self.seen_existing.append(dest.exists())
        if url in self.failing:
            if self.partial:
                dest.write_bytes(b"trunc")
            raise urllib.error.URLError("connection reset")
        dest.write_bytes(f"payload:{url}".encode())


def _spec(tmp_path: Path, sources, **kwargs) -> FetchSpec:
    return FetchSpec(sources=sources, destination=tmp_path / "go.tar.gz", **kwargs)


class TestRetryBound:
    def test_exactly_max_retries_per_source(self, tmp_path: Path):
        downloader = ScriptedDownloader(failing={"https://a/go.tgz", "https://b/go.tgz"})
        sleeps: list[float] = []
        fetcher = RetryingFetcher(MockCommandRunner(), downloader=downloader, sleep=sleeps.append)

        with pytest.raises(FetchError) as exc:
            fetcher.fetch(_spec(tmp_path, ["https://a/go.tgz", "https://b/go.tgz"], max_retries=3))

        assert downloader.attempts == ["https://a/go.tgz"] * 3 + ["https://b/go.tgz"] * 3
        assert len(exc.value.attempts) == 6
        assert [a.attempt for a in exc.value.attempts] == [1, 2, 3, 1, 2, 3]
        assert isinstance(exc.value, NetworkError)
        assert exc.value.kind == "fetch"
        assert exc.value.diagnostic == "curl -fsSI https://a/go.tgz"

    def test_constant_delay_only_between_attempts_on_same_source(self, tmp_path: Path):
        downloader = ScriptedDownloader(failing={"https://a", "https://b"})
        sleeps: list[float] = []
        fetcher = RetryingFetcher(MockCommandRunner(), downloader=downloader, sleep=sleeps.append)

        with pytest.raises(FetchError):
            fetcher.fetch(_spec(tmp_path, ["https://a", "https://b"], max_retries=3, delay=2.0))

        assert sleeps == [2.0, 2.0, 2.0, 2.0]

    def test_no_partial_left_after_failure(self, tmp_path: Path):
        downloader = ScriptedDownloader(failing={"https://a"})
        fetcher = RetryingFetcher(MockCommandRunner(), downloader=downloader, sleep=lambda s: None)
        spec = _spec(tmp_path, ["https://a"], max_retries=2)

        with pytest.raises(FetchError):
            fetcher.fetch(spec)

        assert not spec.destination.exists()
        assert downloader.seen_existing == [False, False]


class TestFallback:
    def test_first_success_wins(self, tmp_path: Path):
        downloader = ScriptedDownloader()
        fetcher = RetryingFetcher(MockCommandRunner(), downloader=downloader, sleep=lambda s: None)

        path = fetcher.fetch(_spec(tmp_path, ["https://a", "https://b"]))

        assert downloader.attempts == ["https://a"]
        assert path.read_bytes() == b"payload:https://a"

    def test_moves_to_next_source(self, tmp_path: Path):
        downloader = ScriptedDownloader(failing={"https://go.dev/dl/x"})
        fetcher = RetryingFetcher(MockCommandRunner(), downloader=downloader, sleep=lambda s: None)

        path = fetcher.fetch(_spec(
            tmp_path, ["https://go.dev/dl/x", "https://golang.google.cn/dl/x"], max_retries=3,
        ))

        assert downloader.attempts[-1] == "https://golang.google.cn/dl/x"
        assert len(downloader.attempts) == 4
        assert path.read_bytes() == b"payload:https://golang.google.cn/dl/x"

    def test_stale_destination_discarded_before_first_attempt(self, tmp_path: Path):
        dest = tmp_path / "go.tar.gz"
        dest.write_bytes(b"old partial")
        downloader = ScriptedDownloader()
        fetcher = RetryingFetcher(MockCommandRunner(), downloader=downloader, sleep=lambda s: None)

        fetcher.fetch(_spec(tmp_path, ["https://a"]))

        assert downloader.seen_existing == [False]


class TestGitClone:
    def test_clone_retries_and_cleans_partial_tree(self, tmp_path: Path):
        runner = MockCommandRunner()
        dest = tmp_path / "incus"
        calls = {"n": 0}

        def flaky_clone(cmd):
            calls["n"] += 1
            Path(cmd[-1]).mkdir(parents=True, exist_ok=True)
            (Path(cmd[-1]) / "half").write_text("x")
            if calls["n"] < 3:
                runner.set_failure("git clone", stderr="fatal: early EOF\n")
            else:
                runner.clear("git clone")

        runner.on("git clone", flaky_clone)
        fetcher = RetryingFetcher(runner, sleep=lambda s: None)

        path = fetcher.fetch(FetchSpec(
            sources=["https://github.com/lxc/incus"], destination=dest, kind=FetchKind.GIT,
        ))

        assert path == dest
        assert runner.calls.count(f"git clone --depth 1 https://github.com/lxc/incus {dest}") == 3
        assert dest.is_dir()

    def test_clone_failure_diagnostic(self, tmp_path: Path):
        runner = MockCommandRunner()
        runner.set_failure("git clone", stderr="fatal: unable to access\n")
        fetcher = RetryingFetcher(runner, sleep=lambda s: None)

        with pytest.raises(FetchError) as exc:
            fetcher.fetch(FetchSpec(
                sources=["https://github.com/lxc/incus"],
                destination=tmp_path / "incus",
                kind=FetchKind.GIT,
                max_retries=2,
            ))

        assert exc.value.attempts[-1].error == "fatal: unable to access"
        assert exc.value.diagnostic == "git ls-remote https://github.com/lxc/incus"

    def test_clone_without_directory_is_failure(self, tmp_path: Path):
        fetcher = RetryingFetcher(MockCommandRunner(), sleep=lambda s: None)
        with pytest.raises(FetchError):
            fetcher.fetch(FetchSpec(
                sources=["https://github.com/lxc/incus"],
                destination=tmp_path / "incus",
                kind=FetchKind.GIT,
                max_retries=1,
            ))


class TestDiscardPartial:
    def test_file_and_tree(self, tmp_path: Path):
        f = tmp_path / "a.tar.gz"
        f.write_text("x")
        d = tmp_path / "tree"
        (d / "sub").mkdir(parents=True)
        discard_partial(f)
        discard_partial(d)
        discard_partial(tmp_path / "missing")
        assert not f.exists()
        assert not d.exists()
