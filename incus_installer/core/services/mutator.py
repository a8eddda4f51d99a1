"""
Idempotent mutator — bring host resources to a declared state.

Each ``ensure_*`` call inspects the resource first and only writes
when the desired state does not already hold, so re-running an
install never duplicates sysctl lines, subordinate-ID entries or
environment blocks. File writes are atomic (temp file in the same
directory, then rename).

Every write failure surfaces as ``MutationError(resource, reason)``.
"""

from __future__ import annotations

import filecmp
import logging
import os
import shutil
import tempfile
from pathlib import Path

from incus_installer.core.errors import MutationError
from incus_installer.core.models.mutation import MutationKind, MutationRecord, MutationResult

logger = logging.getLogger(__name__)


def _read_text(path: Path) -> str | None:
    """File content, or None if the file does not exist."""
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as e:
        raise MutationError(str(path), e.strerror or str(e)) from e


def _atomic_write(path: Path, content: str, mode: int | None = None) -> None:
    """Write-to-temp-then-rename so readers never see a partial file."""
    if not path.parent.is_dir():
        raise MutationError(str(path), f"parent directory {path.parent} does not exist")

    if mode is None and path.exists():
        mode = path.stat().st_mode & 0o7777

    try:
        fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
        tmp = Path(tmp_path)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(content)
            tmp.chmod(mode if mode is not None else 0o644)
            tmp.replace(path)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise
    except OSError as e:
        raise MutationError(str(path), e.strerror or str(e)) from e


def _same_copy(source: Path, dest: Path, mode: int | None) -> bool:
    if not dest.is_file() or dest.is_symlink():
        return False
    try:
        if not filecmp.cmp(source, dest, shallow=False):
            return False
        return mode is None or (dest.stat().st_mode & 0o7777) == mode
    except OSError as e:
        raise MutationError(str(dest), e.strerror or str(e)) from e


def _join_lines(lines: list[str]) -> str:
    return "".join(f"{line}\n" for line in lines)


def _block_span(lines: list[str], marker: str) -> tuple[int, int] | None:
    """``(marker_index, end)`` of a marked block; the block ends at a blank line."""
    for start, line in enumerate(lines):
        if line.strip() == marker:
            end = start + 1
            while end < len(lines) and lines[end].strip():
                end += 1
            return start, end
    return None


def _block_body(content: str) -> list[str]:
    return content.rstrip("\n").splitlines()


class IdempotentMutator:
    """Applies ``MutationRecord``s only when they are not yet satisfied."""

    def ensure(self, record: MutationRecord) -> MutationResult:
        handler = {
            MutationKind.LINE: self._ensure_line,
            MutationKind.BLOCK: self._ensure_block,
            MutationKind.FILE: self._ensure_file,
            MutationKind.MAPPING: self._ensure_mapping,
            MutationKind.DIRECTORY: self._ensure_directory,
            MutationKind.SYMLINK: self._ensure_symlink,
            MutationKind.COPY: self._ensure_copy,
        }[record.kind]
        result = handler(record)
        if result.changed:
            logger.info("Updated %s (%s)", record.resource, record.kind.value)
        else:
            logger.debug("Already satisfied: %s (%s)", record.resource, record.kind.value)
        return result

    def is_satisfied(self, record: MutationRecord) -> bool:
        """Whether ``ensure(record)`` would be a no-op. Never writes."""
        path = Path(record.resource)
        if record.kind == MutationKind.DIRECTORY:
            return path.is_dir()
        if record.kind == MutationKind.SYMLINK:
            return path.is_symlink() and os.readlink(path) == record.value
        if record.kind == MutationKind.COPY:
            return _same_copy(Path(record.value), path, record.mode)
        content = _read_text(path)
        if content is None:
            return False
        lines = content.splitlines()
        if record.kind == MutationKind.LINE:
            return any(line.strip() == record.value for line in lines)
        if record.kind == MutationKind.BLOCK:
            span = _block_span(lines, record.key)
            return span is not None and lines[span[0] + 1:span[1]] == _block_body(record.value)
        if record.kind == MutationKind.FILE:
            if content != record.value:
                return False
            return record.mode is None or (path.stat().st_mode & 0o7777) == record.mode
        entries = [line for line in lines if line.startswith(f"{record.key}:")]
        return entries == [f"{record.key}:{record.value}"]

    # ── Convenience constructors ─────────────────────────────────

    def ensure_line(self, path: str | Path, line: str) -> MutationResult:
        return self.ensure(MutationRecord(kind=MutationKind.LINE, resource=str(path), value=line))

    def ensure_block(self, path: str | Path, marker: str, content: str) -> MutationResult:
        return self.ensure(MutationRecord(
            kind=MutationKind.BLOCK, resource=str(path), key=marker, value=content,
        ))

    def ensure_file(self, path: str | Path, content: str, mode: int | None = None) -> MutationResult:
        return self.ensure(MutationRecord(
            kind=MutationKind.FILE, resource=str(path), value=content, mode=mode,
        ))

    def ensure_mapping(self, path: str | Path, key: str, value: str) -> MutationResult:
        return self.ensure(MutationRecord(
            kind=MutationKind.MAPPING, resource=str(path), key=key, value=value,
        ))

    def ensure_directory(self, path: str | Path) -> MutationResult:
        return self.ensure(MutationRecord(kind=MutationKind.DIRECTORY, resource=str(path)))

    def ensure_symlink(self, link: str | Path, target: str) -> MutationResult:
        return self.ensure(MutationRecord(kind=MutationKind.SYMLINK, resource=str(link), value=target))

    def ensure_copy(self, source: str | Path, dest: str | Path, mode: int | None = None) -> MutationResult:
        return self.ensure(MutationRecord(
            kind=MutationKind.COPY, resource=str(dest), value=str(source), mode=mode,
        ))

    # ── Handlers ─────────────────────────────────────────────────

    def _ensure_line(self, record: MutationRecord) -> MutationResult:
        path = Path(record.resource)
        content = _read_text(path)
        lines = content.splitlines() if content is not None else []
        if any(line.strip() == record.value for line in lines):
            return MutationResult(record=record)

        _atomic_write(path, _join_lines(lines + [record.value]))
        return MutationResult(record=record, changed=True, created=content is None)

    def _ensure_block(self, record: MutationRecord) -> MutationResult:
        path = Path(record.resource)
        content = _read_text(path)
        lines = content.splitlines() if content is not None else []
        body = _block_body(record.value)
        span = _block_span(lines, record.key)

        if span is None:
            block = [""] if lines else []
            _atomic_write(path, _join_lines(lines + block + [record.key] + body))
        elif lines[span[0] + 1:span[1]] == body:
            return MutationResult(record=record)
        else:
            start, end = span
            _atomic_write(path, _join_lines(lines[:start + 1] + body + lines[end:]))
        return MutationResult(record=record, changed=True, created=content is None)

    def _ensure_file(self, record: MutationRecord) -> MutationResult:
        path = Path(record.resource)
        content = _read_text(path)
        if content == record.value:
            current_mode = path.stat().st_mode & 0o7777
            if record.mode is None or current_mode == record.mode:
                return MutationResult(record=record)
            try:
                path.chmod(record.mode)
            except OSError as e:
                raise MutationError(str(path), e.strerror or str(e)) from e
            return MutationResult(record=record, changed=True)

        _atomic_write(path, record.value, record.mode)
        return MutationResult(record=record, changed=True, created=content is None)

    def _ensure_mapping(self, record: MutationRecord) -> MutationResult:
        path = Path(record.resource)
        content = _read_text(path)
        lines = content.splitlines() if content is not None else []
        desired = f"{record.key}:{record.value}"
        prefix = f"{record.key}:"

        if [line for line in lines if line.startswith(prefix)] == [desired]:
            return MutationResult(record=record)

        kept = [line for line in lines if not line.startswith(prefix)]
        _atomic_write(path, _join_lines(kept + [desired]))
        return MutationResult(record=record, changed=True, created=content is None)

    def _ensure_directory(self, record: MutationRecord) -> MutationResult:
        path = Path(record.resource)
        if path.is_dir():
            return MutationResult(record=record)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise MutationError(str(path), e.strerror or str(e)) from e
        return MutationResult(record=record, changed=True, created=True)

    def _ensure_symlink(self, record: MutationRecord) -> MutationResult:
        link = Path(record.resource)
        try:
            if link.is_symlink():
                if os.readlink(link) == record.value:
                    return MutationResult(record=record)
                link.unlink()
                existed = True
            elif link.exists():
                raise MutationError(str(link), "exists and is not a symlink")
            else:
                existed = False
            link.symlink_to(record.value)
        except OSError as e:
            raise MutationError(str(link), e.strerror or str(e)) from e
        return MutationResult(record=record, changed=True, created=not existed)

    def _ensure_copy(self, record: MutationRecord) -> MutationResult:
        source = Path(record.value)
        dest = Path(record.resource)
        if not source.is_file():
            raise MutationError(str(dest), f"copy source {source} does not exist")
        if _same_copy(source, dest, record.mode):
            return MutationResult(record=record)

        existed = dest.exists() or dest.is_symlink()
        if not dest.parent.is_dir():
            raise MutationError(str(dest), f"parent directory {dest.parent} does not exist")
        tmp = dest.parent / f".{dest.name}.tmp"
        try:
            shutil.copy2(source, tmp)
            if record.mode is not None:
                tmp.chmod(record.mode)
            tmp.replace(dest)
        except OSError as e:
            tmp.unlink(missing_ok=True)
            raise MutationError(str(dest), e.strerror or str(e)) from e
        return MutationResult(record=record, changed=True, created=not existed)
