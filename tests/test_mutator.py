"""
Tests for the idempotent mutator — every ensure is a no-op the second time.
"""

import os
from pathlib import Path

import pytest

from incus_installer.core.errors import MutationError
from incus_installer.core.models.mutation import MutationKind, MutationRecord
from incus_installer.core.services.mutator import IdempotentMutator


@pytest.fixture
def mutator() -> IdempotentMutator:
    return IdempotentMutator()


class TestEnsureLine:
    def test_appends_once(self, mutator, tmp_path: Path):
        conf = tmp_path / "sysctl.conf"
        conf.write_text("kernel.panic=10\n")

        first = mutator.ensure_line(conf, "net.ipv4.ip_forward=1")
        second = mutator.ensure_line(conf, "net.ipv4.ip_forward=1")

        assert first.changed
        assert second.skipped
        assert conf.read_text() == "kernel.panic=10\nnet.ipv4.ip_forward=1\n"

    def test_creates_missing_file(self, mutator, tmp_path: Path):
        conf = tmp_path / "sysctl.conf"
        result = mutator.ensure_line(conf, "net.ipv4.ip_forward=1")
        assert result.created
        assert conf.read_text() == "net.ipv4.ip_forward=1\n"

    def test_existing_line_with_whitespace_is_satisfied(self, mutator, tmp_path: Path):
        conf = tmp_path / "sysctl.conf"
        conf.write_text("  net.ipv4.ip_forward=1  \n")
        assert mutator.ensure_line(conf, "net.ipv4.ip_forward=1").skipped

    def test_file_without_trailing_newline(self, mutator, tmp_path: Path):
        conf = tmp_path / "sysctl.conf"
        conf.write_text("a=1")
        mutator.ensure_line(conf, "b=2")
        assert conf.read_text() == "a=1\nb=2\n"

    def test_missing_parent_is_mutation_error(self, mutator, tmp_path: Path):
        with pytest.raises(MutationError) as exc:
            mutator.ensure_line(tmp_path / "nope" / "file.conf", "x=1")
        assert exc.value.resource.endswith("file.conf")
        assert "does not exist" in exc.value.reason

    def test_preserves_mode(self, mutator, tmp_path: Path):
        conf = tmp_path / "subuid"
        conf.write_text("")
        conf.chmod(0o600)
        mutator.ensure_line(conf, "root:100000:65536")
        assert conf.stat().st_mode & 0o777 == 0o600


class TestEnsureMapping:
    def test_replaces_other_entries_for_key(self, mutator, tmp_path: Path):
        subuid = tmp_path / "subuid"
        subuid.write_text("root:1000000:1000000000\nalice:100000:65536\nroot:5:5\n")

        result = mutator.ensure_mapping(subuid, "root", "100000:65536")

        assert result.changed
        assert subuid.read_text() == "alice:100000:65536\nroot:100000:65536\n"

    def test_idempotent(self, mutator, tmp_path: Path):
        subuid = tmp_path / "subuid"
        mutator.ensure_mapping(subuid, "root", "100000:65536")
        content = subuid.read_text()

        again = mutator.ensure_mapping(subuid, "root", "100000:65536")

        assert again.skipped
        assert subuid.read_text() == content
        assert content.count("root:") == 1

    def test_key_prefix_does_not_match_other_users(self, mutator, tmp_path: Path):
        subuid = tmp_path / "subuid"
        subuid.write_text("rootless:200000:65536\n")
        mutator.ensure_mapping(subuid, "root", "100000:65536")
        assert "rootless:200000:65536" in subuid.read_text()


class TestEnsureBlock:
    def test_appends_marked_block_once(self, mutator, tmp_path: Path):
        bashrc = tmp_path / ".bashrc"
        bashrc.write_text("alias ll='ls -l'\n")
        content = 'export CGO_CFLAGS="-I/x"\nexport CGO_LDFLAGS="-L/x"\n'

        assert mutator.ensure_block(bashrc, "# Incus build environment", content).changed
        assert mutator.ensure_block(bashrc, "# Incus build environment", content).skipped

        text = bashrc.read_text()
        assert text.count("# Incus build environment") == 1
        assert text == (
            "alias ll='ls -l'\n\n# Incus build environment\n"
            'export CGO_CFLAGS="-I/x"\nexport CGO_LDFLAGS="-L/x"\n'
        )

    def test_changed_content_replaces_block(self, mutator, tmp_path: Path):
        bashrc = tmp_path / ".bashrc"
        marker = "# Incus build environment"
        mutator.ensure_block(bashrc, marker, 'export CGO_CFLAGS="-I/old/deps"\n')
        bashrc.write_text(bashrc.read_text() + "\nalias ll='ls -l'\n")

        record = MutationRecord(
            kind=MutationKind.BLOCK, resource=str(bashrc), key=marker,
            value='export CGO_CFLAGS="-I/new/deps"\n',
        )
        assert not mutator.is_satisfied(record)
        result = mutator.ensure(record)

        assert result.changed and not result.created
        assert mutator.is_satisfied(record)
        assert bashrc.read_text() == (
            f'{marker}\nexport CGO_CFLAGS="-I/new/deps"\n\nalias ll=\'ls -l\'\n'
        )


class TestEnsureFile:
    def test_writes_content_and_mode(self, mutator, tmp_path: Path):
        unit = tmp_path / "incus.service"
        result = mutator.ensure_file(unit, "[Unit]\n", mode=0o644)
        assert result.created
        assert unit.read_text() == "[Unit]\n"
        assert unit.stat().st_mode & 0o777 == 0o644

    def test_same_content_is_noop(self, mutator, tmp_path: Path):
        unit = tmp_path / "incus.service"
        mutator.ensure_file(unit, "[Unit]\n", mode=0o644)
        mtime = unit.stat().st_mtime_ns
        assert mutator.ensure_file(unit, "[Unit]\n", mode=0o644).skipped
        assert unit.stat().st_mtime_ns == mtime

    def test_mode_only_change(self, mutator, tmp_path: Path):
        profile = tmp_path / "go.sh"
        profile.write_text("export A=1\n")
        profile.chmod(0o600)
        result = mutator.ensure_file(profile, "export A=1\n", mode=0o644)
        assert result.changed and not result.created
        assert profile.stat().st_mode & 0o777 == 0o644

    def test_content_replaced(self, mutator, tmp_path: Path):
        conf = tmp_path / "incus.conf"
        conf.write_text("/opt/lib\n")
        result = mutator.ensure_file(conf, "/usr/local/lib\n")
        assert result.changed and not result.created
        assert conf.read_text() == "/usr/local/lib\n"

    def test_no_temp_files_left(self, mutator, tmp_path: Path):
        mutator.ensure_file(tmp_path / "a.conf", "x\n")
        assert [p.name for p in tmp_path.iterdir()] == ["a.conf"]


class TestEnsureDirectoryAndSymlink:
    def test_directory(self, mutator, tmp_path: Path):
        target = tmp_path / "var" / "lib" / "incus"
        assert mutator.ensure_directory(target).created
        assert target.is_dir()
        assert mutator.ensure_directory(target).skipped

    def test_symlink(self, mutator, tmp_path: Path):
        (tmp_path / "libcowsql.so.0.0.0").write_text("elf")
        link = tmp_path / "libcowsql.so"
        assert mutator.ensure_symlink(link, "libcowsql.so.0.0.0").created
        assert os.readlink(link) == "libcowsql.so.0.0.0"
        assert mutator.ensure_symlink(link, "libcowsql.so.0.0.0").skipped

    def test_symlink_retargeted(self, mutator, tmp_path: Path):
        link = tmp_path / "libraft.so"
        link.symlink_to("libraft.so.1.0.0")
        result = mutator.ensure_symlink(link, "libraft.so.2.0.0")
        assert result.changed and not result.created
        assert os.readlink(link) == "libraft.so.2.0.0"

    def test_symlink_over_regular_file_refused(self, mutator, tmp_path: Path):
        (tmp_path / "libraft.so").write_text("not a link")
        with pytest.raises(MutationError):
            mutator.ensure_symlink(tmp_path / "libraft.so", "libraft.so.2.0.0")


class TestEnsureCopy:
    def test_copy_and_mode(self, mutator, tmp_path: Path):
        src = tmp_path / "incusd.built"
        src.write_bytes(b"ELF incusd")
        dest = tmp_path / "incusd"

        assert mutator.ensure_copy(src, dest, mode=0o755).created
        assert dest.read_bytes() == b"ELF incusd"
        assert dest.stat().st_mode & 0o777 == 0o755
        assert mutator.ensure_copy(src, dest, mode=0o755).skipped

    def test_changed_source_recopied(self, mutator, tmp_path: Path):
        src = tmp_path / "incus.built"
        src.write_bytes(b"v1")
        dest = tmp_path / "incus"
        mutator.ensure_copy(src, dest)
        src.write_bytes(b"v2")
        assert mutator.ensure_copy(src, dest).changed
        assert dest.read_bytes() == b"v2"

    def test_missing_source(self, mutator, tmp_path: Path):
        with pytest.raises(MutationError):
            mutator.ensure_copy(tmp_path / "absent", tmp_path / "dest")


class TestIsSatisfied:
    def test_never_writes(self, mutator, tmp_path: Path):
        conf = tmp_path / "sysctl.conf"
        record = MutationRecord(kind=MutationKind.LINE, resource=str(conf), value="a=1")
        assert not mutator.is_satisfied(record)
        assert not conf.exists()

    def test_matches_ensure(self, mutator, tmp_path: Path):
        record = MutationRecord(
            kind=MutationKind.MAPPING, resource=str(tmp_path / "subgid"),
            key="root", value="100000:65536",
        )
        mutator.ensure(record)
        assert mutator.is_satisfied(record)
