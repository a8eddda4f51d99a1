"""
Tests for preseed generation and storage path preparation.
"""

from pathlib import Path

import pytest
import yaml

from incus_installer.core.errors import MutationError
from incus_installer.core.models.config import DEFAULT_STORAGE_PATH, InstallationConfig
from incus_installer.core.services.mutator import IdempotentMutator
from incus_installer.core.services.preseed import generate, prepare_storage_path, render_preseed


class TestGenerate:
    def test_deterministic(self):
        config = InstallationConfig(storage_path="/srv/incus")
        assert render_preseed(generate(config)) == render_preseed(generate(config))

    def test_document_shape(self):
        data = yaml.safe_load(render_preseed(generate(InstallationConfig())))

        assert list(data) == ["config", "networks", "storage_pools", "profiles", "cluster"]
        assert data["config"] == {}
        assert data["cluster"] is None
        assert data["networks"] == [{
            "config": {"ipv4.address": "auto", "ipv6.address": "auto"},
            "description": "",
            "name": "incusbr0",
            "type": "bridge",
        }]
        assert data["storage_pools"] == [{
            "config": {"source": DEFAULT_STORAGE_PATH},
            "description": "",
            "name": "default",
            "driver": "dir",
        }]
        assert data["profiles"] == [{
            "config": {},
            "description": "",
            "devices": {
                "eth0": {"name": "eth0", "network": "incusbr0", "type": "nic"},
                "root": {"path": "/", "pool": "default", "type": "disk"},
            },
            "name": "default",
        }]

    def test_custom_bridge_and_pool(self):
        doc = generate(InstallationConfig(bridge_name="br-lab", pool_name="fast"))
        assert doc.networks[0].name == "br-lab"
        assert doc.profiles[0].devices["eth0"]["network"] == "br-lab"
        assert doc.profiles[0].devices["root"]["pool"] == "fast"
        assert doc.storage_pools[0].name == "fast"

    def test_cluster_rendered_as_null(self):
        assert "cluster: null" in render_preseed(generate(InstallationConfig()))


class TestPrepareStoragePath:
    def _config(self, root: Path, path: str = DEFAULT_STORAGE_PATH) -> InstallationConfig:
        return InstallationConfig(root=str(root), storage_path=path)

    def test_empty_target_used_directly(self, tmp_path: Path):
        config = self._config(tmp_path)
        resolved = prepare_storage_path(config, IdempotentMutator())

        assert resolved == DEFAULT_STORAGE_PATH
        assert config.host_path(DEFAULT_STORAGE_PATH).is_dir()
        doc = generate(config.model_copy(update={"storage_path": resolved}))
        assert doc.storage_pools[0].config["source"] == "/var/lib/incus/storage-pools/default"
        assert doc.networks[0].name == "incusbr0"

    def test_existing_empty_directory(self, tmp_path: Path):
        config = self._config(tmp_path, "/srv/pool")
        config.host_path("/srv/pool").mkdir(parents=True)
        assert prepare_storage_path(config, IdempotentMutator()) == "/srv/pool"

    def test_populated_target_derives_subdirectory(self, tmp_path: Path):
        config = self._config(tmp_path, "/srv/pool")
        target = config.host_path("/srv/pool")
        target.mkdir(parents=True)
        (target / "existing.img").write_text("data")

        resolved = prepare_storage_path(config, IdempotentMutator())

        assert resolved == "/srv/pool/incus"
        assert (target / "incus").is_dir()
        assert (target / "existing.img").read_text() == "data"
        doc = generate(config.model_copy(update={"storage_path": resolved}))
        assert doc.storage_pools[0].config["source"] == "/srv/pool/incus"

    def test_populated_subdirectory_refused(self, tmp_path: Path):
        config = self._config(tmp_path, "/srv/pool")
        sub = config.host_path("/srv/pool/incus")
        sub.mkdir(parents=True)
        (sub / "containers").mkdir()

        with pytest.raises(MutationError) as exc:
            prepare_storage_path(config, IdempotentMutator())
        assert exc.value.resource == "/srv/pool/incus"

    def test_file_in_place_of_directory(self, tmp_path: Path):
        config = self._config(tmp_path, "/srv/pool")
        config.host_path("/srv").mkdir()
        config.host_path("/srv/pool").write_text("oops")

        with pytest.raises(MutationError, match="not a directory"):
            prepare_storage_path(config, IdempotentMutator())
