"""
Unit Tests: Volume directories + {{variable}} substitution
=================================================
Tests:
  1. Id validation and path containment
  2. ensure() / remove() idempotency
  3. Size walks run on the volume pool, off the default executor
  4. directory_size skips symlinks and honours the depth cap
  5. {{primaryPort}} substitution in files; unknown placeholders untouched
  6. Binary files and symlinks are never rewritten
"""

import asyncio
import os
import threading

import pytest

from node_commander.errors import ConfigError
from node_commander.templating import (
    is_binary_file, pipeline_variables, render, substitute_directory,
)
from node_commander.volumes import VolumeManager, directory_size, resolve_inside


# ─── Volumes ──────────────────────────────────────────────

class TestVolumeManager:

    @pytest.mark.parametrize("bad", ["", "..", ".", "../etc", "a/b", "-lead", "sp ace"])
    def test_invalid_ids_rejected(self, volumes, bad):
        with pytest.raises(ConfigError):
            volumes.path_for(bad)

    def test_path_is_derived_from_id(self, tmp_path, volumes):
        assert volumes.path_for("w1") == os.path.realpath(str(tmp_path / "volumes" / "w1"))

    def test_ensure_and_remove_are_idempotent(self, volumes):
        path = volumes.ensure("w1")
        assert volumes.ensure("w1") == path
        assert os.path.isdir(path)
        assert volumes.list_ids() == ["w1"]

        assert volumes.remove("w1") is True
        assert volumes.remove("w1") is False
        assert not volumes.exists("w1")

    def test_resolve_inside_rejects_escape(self, tmp_path):
        with pytest.raises(ConfigError):
            resolve_inside(str(tmp_path), "../outside.sh")
        assert resolve_inside(str(tmp_path), "sub/run.sh").endswith(os.path.join("sub", "run.sh"))

    def test_walks_run_on_volume_pool(self, volumes):
        path = volumes.ensure("w1")
        with open(os.path.join(path, "a.txt"), "w") as f:
            f.write("12345")

        async def scenario():
            thread = await volumes.run_io(lambda: threading.current_thread().name)
            return thread, await volumes.measure("w1")

        thread, size = asyncio.run(scenario())
        assert thread.startswith("volume-io")
        assert size == 5


class TestDirectorySize:

    def test_counts_files_not_symlinks(self, tmp_path):
        (tmp_path / "a.txt").write_bytes(b"x" * 100)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.bin").write_bytes(b"y" * 50)
        os.symlink(str(tmp_path / "a.txt"), str(tmp_path / "link"))
        assert directory_size(str(tmp_path)) == 150

    def test_depth_cap(self, tmp_path):
        deep = tmp_path
        for i in range(5):
            deep = deep / f"d{i}"
        deep.mkdir(parents=True)
        (deep / "leaf").write_bytes(b"z" * 10)
        (tmp_path / "top").write_bytes(b"t" * 3)

        assert directory_size(str(tmp_path), max_depth=512) == 13
        assert directory_size(str(tmp_path), max_depth=2) == 3

    def test_missing_root_is_zero(self, tmp_path):
        assert directory_size(str(tmp_path / "gone")) == 0


# ─── Templating ───────────────────────────────────────────

class TestRender:

    def test_known_and_unknown_placeholders(self):
        text = "port={{primaryPort}} name={{ containerName }} keep={{other}}"
        out = render(text, {"primaryPort": "8080", "containerName": "abc"})
        assert out == "port=8080 name=abc keep={{other}}"

    def test_pipeline_variables(self):
        values = pipeline_variables("25565", "0123456789abcdef0123")
        assert values["primaryPort"] == "25565"
        assert values["containerName"] == "0123456789ab"
        assert values["timestamp"].endswith("+00:00")
        assert len(values["randomString"]) >= 12
        assert pipeline_variables("1", "x")["randomString"] != values["randomString"]


class TestSubstituteDirectory:

    def test_primary_port_round_trip(self, tmp_path):
        """
        GIVEN a file containing {{primaryPort}}
        WHEN substituting {primaryPort: "8080"}
        THEN the file contains 8080 and no {{primaryPort}} remains
        """
        target = tmp_path / "server.properties"
        target.write_text("server-port={{primaryPort}}\nmotd={{motd}}\n")

        changed = substitute_directory(str(tmp_path), {"primaryPort": "8080"})

        content = target.read_text()
        assert changed == [str(target)]
        assert "server-port=8080" in content
        assert "{{primaryPort}}" not in content
        assert "{{motd}}" in content

    def test_recurses_but_skips_binary_and_symlinks(self, tmp_path):
        (tmp_path / "plugins").mkdir()
        nested = tmp_path / "plugins" / "config.yml"
        nested.write_text("port: {{primaryPort}}\n")
        binary = tmp_path / "server.jar"
        binary.write_bytes(b"PK\x03\x04\x00{{primaryPort}}")
        outside = tmp_path.parent / "outside.txt"
        outside.write_text("{{primaryPort}}")
        os.symlink(str(outside), str(tmp_path / "link.txt"))

        substitute_directory(str(tmp_path), {"primaryPort": "9000"})

        assert nested.read_text() == "port: 9000\n"
        assert b"{{primaryPort}}" in binary.read_bytes()
        assert outside.read_text() == "{{primaryPort}}"
        assert is_binary_file(str(binary))
        assert not is_binary_file(str(nested))

    def test_depth_cap_respected(self, tmp_path):
        deep = tmp_path / "a" / "b" / "c"
        deep.mkdir(parents=True)
        (deep / "f.txt").write_text("{{primaryPort}}")
        substitute_directory(str(tmp_path), {"primaryPort": "1"}, max_depth=1)
        assert (deep / "f.txt").read_text() == "{{primaryPort}}"
