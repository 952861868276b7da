"""Tests for builds/runner.py module.

Tests build command composition and execution.
Uses mocked subprocess for build execution tests.
"""

import stat
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from buildabox.builds.runner import (
    BUILD_COMMANDS,
    INSTALLED_BINARY,
    ArtifactMissingError,
    BuildExecutionError,
    SourceMissingError,
    ToolchainUnavailableError,
    build_target,
    compose_build_command,
    compose_strip_command,
    log_path_for,
    output_binary_path,
    read_log_tail,
    run_in_toolchain,
    stage_work_dir,
    strip_binary,
)
from buildabox.toolchains.mapping import UnknownTargetError, get_toolchain_mapping
from buildabox.types import BuildJob

VERSION = "1.36.1"


@pytest.fixture
def build_env(settings):
    """Create a source tree, composed config and runner script."""
    tree = settings.src_dir / f"busybox-{VERSION}"
    (tree / "scripts").mkdir(parents=True)
    (tree / "Makefile").write_text("all:\n")
    (tree / "scripts" / "kconfig").write_text("kconfig\n")

    config = settings.build_dir / ".config.arm64"
    config.parent.mkdir(parents=True, exist_ok=True)
    config.write_text("CONFIG_STATIC=y\n")

    script = settings.dockcross_dir / "dockcross-linux-arm64"
    script.parent.mkdir(parents=True)
    script.write_text("#!/bin/sh\n")
    script.chmod(0o755)

    return BuildJob(target="arm64", version=VERSION, config_path=config)


def fake_container(build_rc: int = 0, produce_binary: bool = True, strip_rc: int = 0):
    """Return a subprocess.run replacement emulating the dockcross script."""
    calls = []

    def run(cmd, **kwargs):
        calls.append(cmd)
        cwd = Path(kwargs["cwd"])
        if cmd[1] == "bash":
            stdout = kwargs.get("stdout")
            if stdout is not None:
                stdout.write("make output\n" * 30)
            if produce_binary and build_rc == 0:
                binary = cwd / INSTALLED_BINARY
                binary.parent.mkdir(parents=True, exist_ok=True)
                binary.write_bytes(b"\x7fELF busybox")
            return subprocess.CompletedProcess(cmd, build_rc)
        return subprocess.CompletedProcess(cmd, strip_rc, stdout="", stderr="bad")

    run.calls = calls
    return run


class TestPaths:
    """Tests for output path helpers."""

    def test_output_binary_path(self, tmp_path):
        assert output_binary_path(tmp_path, "1.36.1", "arm64") == (
            tmp_path / "busybox-1.36.1-arm64"
        )

    def test_log_path(self, tmp_path):
        assert log_path_for(tmp_path, "1.36.1", "arm64") == (
            tmp_path / "logs" / "busybox-1.36.1-arm64.log"
        )


class TestComposeCommands:
    """Tests for container command composition."""

    def test_build_command(self, tmp_path):
        """Build runs through bash -c inside the container."""
        script = tmp_path / "dockcross-linux-arm64"
        cmd = compose_build_command(script)

        assert cmd[:3] == [str(script), "bash", "-c"]
        assert cmd[3] == BUILD_COMMANDS

    def test_build_commands_content(self):
        """Build commands configure non-interactively and link statically."""
        assert "cd /work/busybox" in BUILD_COMMANDS
        assert "yes '' | make oldconfig" in BUILD_COMMANDS
        assert "LDFLAGS='-static'" in BUILD_COMMANDS
        assert "CFLAGS='-Os'" in BUILD_COMMANDS
        assert "make install" in BUILD_COMMANDS

    def test_strip_command(self, tmp_path):
        script = tmp_path / "dockcross-linux-arm64"
        cmd = compose_strip_command(script)
        assert cmd == [str(script), "strip", "/work/busybox/_install/bin/busybox"]


class TestReadLogTail:
    """Tests for read_log_tail."""

    def test_missing_log(self, tmp_path):
        assert read_log_tail(tmp_path / "nope.log") is None

    def test_last_lines(self, tmp_path):
        log = tmp_path / "build.log"
        log.write_text("".join(f"line {i}\n" for i in range(50)))

        tail = read_log_tail(log, lines=20)

        assert tail is not None
        lines = tail.splitlines()
        assert len(lines) == 20
        assert lines[0] == "line 30"
        assert lines[-1] == "line 49"


class TestStageWorkDir:
    """Tests for stage_work_dir."""

    def test_copies_tree_and_config(self, tmp_path):
        tree = tmp_path / "src"
        tree.mkdir()
        (tree / "Makefile").write_text("all:\n")
        config = tmp_path / "cfg"
        config.write_text("CONFIG_STATIC=y\n")

        staged = stage_work_dir(tree, config, tmp_path / "work")

        assert staged == tmp_path / "work" / "busybox"
        assert (staged / "Makefile").read_text() == "all:\n"
        assert (staged / ".config").read_text() == "CONFIG_STATIC=y\n"
        # Inputs are left untouched
        assert not (tree / ".config").exists()

    def test_replaces_stale_work_dir(self, tmp_path):
        tree = tmp_path / "src"
        tree.mkdir()
        config = tmp_path / "cfg"
        config.write_text("")
        work = tmp_path / "work"
        work.mkdir()
        (work / "leftover").write_text("old")

        stage_work_dir(tree, config, work)

        assert not (work / "leftover").exists()


class TestRunInToolchain:
    """Tests for run_in_toolchain."""

    def test_writes_log_header_and_footer(self, tmp_path):
        log = tmp_path / "logs" / "build.log"
        with patch("buildabox.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0)
            code = run_in_toolchain(["script", "bash", "-c", "true"], tmp_path, log)

        assert code == 0
        content = log.read_text()
        assert "# Command:" in content
        assert "# Exit code: 0" in content
        assert "# Duration:" in content

    def test_timeout(self, tmp_path):
        """A hung container becomes a build_timeout error."""
        log = tmp_path / "build.log"
        with patch("buildabox.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="script", timeout=5)
            with pytest.raises(BuildExecutionError) as exc_info:
                run_in_toolchain(["script"], tmp_path, log, timeout=5)

        assert exc_info.value.code == "build_timeout"
        assert "TIMEOUT after 5 seconds" in log.read_text()
        assert exc_info.value.log_tail is not None

    def test_os_error(self, tmp_path):
        log = tmp_path / "build.log"
        with patch("buildabox.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = OSError("exec format error")
            with pytest.raises(BuildExecutionError) as exc_info:
                run_in_toolchain(["script"], tmp_path, log)

        assert exc_info.value.code == "execution_error"


class TestStripBinary:
    """Tests for strip_binary."""

    def test_strip_failure_is_not_fatal(self, tmp_path):
        with patch("buildabox.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess(
                [], 1, stdout="", stderr="strip: not found"
            )
            assert strip_binary(tmp_path / "script", tmp_path, "arm64") is False

    def test_strip_success(self, tmp_path):
        with patch("buildabox.builds.runner.subprocess.run") as mock_run:
            mock_run.return_value = subprocess.CompletedProcess([], 0, "", "")
            assert strip_binary(tmp_path / "script", tmp_path, "arm64") is True


class TestBuildTarget:
    """Tests for build_target."""

    def test_successful_build(self, settings, build_env):
        """A successful build leaves only the binary and the log."""
        fake = fake_container()
        with patch("buildabox.builds.runner.subprocess.run", side_effect=fake):
            output = build_target(build_env, settings)

        assert output == settings.build_dir / "busybox-1.36.1-arm64"
        assert output.read_bytes() == b"\x7fELF busybox"
        assert stat.S_IMODE(output.stat().st_mode) == 0o755
        assert log_path_for(settings.build_dir, VERSION, "arm64").exists()
        assert not (settings.build_dir / "arm64").exists()
        assert [c[1] for c in fake.calls] == ["bash", "strip"]

    def test_work_dir_copy_has_config(self, settings, build_env):
        """The build sees the composed config as .config in its own copy."""
        seen = {}

        def run(cmd, **kwargs):
            staged = Path(kwargs["cwd"]) / "busybox"
            seen["config"] = (staged / ".config").read_text()
            seen["makefile"] = (staged / "Makefile").exists()
            return subprocess.CompletedProcess(cmd, 1)

        with patch("buildabox.builds.runner.subprocess.run", side_effect=run):
            with pytest.raises(BuildExecutionError):
                build_target(build_env, settings)

        assert seen == {"config": "CONFIG_STATIC=y\n", "makefile": True}

    def test_build_failure(self, settings, build_env):
        """Non-zero exit is build_failed with the log tail attached."""
        fake = fake_container(build_rc=2)
        with patch("buildabox.builds.runner.subprocess.run", side_effect=fake):
            with pytest.raises(BuildExecutionError) as exc_info:
                build_target(build_env, settings)

        err = exc_info.value
        assert err.code == "build_failed"
        assert err.exit_code == 2
        assert err.log_tail is not None
        assert len(err.log_tail.splitlines()) == 20
        assert not (settings.build_dir / "arm64").exists()
        assert not output_binary_path(settings.build_dir, VERSION, "arm64").exists()

    def test_missing_artifact(self, settings, build_env):
        fake = fake_container(produce_binary=False)
        with patch("buildabox.builds.runner.subprocess.run", side_effect=fake):
            with pytest.raises(ArtifactMissingError) as exc_info:
                build_target(build_env, settings)

        assert exc_info.value.code == "artifact_missing"
        assert not (settings.build_dir / "arm64").exists()

    def test_strip_failure_still_succeeds(self, settings, build_env):
        fake = fake_container(strip_rc=1)
        with patch("buildabox.builds.runner.subprocess.run", side_effect=fake):
            output = build_target(build_env, settings)
        assert output.exists()

    def test_timeout_cleans_up(self, settings, build_env):
        with patch("buildabox.builds.runner.subprocess.run") as mock_run:
            mock_run.side_effect = subprocess.TimeoutExpired(cmd="x", timeout=60)
            with pytest.raises(BuildExecutionError) as exc_info:
                build_target(build_env, settings)

        assert exc_info.value.code == "build_timeout"
        assert not (settings.build_dir / "arm64").exists()

    def test_unknown_target(self, settings, build_env):
        job = BuildJob("vax", VERSION, build_env.config_path)
        with pytest.raises(UnknownTargetError) as exc_info:
            build_target(job, settings)
        assert exc_info.value.code == "unknown_target"

    def test_missing_toolchain_script(self, settings, build_env):
        job = BuildJob("riscv64", VERSION, build_env.config_path)
        with pytest.raises(ToolchainUnavailableError) as exc_info:
            build_target(job, settings)
        assert exc_info.value.code == "toolchain_unavailable"

    def test_non_executable_script(self, settings, build_env):
        (settings.dockcross_dir / "dockcross-linux-arm64").chmod(0o644)
        with pytest.raises(ToolchainUnavailableError):
            build_target(build_env, settings)

    def test_missing_source(self, settings, build_env):
        job = BuildJob("arm64", "9.9.9", build_env.config_path)
        with pytest.raises(SourceMissingError) as exc_info:
            build_target(job, settings)
        assert exc_info.value.code == "source_missing"

    def test_explicit_mapping(self, settings, build_env):
        fake = fake_container()
        with patch("buildabox.builds.runner.subprocess.run", side_effect=fake):
            output = build_target(build_env, settings, mapping=get_toolchain_mapping())
        assert output.exists()
