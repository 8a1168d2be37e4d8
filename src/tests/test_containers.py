"""ContainerProvider against a mocked docker CLI."""

from __future__ import annotations

import subprocess
import threading
import time
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from sapkg.errors import ContainerBuildError, ContainerError
from sapkg.isolation import containers as containers_module
from sapkg.isolation.containers import ContainerProvider, render_dockerfile, temp_environment_name


def _completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def provider() -> ContainerProvider:
    return ContainerProvider(on_output=None)


class TestDockerfile:
    def test_requirements_and_artifact_layers(self) -> None:
        dockerfile = render_dockerfile("python:3.11-slim", requirements=True, artifact="six.whl")
        lines = dockerfile.splitlines()
        assert lines[0] == "FROM python:3.11-slim"
        assert "RUN pip install -r requirements.txt" in lines
        assert "COPY six.whl /tmp/six.whl" in lines
        assert lines[-1] == 'CMD ["python"]'

    def test_temp_names_are_unique(self) -> None:
        assert temp_environment_name() != temp_environment_name()
        assert temp_environment_name("sapkg-exec").startswith("sapkg-exec-")


class TestCreate:
    def test_build_command_and_context(self, provider: ContainerProvider, tmp_path: Path) -> None:
        requirements = tmp_path / "requirements.txt"
        requirements.write_text("six\n", encoding="utf-8")
        seen = {}

        def fake_build(cmd, **kwargs):
            context = Path(cmd[-1])
            seen["cmd"] = cmd
            seen["dockerfile"] = (context / "Dockerfile").read_text(encoding="utf-8")
            seen["requirements"] = (context / "requirements.txt").read_text(encoding="utf-8")
            return 0, "Successfully built"

        with patch.object(containers_module, "stream_subprocess", side_effect=fake_build):
            provider.create_container("ml-env", "python:3.12-slim", str(requirements))

        assert seen["cmd"][:5] == ["docker", "build", "--rm", "-t", "ml-env"]
        assert seen["dockerfile"].startswith("FROM python:3.12-slim")
        assert seen["requirements"] == "six\n"

    def test_build_failure(self, provider: ContainerProvider) -> None:
        with patch.object(containers_module, "stream_subprocess", return_value=(1, "no such image")):
            with pytest.raises(ContainerBuildError, match="no such image"):
                provider.create_container("broken", "python:0-none")

    def test_ensure_skips_existing_image(self, provider: ContainerProvider) -> None:
        with patch.object(containers_module.subprocess, "run", return_value=_completed(0)), \
                patch.object(provider, "create_container") as create:
            assert provider.ensure_container("ml-env") == "ml-env"
        create.assert_not_called()

    def test_install_layers_artifact_on_image(self, provider: ContainerProvider, tmp_path: Path) -> None:
        artifact = tmp_path / "six-1.16.0-py2.py3-none-any.whl"
        artifact.write_bytes(b"wheel")
        dockerfiles = []

        def fake_build(cmd, **kwargs):
            context = Path(cmd[-1])
            dockerfiles.append((context / "Dockerfile").read_text(encoding="utf-8"))
            assert (context / artifact.name).read_bytes() == b"wheel"
            return 0, ""

        with patch.object(containers_module.subprocess, "run", return_value=_completed(0)), \
                patch.object(containers_module, "stream_subprocess", side_effect=fake_build):
            provider.install_into_container("ml-env", artifact, package_name="six")

        assert len(dockerfiles) == 1
        assert dockerfiles[0].startswith("FROM ml-env")
        assert f"RUN pip install /tmp/{artifact.name}" in dockerfiles[0]


class TestExec:
    def test_container_is_removed_after_success(self, provider: ContainerProvider) -> None:
        run = MagicMock(return_value=_completed(0))
        with patch.object(containers_module.subprocess, "run", run), \
                patch.object(containers_module, "stream_subprocess", return_value=(0, "hello")):
            result = provider.exec_in_container("ml-env", ["python", "-c", "print('hello')"])

        assert result.ok
        assert result.output == "hello"
        commands = [call.args[0] for call in run.call_args_list]
        assert commands[0][:3] == ["docker", "create", "--name"]
        assert commands[-1] == ["docker", "rm", "--force", result.container]

    def test_container_is_removed_after_failure(self, provider: ContainerProvider) -> None:
        run = MagicMock(return_value=_completed(0))
        with patch.object(containers_module.subprocess, "run", run), \
                patch.object(containers_module, "stream_subprocess", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                provider.exec_in_container("ml-env", ["python", "script.py"])

        assert run.call_args_list[-1].args[0][:3] == ["docker", "rm", "--force"]

    def test_create_failure(self, provider: ContainerProvider) -> None:
        with patch.object(containers_module.subprocess, "run", return_value=_completed(1, stderr="No such image")):
            with pytest.raises(ContainerError, match="No such image"):
                provider.exec_in_container("missing", ["python"])


class TestListAndRemove:
    def test_list_strips_latest_and_skips_dangling(self, provider: ContainerProvider) -> None:
        stdout = "ml-env:latest\nml-env:gpu\n<none>:<none>\npython:3.11-slim\nml-env:latest\n"
        with patch.object(containers_module.subprocess, "run", return_value=_completed(0, stdout=stdout)):
            assert provider.list_containers() == ["ml-env", "ml-env:gpu", "python:3.11-slim"]

    def test_remove_failure(self, provider: ContainerProvider) -> None:
        with patch.object(containers_module.subprocess, "run", return_value=_completed(1, stderr="in use")):
            with pytest.raises(ContainerError, match="in use"):
                provider.remove_container("ml-env")


class TestConcurrentInstalls:
    def test_installs_into_one_image_keep_every_layer(self, provider: ContainerProvider, tmp_path: Path) -> None:
        image_contents = {"ml-env": []}
        active = []
        peak = []

        def fake_build(cmd, **kwargs):
            context = Path(cmd[-1])
            artifact = next(p.name for p in context.iterdir() if p.suffix == ".whl")
            active.append(artifact)
            peak.append(len(active))
            base = list(image_contents["ml-env"])
            time.sleep(0.1)
            image_contents["ml-env"] = base + [artifact]
            active.remove(artifact)
            return 0, ""

        artifacts = []
        for name in ("requests-2.31.0-py3-none-any.whl", "six-1.16.0-py2.py3-none-any.whl"):
            artifact = tmp_path / name
            artifact.write_bytes(b"wheel")
            artifacts.append(artifact)

        with patch.object(containers_module.subprocess, "run", return_value=_completed(0)), \
                patch.object(containers_module, "stream_subprocess", side_effect=fake_build):
            threads = [
                threading.Thread(target=provider.install_into_container, args=("ml-env", artifact))
                for artifact in artifacts
            ]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

        assert sorted(image_contents["ml-env"]) == sorted(a.name for a in artifacts)
        assert max(peak) == 1

    def test_different_images_use_different_locks(self, provider: ContainerProvider) -> None:
        assert provider._image_lock("a") is provider._image_lock("a")
        assert provider._image_lock("a") is not provider._image_lock("b")
