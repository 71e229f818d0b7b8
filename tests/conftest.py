"""Shared fixtures and test doubles for the image builder tests."""

from typing import Dict, List, Optional, Sequence

import pytest

from hyperstack_builder.errors import BuildError, CommandError
from hyperstack_builder.models import (
    BuildSpec,
    FileDeployment,
    ImageHandle,
    InstanceHandle,
    SnapshotHandle,
)
from hyperstack_builder.provisioning import ProvisioningPipeline, ProvisioningPlan


def pending_instance(instance_id: int = 101, name: str = "vm") -> InstanceHandle:
    return InstanceHandle(id=instance_id, name=name, status="BUILD")


def ready_instance(instance_id: int = 101, name: str = "vm") -> InstanceHandle:
    return InstanceHandle(
        id=instance_id,
        name=name,
        status="ACTIVE",
        fixed_ip="10.0.0.5",
        floating_ip="203.0.113.10",
        floating_ip_status="ATTACHED",
    )


class FakeLifecycleClient:
    """In-memory stand-in for HyperstackClient that records every call."""

    def __init__(
        self,
        instance_polls: Optional[Sequence[InstanceHandle]] = None,
        snapshot_polls: Optional[Sequence[str]] = None,
        errors: Optional[Dict[str, BuildError]] = None
    ) -> None:
        self.instance_polls = list(instance_polls or [ready_instance()])
        self.snapshot_polls = list(snapshot_polls or ["SUCCESS"])
        self.errors = errors or {}
        self.calls: List[tuple] = []

    def _record(self, name: str, *args) -> None:
        self.calls.append((name,) + args)
        if name in self.errors:
            raise self.errors[name]

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def count(self, name: str) -> int:
        return self.call_names().count(name)

    def create_instance(self, spec: BuildSpec, name: str) -> InstanceHandle:
        self._record("create_instance", name)
        return pending_instance(name=name)

    def get_instance(self, instance_id: int) -> InstanceHandle:
        self._record("get_instance", instance_id)
        if len(self.instance_polls) > 1:
            return self.instance_polls.pop(0)
        return self.instance_polls[0]

    def delete_instance(self, instance_id: int) -> None:
        self._record("delete_instance", instance_id)

    def create_snapshot(self, instance_id: int, name: str) -> SnapshotHandle:
        self._record("create_snapshot", instance_id, name)
        return SnapshotHandle(id=201, name=name, status="CREATING", vm_id=instance_id)

    def get_snapshot(self, snapshot_id: int) -> SnapshotHandle:
        self._record("get_snapshot", snapshot_id)
        status = self.snapshot_polls.pop(0) if len(self.snapshot_polls) > 1 else self.snapshot_polls[0]
        return SnapshotHandle(id=snapshot_id, name="snap", status=status)

    def create_image(self, snapshot_id: int, name: str, labels: Sequence[str]) -> ImageHandle:
        self._record("create_image", snapshot_id, name, list(labels))
        return ImageHandle(id=301, name=name, labels=tuple(labels))


class FakeSession:
    """Records RemoteSession operations; raises CommandError for scripts in `failing_scripts`."""

    def __init__(self, failing_scripts: Sequence[str] = (), fail_cleanup: bool = False) -> None:
        self.failing_scripts = set(failing_scripts)
        self.fail_cleanup = fail_cleanup
        self.ops: List[tuple] = []
        self.init_args: Optional[tuple] = None

    def __call__(self, private_key_path: str, username: str = "ubuntu") -> "FakeSession":
        # Lets the instance act as the pipeline's session factory
        self.init_args = (private_key_path, username)
        return self

    def connect(self, host: str) -> "FakeSession":
        self.ops.append(("connect", host))
        return self

    def run(self, command: str) -> None:
        self.ops.append(("run", command))
        if self.fail_cleanup and command.startswith("rm -rf"):
            raise CommandError("cleanup failed", command=command, exit_status=1)

    def upload(self, local_path: str, remote_path: str) -> None:
        self.ops.append(("upload", local_path, remote_path))

    def run_script(self, remote_path: str) -> None:
        self.ops.append(("run_script", remote_path))
        name = remote_path.rsplit("/", 1)[-1]
        if name in self.failing_scripts:
            raise CommandError(
                f"Failed to execute script {remote_path}: Command exited with status 1",
                command=remote_path,
                exit_status=1,
            )

    def close(self) -> None:
        self.ops.append(("close",))


@pytest.fixture
def build_spec():
    return BuildSpec(
        vm_name="vm1",
        base_image_name="Ubuntu Server 22.04 LTS R535 CUDA 12.2 with Docker",
        flavor_name="n1-A100x1",
        environment_name="default-CANADA-1",
        keypair_name="builder-key",
        private_key_path="~/.ssh/id_rsa",
        image_name="kubernetes_gpu_cuda",
        image_version="202508.14.0",
        tags=("k8s", "team=ml"),
        region="CANADA-1",
    )


@pytest.fixture
def source_dirs(tmp_path):
    """Local scripts s1.sh and s2.sh and a config file f1."""
    scripts_dir = tmp_path / "scripts"
    files_dir = tmp_path / "files"
    scripts_dir.mkdir()
    files_dir.mkdir()
    for name in ("s1.sh", "s2.sh", "s3.sh"):
        (scripts_dir / name).write_text("#!/bin/sh\necho ok\n")
    (files_dir / "f1").write_text("key = 1\n")
    return scripts_dir, files_dir


@pytest.fixture
def plan(source_dirs):
    scripts_dir, files_dir = source_dirs
    return ProvisioningPlan.from_lists(
        ["s1.sh", "s2.sh"],
        [FileDeployment(local_path="f1", remote_path="/etc/f1")],
        scripts_dir=str(scripts_dir),
        files_dir=str(files_dir),
    )


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def pipeline(plan, fake_session):
    return ProvisioningPipeline(plan, session_factory=fake_session)
