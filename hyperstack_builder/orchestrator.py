"""
Image build orchestration

Drives one build through its fixed sequence of stages:

    create VM -> wait until reachable -> provision over SSH -> snapshot ->
    wait for snapshot -> create image -> delete VM

Mutating calls are never retried. Once the VM exists, its deletion is
attempted exactly once on every exit path; a failed delete is only a warning.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
import logging
import time
from typing import Callable, Iterator, List, Optional, Sequence

from .client import LifecycleClient
from .errors import BuildError
from .models import BuildSpec, ImageHandle, InstanceHandle, SnapshotHandle
from .polling import INSTANCE_READY_POLICY, SNAPSHOT_READY_POLICY, PollPolicy, poll_until
from .provisioning import ProvisioningPipeline
from .remote import DEFAULT_USERNAME

logger = logging.getLogger(__name__)

# Platform descriptors added to every image on top of the configured tags
PLATFORM_LABELS = (
    "kubernetes.io/os=linux",
    "kubernetes.io/arch=amd64",
    "nvidia.com/gpu=true",
    "nvidia.com/cuda=true",
    "container.runtime=docker",
    "image.type=kubernetes-node",
)


class BuildState(Enum):
    CREATED = "created"
    INSTANCE_REQUESTED = "instance_requested"
    INSTANCE_READY = "instance_ready"
    PROVISIONED = "provisioned"
    SNAPSHOT_REQUESTED = "snapshot_requested"
    SNAPSHOT_READY = "snapshot_ready"
    IMAGE_REQUESTED = "image_requested"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class BuildResult:
    """Outcome of a successful build."""
    image: ImageHandle
    instance_id: int
    snapshot_id: int
    instance_deleted: bool


def image_labels(tags: Sequence[str]) -> List[str]:
    """Configured tags followed by the platform labels, without duplicates."""
    labels: List[str] = []
    for label in list(tags) + list(PLATFORM_LABELS):
        if label not in labels:
            labels.append(label)
    return labels


def _describe_instance(instance: InstanceHandle) -> str:
    return (
        f"status: {instance.status}, floating IP: {instance.floating_ip or '-'}, "
        f"floating IP status: {instance.floating_ip_status or '-'}"
    )


def _describe_snapshot(snapshot: SnapshotHandle) -> str:
    return f"status: {snapshot.status}"


def _banner(title: str) -> None:
    logger.info("")
    logger.info("=" * 80)
    logger.info(title)
    logger.info("=" * 80)


class BuildOrchestrator:
    """Runs a single image build against the Hyperstack API."""

    def __init__(
        self,
        client: LifecycleClient,
        pipeline: ProvisioningPipeline,
        username: str = DEFAULT_USERNAME,
        instance_policy: PollPolicy = INSTANCE_READY_POLICY,
        snapshot_policy: PollPolicy = SNAPSHOT_READY_POLICY,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep
    ) -> None:
        self.client = client
        self.pipeline = pipeline
        self.username = username
        self.instance_policy = instance_policy
        self.snapshot_policy = snapshot_policy
        self._clock = clock
        self._sleep = sleep
        self.state = BuildState.CREATED
        self.history: List[BuildState] = [BuildState.CREATED]
        self.instance_deleted = False

    def _transition(self, state: BuildState) -> None:
        logger.debug(f"Build state: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    @contextmanager
    def _stage(self, name: str, resource_id: Optional[int] = None) -> Iterator[None]:
        """Attach the stage name and resource id to any error raised inside."""
        try:
            yield
        except BuildError as e:
            logger.error(f"Stage '{name}' failed: {e}")
            raise e.add_context(stage=name, resource_id=resource_id)

    def build(self, spec: BuildSpec) -> BuildResult:
        """
        Run every stage of the build.

        Args:
            spec: Build input

        Returns:
            The created image and the ids of the intermediate resources

        Raises:
            BuildError: From the first failing stage, annotated with stage and resource id
        """
        started_at = self._clock()
        self.state = BuildState.CREATED
        self.history = [BuildState.CREATED]
        self.instance_deleted = False

        try:
            with self._stage("validate"):
                self.pipeline.validate()

            with self._instance_lease(spec, started_at) as instance:
                instance = self._wait_for_instance(instance)
                self._provision(spec, instance)
                snapshot = self._snapshot(spec, instance)
                image = self._create_image(spec, snapshot)
        except BuildError:
            self._transition(BuildState.FAILED)
            raise

        return BuildResult(
            image=image,
            instance_id=instance.id,
            snapshot_id=snapshot.id,
            instance_deleted=self.instance_deleted
        )

    @contextmanager
    def _instance_lease(self, spec: BuildSpec, started_at: float) -> Iterator[InstanceHandle]:
        """Create the build VM and guarantee a single delete attempt afterwards."""
        name = spec.unique_vm_name(started_at)

        _banner("Creating Build VM")
        logger.info(f"Creating virtual machine: {name}...")
        logger.info(f"  Base image: {spec.base_image_name}")
        logger.info(f"  Flavor: {spec.flavor_name}")
        logger.info(f"  Environment: {spec.environment_name}")

        with self._stage("create instance"):
            self._transition(BuildState.INSTANCE_REQUESTED)
            instance = self.client.create_instance(spec, name)

        logger.info(f"Created VM: {instance.name} (ID: {instance.id})")

        try:
            yield instance
        finally:
            self._delete_instance(instance.id)

    def _delete_instance(self, instance_id: int) -> None:
        _banner("Cleaning Up Build VM")
        logger.info(f"Deleting VM: {instance_id}")
        try:
            self.client.delete_instance(instance_id)
        except BuildError as e:
            logger.warning(f"Failed to delete VM {instance_id}: {e}")
            logger.warning("The VM may need to be deleted manually")
            return

        self.instance_deleted = True
        logger.info(f"✓ VM {instance_id} deleted")

    def _wait_for_instance(self, instance: InstanceHandle) -> InstanceHandle:
        logger.info(f"Waiting for VM {instance.id} to be ready...")
        with self._stage("wait for instance", instance.id):
            ready = poll_until(
                lambda: self.client.get_instance(instance.id),
                lambda vm: vm.is_ready,
                self.instance_policy,
                resource=f"VM {instance.id}",
                describe=_describe_instance,
                sleep=self._sleep
            )

        self._transition(BuildState.INSTANCE_READY)
        logger.info(
            f"VM is ready at IP: {ready.floating_ip} "
            f"(FloatingIP: {ready.floating_ip}, FixedIP: {ready.fixed_ip or '-'})"
        )
        return ready

    def _provision(self, spec: BuildSpec, instance: InstanceHandle) -> None:
        _banner("Provisioning Build VM")
        with self._stage("provision", instance.id):
            self.pipeline.provision(instance.floating_ip, spec.private_key_path, self.username)
        self._transition(BuildState.PROVISIONED)

    def _snapshot(self, spec: BuildSpec, instance: InstanceHandle) -> SnapshotHandle:
        _banner("Creating Snapshot")
        name = spec.snapshot_name(self._clock())
        logger.info(f"Creating snapshot: {name}")

        with self._stage("create snapshot", instance.id):
            self._transition(BuildState.SNAPSHOT_REQUESTED)
            snapshot = self.client.create_snapshot(instance.id, name)

        snapshot_id = snapshot.id
        logger.info(f"Created snapshot: {snapshot.name} (ID: {snapshot_id})")
        logger.info("Waiting for snapshot to be ready (this may take several minutes)...")

        with self._stage("wait for snapshot", snapshot_id):
            snapshot = poll_until(
                lambda: self.client.get_snapshot(snapshot_id),
                lambda snap: snap.is_ready,
                self.snapshot_policy,
                resource=f"Snapshot {snapshot_id}",
                describe=_describe_snapshot,
                sleep=self._sleep
            )

        self._transition(BuildState.SNAPSHOT_READY)
        return snapshot

    def _create_image(self, spec: BuildSpec, snapshot: SnapshotHandle) -> ImageHandle:
        _banner("Creating Image")
        name = spec.output_image_name
        labels = image_labels(spec.tags)
        logger.info(f"Creating image: {name}")
        logger.info(f"  Labels: {', '.join(labels)}")

        with self._stage("create image", snapshot.id):
            self._transition(BuildState.IMAGE_REQUESTED)
            image = self.client.create_image(snapshot.id, name, labels)

        self._transition(BuildState.COMPLETE)
        logger.info(f"Created image: {image.name} (ID: {image.id})")
        return image
