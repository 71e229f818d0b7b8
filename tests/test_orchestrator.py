"""End-to-end tests for BuildOrchestrator with a fake API and a fake SSH session."""

import pytest

from hyperstack_builder.errors import (
    APIError,
    CommandError,
    MissingSourceError,
    ReadinessTimeout,
    TransportError,
)
from hyperstack_builder.models import InstanceHandle
from hyperstack_builder.orchestrator import (
    PLATFORM_LABELS,
    BuildOrchestrator,
    BuildState,
    image_labels,
)
from hyperstack_builder.provisioning import ProvisioningPipeline, ProvisioningPlan

from .conftest import FakeLifecycleClient, FakeSession, pending_instance, ready_instance

STARTED_AT = 1700000000.5
SNAPSHOT_AT = 1700000300.2


class Clock:
    def __init__(self, *values):
        self.values = list(values)

    def __call__(self):
        if len(self.values) > 1:
            return self.values.pop(0)
        return self.values[0]


def make_orchestrator(client, pipeline, sleeps):
    return BuildOrchestrator(
        client,
        pipeline,
        clock=Clock(STARTED_AT, SNAPSHOT_AT),
        sleep=sleeps.append,
    )


def test_image_labels_append_platform_labels_without_duplicates():
    labels = image_labels(["k8s", "nvidia.com/gpu=true"])

    assert labels[0] == "k8s"
    assert labels.count("nvidia.com/gpu=true") == 1
    assert set(PLATFORM_LABELS) <= set(labels)
    assert len(labels) == len(PLATFORM_LABELS) + 1


def test_successful_build(build_spec, pipeline, fake_session):
    client = FakeLifecycleClient(
        instance_polls=[pending_instance(), pending_instance(), ready_instance()],
        snapshot_polls=["CREATING", "CREATING", "CREATING", "CREATING", "SUCCESS"],
    )
    sleeps = []
    orchestrator = make_orchestrator(client, pipeline, sleeps)

    result = orchestrator.build(build_spec)

    assert client.calls[0] == ("create_instance", "vm1-1700000000")
    assert client.count("get_instance") == 3
    assert ("create_snapshot", 101, "vm1-snapshot-1700000300") in client.calls
    assert client.count("get_snapshot") == 5
    assert client.call_names()[-2:] == ["create_image", "delete_instance"]
    assert client.count("delete_instance") == 1
    assert sleeps == [10] * 6

    image_call = [call for call in client.calls if call[0] == "create_image"][0]
    assert image_call[1] == 201
    assert image_call[2] == "kubernetes_gpu_cuda_202508.14.0"
    assert image_call[3] == ["k8s", "team=ml"] + list(PLATFORM_LABELS)

    assert fake_session.init_args == ("~/.ssh/id_rsa", "ubuntu")
    assert fake_session.ops[0] == ("connect", "203.0.113.10")
    assert fake_session.ops[-1] == ("close",)

    assert result.image.id == 301
    assert result.image.name == "kubernetes_gpu_cuda_202508.14.0"
    assert result.instance_id == 101
    assert result.snapshot_id == 201
    assert result.instance_deleted is True
    assert orchestrator.state is BuildState.COMPLETE
    assert orchestrator.history == [
        BuildState.CREATED,
        BuildState.INSTANCE_REQUESTED,
        BuildState.INSTANCE_READY,
        BuildState.PROVISIONED,
        BuildState.SNAPSHOT_REQUESTED,
        BuildState.SNAPSHOT_READY,
        BuildState.IMAGE_REQUESTED,
        BuildState.COMPLETE,
    ]


def test_provisioning_failure_skips_snapshot_and_deletes_vm(build_spec, plan):
    client = FakeLifecycleClient()
    session = FakeSession(failing_scripts=["s2.sh"])
    orchestrator = make_orchestrator(client, ProvisioningPipeline(plan, session), [])

    with pytest.raises(CommandError) as exc_info:
        orchestrator.build(build_spec)

    assert exc_info.value.context["stage"] == "provision"
    assert exc_info.value.context["resource_id"] == 101
    assert exc_info.value.context["step"] == 2
    assert "create_snapshot" not in client.call_names()
    assert client.count("delete_instance") == 1
    assert session.ops[-1] == ("close",)
    assert orchestrator.state is BuildState.FAILED
    assert BuildState.PROVISIONED not in orchestrator.history


def test_delete_failure_does_not_fail_a_successful_build(build_spec, pipeline):
    client = FakeLifecycleClient(errors={
        "delete_instance": APIError("Failed to delete VM 101", status_code=500),
    })
    orchestrator = make_orchestrator(client, pipeline, [])

    result = orchestrator.build(build_spec)

    assert result.image.id == 301
    assert result.instance_deleted is False
    assert orchestrator.state is BuildState.COMPLETE


def test_delete_failure_does_not_mask_the_primary_error(build_spec, pipeline):
    snapshot_error = APIError("API returned error: quota exceeded", status_code=200)
    client = FakeLifecycleClient(errors={
        "create_snapshot": snapshot_error,
        "delete_instance": APIError("Failed to delete VM 101", status_code=500),
    })
    orchestrator = make_orchestrator(client, pipeline, [])

    with pytest.raises(APIError) as exc_info:
        orchestrator.build(build_spec)

    assert exc_info.value is snapshot_error
    assert exc_info.value.context["stage"] == "create snapshot"
    assert client.count("delete_instance") == 1
    assert orchestrator.state is BuildState.FAILED


def test_instance_never_ready_times_out_after_sixty_polls(build_spec, pipeline, fake_session):
    client = FakeLifecycleClient(instance_polls=[pending_instance()])
    sleeps = []
    orchestrator = make_orchestrator(client, pipeline, sleeps)

    with pytest.raises(ReadinessTimeout) as exc_info:
        orchestrator.build(build_spec)

    assert exc_info.value.attempts == 60
    assert exc_info.value.context["stage"] == "wait for instance"
    assert "status: BUILD" in exc_info.value.last_status
    assert client.count("get_instance") == 60
    assert len(sleeps) == 59
    assert client.count("delete_instance") == 1
    assert fake_session.ops == []


def test_transport_error_while_polling_is_fatal(build_spec, pipeline):
    client = FakeLifecycleClient(errors={"get_instance": TransportError("connection reset")})
    orchestrator = make_orchestrator(client, pipeline, [])

    with pytest.raises(TransportError):
        orchestrator.build(build_spec)

    assert client.count("get_instance") == 1
    assert client.count("delete_instance") == 1


def test_failed_instance_creation_has_nothing_to_delete(build_spec, pipeline):
    client = FakeLifecycleClient(errors={"create_instance": APIError("No instances created")})
    orchestrator = make_orchestrator(client, pipeline, [])

    with pytest.raises(APIError):
        orchestrator.build(build_spec)

    assert client.call_names() == ["create_instance"]
    assert orchestrator.history[-1] is BuildState.FAILED


def test_missing_source_fails_before_any_api_call(build_spec, source_dirs):
    scripts_dir, files_dir = source_dirs
    plan = ProvisioningPlan.from_lists(
        ["s1.sh", "does-not-exist.sh"], [],
        scripts_dir=str(scripts_dir),
        files_dir=str(files_dir),
    )
    client = FakeLifecycleClient()
    orchestrator = make_orchestrator(client, ProvisioningPipeline(plan, FakeSession()), [])

    with pytest.raises(MissingSourceError) as exc_info:
        orchestrator.build(build_spec)

    assert exc_info.value.context["stage"] == "validate"
    assert client.calls == []


def test_interrupt_still_deletes_the_vm(build_spec, plan):
    class InterruptedSession(FakeSession):
        def run_script(self, remote_path):
            raise KeyboardInterrupt

    client = FakeLifecycleClient()
    orchestrator = make_orchestrator(client, ProvisioningPipeline(plan, InterruptedSession()), [])

    with pytest.raises(KeyboardInterrupt):
        orchestrator.build(build_spec)

    assert client.count("delete_instance") == 1


def test_polling_continues_until_every_readiness_condition_holds(
    build_spec, pipeline, fake_session
):
    no_address = InstanceHandle(id=101, name="vm", status="ACTIVE")
    detached = InstanceHandle(
        id=101,
        name="vm",
        status="ACTIVE",
        floating_ip="203.0.113.10",
        floating_ip_status="DETACHED",
    )
    client = FakeLifecycleClient(instance_polls=[no_address, detached, ready_instance()])
    sleeps = []
    orchestrator = make_orchestrator(client, pipeline, sleeps)

    orchestrator.build(build_spec)

    assert client.count("get_instance") == 3
    assert sleeps[:2] == [10, 10]
    assert fake_session.ops[0] == ("connect", "203.0.113.10")
