"""
Data types shared by the build stages

Handles are snapshots of what the Hyperstack API last reported; they are only
ever replaced by fresh API results, never edited in place.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple, Union

INSTANCE_ACTIVE = "ACTIVE"
FLOATING_IP_ATTACHED = "ATTACHED"
SNAPSHOT_SUCCESS = "SUCCESS"


@dataclass(frozen=True)
class BuildSpec:
    """Immutable input to one image build."""
    vm_name: str
    base_image_name: str
    flavor_name: str
    environment_name: str
    keypair_name: str
    private_key_path: str
    image_name: str
    image_version: str
    tags: Tuple[str, ...] = ()
    region: str = ""

    def unique_vm_name(self, started_at: float) -> str:
        """Instance name, suffixed with the build start time so runs never collide."""
        return f"{self.vm_name}-{int(started_at)}"

    def snapshot_name(self, now: float) -> str:
        return f"{self.vm_name}-snapshot-{int(now)}"

    @property
    def output_image_name(self) -> str:
        return f"{self.image_name}_{self.image_version}"


@dataclass(frozen=True)
class InstanceHandle:
    """A virtual machine as last observed through the API."""
    id: int
    name: str
    status: str
    fixed_ip: str = ""
    floating_ip: str = ""
    floating_ip_status: str = ""
    flavor_name: str = ""
    image_name: str = ""

    @property
    def is_ready(self) -> bool:
        """
        Readiness predicate for SSH provisioning.

        True only if all of these hold:
        - the VM is ACTIVE
        - a floating IP has been assigned
        - the floating IP is ATTACHED
        """
        return (
            self.status == INSTANCE_ACTIVE and
            self.floating_ip != "" and
            self.floating_ip_status == FLOATING_IP_ATTACHED
        )

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "InstanceHandle":
        return cls(
            id=payload["id"],
            name=payload.get("name") or "",
            status=payload.get("status") or "",
            fixed_ip=payload.get("fixed_ip") or "",
            floating_ip=payload.get("floating_ip") or "",
            floating_ip_status=payload.get("floating_ip_status") or "",
            flavor_name=(payload.get("flavor") or {}).get("name", ""),
            image_name=(payload.get("image") or {}).get("name", ""),
        )


@dataclass(frozen=True)
class SnapshotHandle:
    """A VM snapshot as last observed through the API."""
    id: int
    name: str
    status: str
    vm_id: int = 0
    size: int = 0

    @property
    def is_ready(self) -> bool:
        return self.status == SNAPSHOT_SUCCESS

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "SnapshotHandle":
        return cls(
            id=payload["id"],
            name=payload.get("name") or "",
            status=payload.get("status") or "",
            vm_id=payload.get("vm_id") or 0,
            size=payload.get("size") or 0,
        )


@dataclass(frozen=True)
class ImageHandle:
    """The build's final artifact."""
    id: int
    name: str
    region_name: str = ""
    version: str = ""
    labels: Tuple[str, ...] = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ImageHandle":
        labels = []
        for label in payload.get("labels") or []:
            # The API returns label objects on reads and may echo plain strings
            labels.append(label["label"] if isinstance(label, dict) else str(label))
        return cls(
            id=payload["id"],
            name=payload.get("name") or "",
            region_name=payload.get("region_name") or "",
            version=payload.get("version") or "",
            labels=tuple(labels),
        )


@dataclass(frozen=True)
class ScriptStep:
    """Upload a script to the scratch directory and execute it."""
    name: str

    def describe(self) -> str:
        return self.name


@dataclass(frozen=True)
class FileDeployment:
    """Upload a file and move it into place with elevated privilege."""
    local_path: str
    remote_path: str

    def describe(self) -> str:
        return f"{self.local_path} -> {self.remote_path}"


ProvisioningStep = Union[ScriptStep, FileDeployment]


# Catalog records, used only when authoring a configuration

@dataclass(frozen=True)
class Region:
    id: int
    name: str


@dataclass(frozen=True)
class Environment:
    id: int
    name: str


@dataclass(frozen=True)
class Keypair:
    id: int
    name: str
    environment_name: str = ""
    fingerprint: str = ""


@dataclass(frozen=True)
class Flavor:
    id: int
    name: str
    region_name: str = ""
    cpu: int = 0
    ram: float = 0.0
    disk: int = 0
    gpu: str = ""
    gpu_count: int = 0


@dataclass(frozen=True)
class CatalogImage:
    id: int
    name: str
    region_name: str = ""
    type: str = ""
    version: str = ""
    size: int = 0
    is_public: bool = False
    labels: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def size_gb(self) -> float:
        return self.size / 1024 / 1024 / 1024

    def has_label_containing(self, needles: List[str]) -> bool:
        for label in self.labels:
            lowered = label.lower()
            if any(needle in lowered for needle in needles):
                return True
        return False
