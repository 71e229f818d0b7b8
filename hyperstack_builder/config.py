"""
Build configuration file

A flat JSON record describing what to build. Missing optional fields are
filled with defaults on load so older config files keep working.
"""

from dataclasses import asdict, dataclass, field
from datetime import date
import json
import logging
import os
from typing import Any, Dict, List, Optional

from .errors import ValidationError
from .models import BuildSpec, FileDeployment
from .provisioning import DEFAULT_FILES, DEFAULT_SCRIPTS, ProvisioningPlan

logger = logging.getLogger(__name__)

DEFAULT_REGION = "CANADA-1"
DEFAULT_IMAGE_NAME = "kubernetes_gpu_cuda"
DEFAULT_BASE_IMAGE = "Ubuntu Server 22.04 LTS R535 CUDA 12.2 with Docker"
DEFAULT_VM_NAME = "thunder-build-vm"
DEFAULT_FLAVOR = "n1-A100x1"
DEFAULT_PRIVATE_KEY_PATH = "~/.ssh/id_rsa"
DEFAULT_TAGS = ("k8s",)

REQUIRED_FIELDS = (
    'vm_name',
    'image_name',
    'image_version',
    'keypair_name',
    'private_key_path',
    'environment_name',
)


def default_image_version(today: Optional[date] = None) -> str:
    """Date-based version, e.g. 202508.14.0"""
    today = today or date.today()
    return f"{today:%Y%m}.{today.day:02d}.0"


@dataclass
class ProvisioningConfig:
    """Which scripts and files to apply, relative to the config file."""
    scripts_dir: str = os.path.join("provisioning", "scripts")
    files_dir: str = os.path.join("provisioning", "files")
    scripts: List[str] = field(default_factory=lambda: list(DEFAULT_SCRIPTS))
    files: List[FileDeployment] = field(default_factory=lambda: list(DEFAULT_FILES))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvisioningConfig":
        config = cls()
        if data.get('scripts_dir'):
            config.scripts_dir = data['scripts_dir']
        if data.get('files_dir'):
            config.files_dir = data['files_dir']
        if data.get('scripts') is not None:
            config.scripts = [str(name) for name in data['scripts']]
        if data.get('files') is not None:
            try:
                config.files = [
                    FileDeployment(local_path=item['local'], remote_path=item['remote'])
                    for item in data['files']
                ]
            except (KeyError, TypeError) as e:
                raise ValidationError(
                    f"Each provisioning file needs 'local' and 'remote' entries: {e}"
                ) from e

        for deployment in config.files:
            if not deployment.remote_path.startswith('/'):
                raise ValidationError(
                    f"Remote destination must be an absolute path: {deployment.remote_path}"
                )
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            'scripts_dir': self.scripts_dir,
            'files_dir': self.files_dir,
            'scripts': list(self.scripts),
            'files': [
                {'local': deployment.local_path, 'remote': deployment.remote_path}
                for deployment in self.files
            ],
        }

    def to_plan(self, base_dir: str = "") -> ProvisioningPlan:
        return ProvisioningPlan.from_lists(
            self.scripts,
            self.files,
            scripts_dir=os.path.join(base_dir, self.scripts_dir),
            files_dir=os.path.join(base_dir, self.files_dir),
        )


@dataclass
class BuildConfig:
    """Persisted build settings."""
    region: str = ""
    image_name: str = ""
    image_version: str = ""
    base_image_name: str = ""
    vm_name: str = ""
    flavor_name: str = ""
    keypair_name: str = ""
    private_key_path: str = ""
    environment_name: str = ""
    tags: Optional[List[str]] = None
    provisioning: ProvisioningConfig = field(default_factory=ProvisioningConfig)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildConfig":
        if not isinstance(data, dict):
            raise ValidationError("Config must be a JSON object")

        config = cls()
        for name in (
            'region', 'image_name', 'image_version', 'base_image_name', 'vm_name',
            'flavor_name', 'keypair_name', 'private_key_path', 'environment_name',
        ):
            value = data.get(name)
            if value is not None:
                setattr(config, name, str(value))

        if data.get('tags') is not None:
            if not isinstance(data['tags'], list):
                raise ValidationError("'tags' must be a list of strings")
            config.tags = [str(tag) for tag in data['tags']]

        if data.get('provisioning') is not None:
            config.provisioning = ProvisioningConfig.from_dict(data['provisioning'])

        return config

    def apply_defaults(self) -> "BuildConfig":
        if not self.flavor_name:
            self.flavor_name = DEFAULT_FLAVOR
        if not self.base_image_name:
            self.base_image_name = DEFAULT_BASE_IMAGE
        if self.tags is None:
            self.tags = list(DEFAULT_TAGS)
        return self

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['tags'] = list(self.tags or [])
        data['provisioning'] = self.provisioning.to_dict()
        return data

    def to_build_spec(self) -> BuildSpec:
        """
        Freeze the config into the input of one build.

        Raises:
            ValidationError: Listing every required field that is empty
        """
        missing = [name for name in REQUIRED_FIELDS if not getattr(self, name)]
        if missing:
            raise ValidationError(f"Missing required config fields: {', '.join(missing)}")

        return BuildSpec(
            vm_name=self.vm_name,
            base_image_name=self.base_image_name or DEFAULT_BASE_IMAGE,
            flavor_name=self.flavor_name or DEFAULT_FLAVOR,
            environment_name=self.environment_name,
            keypair_name=self.keypair_name,
            private_key_path=self.private_key_path,
            image_name=self.image_name,
            image_version=self.image_version,
            tags=tuple(self.tags if self.tags is not None else DEFAULT_TAGS),
            region=self.region,
        )


def load(filename: str) -> BuildConfig:
    """
    Read a config file and fill in defaults.

    Raises:
        ValidationError: If the file cannot be read or is not valid JSON
    """
    try:
        with open(filename, 'r') as f:
            data = json.load(f)
    except OSError as e:
        raise ValidationError(f"Failed to read config file {filename}: {e}") from e
    except json.JSONDecodeError as e:
        raise ValidationError(f"Failed to parse config file {filename}: {e}") from e

    config = BuildConfig.from_dict(data).apply_defaults()
    logger.info(f"Loaded config from {filename}")
    return config


def save(config: BuildConfig, filename: str) -> None:
    with open(filename, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)
        f.write('\n')
