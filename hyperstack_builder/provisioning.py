"""
Provisioning pipeline

Applies an ordered list of provisioning steps to the build VM over SSH:
scripts are uploaded to a scratch directory and executed, configuration files
are staged in an unprivileged location and moved into place with sudo.
The first failing step stops the pipeline.
"""

from dataclasses import dataclass
import logging
import os
import posixpath
import shlex
from typing import Callable, List, Sequence, Tuple

from .errors import BuildError, MissingSourceError
from .models import FileDeployment, ProvisioningStep, ScriptStep
from .remote import DEFAULT_USERNAME, RemoteSession

logger = logging.getLogger(__name__)

REMOTE_SCRIPT_DIR = "/tmp/provisioning-scripts"
REMOTE_STAGING_DIR = "/tmp"

DEFAULT_SCRIPTS = (
    "cleanup-nvidia-cuda.sh",
    "install-drivers.sh",
    "install-nvidia-container-toolkit.sh",
)

DEFAULT_FILES = (
    FileDeployment(local_path="runsc.toml", remote_path="/etc/containerd/runsc.toml"),
)


@dataclass(frozen=True)
class ProvisioningPlan:
    """What to apply to the VM, and where the local sources live."""
    steps: Tuple[ProvisioningStep, ...]
    scripts_dir: str
    files_dir: str
    remote_script_dir: str = REMOTE_SCRIPT_DIR
    staging_dir: str = REMOTE_STAGING_DIR

    @classmethod
    def from_lists(
        cls,
        scripts: Sequence[str],
        files: Sequence[FileDeployment],
        scripts_dir: str,
        files_dir: str,
        **kwargs
    ) -> "ProvisioningPlan":
        """Scripts run first, in order, followed by the file deployments."""
        steps: List[ProvisioningStep] = [ScriptStep(name) for name in scripts]
        steps.extend(files)
        return cls(tuple(steps), scripts_dir, files_dir, **kwargs)

    def local_source(self, step: ProvisioningStep) -> str:
        if isinstance(step, ScriptStep):
            return os.path.join(self.scripts_dir, step.name)
        return os.path.join(self.files_dir, step.local_path)


def default_plan(base_dir: str = "provisioning") -> ProvisioningPlan:
    return ProvisioningPlan.from_lists(
        DEFAULT_SCRIPTS,
        DEFAULT_FILES,
        scripts_dir=os.path.join(base_dir, "scripts"),
        files_dir=os.path.join(base_dir, "files"),
    )


class ProvisioningPipeline:
    """Runs a ProvisioningPlan against a connected RemoteSession."""

    def __init__(
        self,
        plan: ProvisioningPlan,
        session_factory: Callable[..., RemoteSession] = RemoteSession
    ) -> None:
        self.plan = plan
        self._session_factory = session_factory

    def validate(self) -> None:
        """
        Check that every local source exists.

        Raises:
            MissingSourceError: Naming the first missing path
        """
        for index, step in enumerate(self.plan.steps, start=1):
            path = self.plan.local_source(step)
            if not os.path.isfile(path):
                raise MissingSourceError(path, step=index, name=step.describe())

    def provision(self, host: str, private_key_path: str, username: str = DEFAULT_USERNAME) -> None:
        """Open a session to `host`, apply the plan, and always close the session."""
        logger.info("Starting provisioning via SSH...")
        session = self._session_factory(private_key_path, username=username)
        try:
            session.connect(host)
            self.apply(session)
        finally:
            session.close()
        logger.info("Provisioning completed successfully!")

    def apply(self, session: RemoteSession) -> None:
        """
        Apply every step in declared order, stopping at the first failure.

        Raises:
            BuildError: The failing step's error, annotated with its index and name
        """
        remote_dir = self.plan.remote_script_dir
        logger.info(f"Creating remote script directory: {remote_dir}")
        session.run(f"mkdir -p {shlex.quote(remote_dir)}")

        total = len(self.plan.steps)
        for index, step in enumerate(self.plan.steps, start=1):
            logger.info(f"Step {index}/{total}: {step.describe()}")
            try:
                if isinstance(step, ScriptStep):
                    self._run_script(session, step)
                else:
                    self._deploy_file(session, step)
            except BuildError as e:
                logger.error(f"Step {index}/{total} failed: {step.describe()}")
                raise e.add_context(step=index, name=step.describe())
            logger.info(f"Step {index}/{total}: Successfully applied {step.describe()}")

        logger.info("Cleaning up remote scripts...")
        try:
            session.run(f"rm -rf {shlex.quote(remote_dir)}")
        except BuildError as e:
            logger.warning(f"Failed to clean up remote scripts: {e}")

    def _check_source(self, step: ProvisioningStep) -> str:
        path = self.plan.local_source(step)
        if not os.path.isfile(path):
            raise MissingSourceError(path)
        return path

    def _run_script(self, session: RemoteSession, step: ScriptStep) -> None:
        local_path = self._check_source(step)
        remote_path = posixpath.join(self.plan.remote_script_dir, step.name)

        logger.info(f"Copying {step.name} to VM...")
        session.upload(local_path, remote_path)

        logger.info(f"Executing {step.name}...")
        session.run_script(remote_path)

    def _deploy_file(self, session: RemoteSession, step: FileDeployment) -> None:
        local_path = self._check_source(step)
        remote_dir = posixpath.dirname(step.remote_path)
        staging_path = posixpath.join(self.plan.staging_dir, os.path.basename(step.local_path))

        session.run(f"sudo mkdir -p {shlex.quote(remote_dir)}")
        # scp writes as the login user, the final move needs root
        session.upload(local_path, staging_path)
        session.run(f"sudo mv {shlex.quote(staging_path)} {shlex.quote(step.remote_path)}")

        logger.info(f"Deployed {step.local_path} to {step.remote_path}")
