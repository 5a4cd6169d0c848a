"""Deploy transaction: backup, stage, swap, launch, health-check, rollback, cleanup.

The remote side offers no transactions, so every step is a plain shell command
and safety comes from ordering: nothing touches the live directory until a
backup of it exists, and any failure after that point restores the backup and
restarts the previous version (or, on a first deploy, removes the live
directory again) before the error is re-raised.
"""

import logging
import re
import shlex
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Sequence

from .errors import ConfigurationError, RemoteCommandError, RollbackError
from .progress import LogReporter, Reporter, report
from .readiness import (
    HEALTH_CHECK_INTERVAL,
    HEALTH_CHECK_TIMEOUT,
    accept_ok_status,
    wait_until_ready,
)
from .remote import CommandResult, RemoteExecutor, StderrPolicy, fail_on_stderr

BASE_DEPLOY_DIR = "/srv/deploy"  # also created by the instance boot script
SCRATCH_ROOT = "/tmp/deploynode"

_SAFE_NAME = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class DeployState(str, Enum):
    START = "START"
    BACKUP_CREATED = "BACKUP_CREATED"
    STAGED = "STAGED"
    SWAPPED = "SWAPPED"
    HEALTH_CHECKED = "HEALTH_CHECKED"
    COMMITTED = "COMMITTED"
    ROLLING_BACK = "ROLLING_BACK"
    ROLLED_BACK = "ROLLED_BACK"
    CLEANUP = "CLEANUP"


@dataclass(frozen=True)
class DeployLayout:
    """Remote paths. Backup and rollback rely on these staying fixed between runs."""

    project: str
    environment: str
    base_dir: str = BASE_DEPLOY_DIR
    scratch_root: str = SCRATCH_ROOT

    def __post_init__(self):
        for label, value in (("project", self.project), ("environment", self.environment)):
            if not _SAFE_NAME.match(value or ""):
                raise ConfigurationError(
                    f"Invalid {label} name '{value}': use letters, digits, '.', '_' or '-'"
                )
        for label, value in (("base_dir", self.base_dir), ("scratch_root", self.scratch_root)):
            if not value.startswith("/") or value.rstrip("/") == "":
                raise ConfigurationError(f"{label} must be an absolute path below '/': '{value}'")

    @property
    def name(self) -> str:
        return f"{self.project}-{self.environment}"

    @property
    def live_path(self) -> str:
        return f"{self.base_dir.rstrip('/')}/{self.project}/{self.name}"

    @property
    def scratch_dir(self) -> str:
        return f"{self.scratch_root.rstrip('/')}/{self.name}"

    @property
    def staging_path(self) -> str:
        return f"{self.scratch_dir}/staging"

    @property
    def backup_path(self) -> str:
        return f"{self.scratch_dir}/backup"

    @property
    def archive_dir(self) -> str:
        return f"{self.scratch_dir}/archive"

    def archive_path(self, artifact_name: str) -> str:
        return f"{self.archive_dir}/{artifact_name}"


def validate_deploy_inputs(artifact_path: str, deploy_command: str) -> None:
    """Reject a missing artifact or an empty deploy command.

    Callers run this before touching any provider or host.

    :raises ConfigurationError: If either input is unusable
    """
    if not deploy_command or not deploy_command.strip():
        raise ConfigurationError("A deploy command is required")
    if not Path(artifact_path).is_file():
        raise ConfigurationError(f"Artifact not found: '{artifact_path}'")


@dataclass
class DeploymentAttempt:
    """Working state of one deploy transaction. Never persisted."""

    artifact: str
    archive_path: str
    staging_path: str
    backup_path: str
    live_path: str
    state: DeployState = DeployState.START
    committed: bool = False
    had_previous: bool = False  # live existed before this attempt
    history: list[DeployState] = field(default_factory=lambda: [DeployState.START])

    @property
    def backup_created(self) -> bool:
        return DeployState.BACKUP_CREATED in self.history


class DeploymentOrchestrator:
    """Run one deploy transaction against a connected RemoteExecutor.

    Callers must not run two orchestrators against the same host and layout
    at once; there is no remote lock.
    """

    def __init__(
        self,
        executor: RemoteExecutor,
        layout: DeployLayout,
        deploy_command: str,
        *,
        health_check_urls: Sequence[str] = (),
        health_check_timeout: float = HEALTH_CHECK_TIMEOUT,
        health_check_interval: float = HEALTH_CHECK_INTERVAL,
        deploy_stderr_policy: StderrPolicy = fail_on_stderr,
        reporter: Reporter | None = None,
        stop_event: threading.Event | None = None,
        http_client=None,
    ):
        if not deploy_command or not deploy_command.strip():
            raise ConfigurationError("A deploy command is required")
        self.executor = executor
        self.layout = layout
        self.deploy_command = deploy_command
        self.health_check_urls = list(health_check_urls)
        self.health_check_timeout = health_check_timeout
        self.health_check_interval = health_check_interval
        self.deploy_stderr_policy = deploy_stderr_policy
        self.reporter = reporter or LogReporter()
        self.stop_event = stop_event
        self.http_client = http_client

    def _transition(self, attempt: DeploymentAttempt, state: DeployState) -> None:
        attempt.state = state
        attempt.history.append(state)
        report(self.reporter, "deploy.state", f"Deploy state: {state.value}", state=state)

    def _exec(
        self,
        command: str,
        *,
        cwd: str | None = None,
        policy: StderrPolicy = fail_on_stderr,
    ) -> CommandResult:
        """Run one remote command; raise RemoteCommandError if it failed."""
        prompt = f"{cwd}$" if cwd else "$"
        report(self.reporter, "deploy.command", f"{prompt} {command}", command=command, cwd=cwd)

        def on_stdout(line: str) -> None:
            report(self.reporter, "deploy.output", line, stream="stdout")

        def on_stderr(line: str) -> None:
            level = logging.ERROR if policy(line) else logging.INFO
            report(self.reporter, "deploy.output", line, level=level, stream="stderr")

        result = self.executor.run(command, cwd=cwd, on_stdout=on_stdout, on_stderr=on_stderr)
        failing = [line for line in result.stderr if policy(line)]
        if not result.ok or failing:
            raise RemoteCommandError(command, result.exit_status, failing or result.stderr)
        return result

    def _exec_all(self, commands: Sequence[str], *, cwd: str | None = None) -> None:
        for command in commands:
            self._exec(command, cwd=cwd)

    def _launch(self, live: str) -> None:
        self._exec(self.deploy_command, cwd=live, policy=self.deploy_stderr_policy)

    def _health_check(self) -> None:
        if not self.health_check_urls:
            report(self.reporter, "deploy.health", "No health checks configured, skipping")
            return
        report(
            self.reporter,
            "deploy.health",
            f"Health-checking {', '.join(self.health_check_urls)}...",
        )
        wait_until_ready(
            self.health_check_urls,
            interval=self.health_check_interval,
            timeout=self.health_check_timeout,
            accept=accept_ok_status,
            client=self.http_client,
            stop_event=self.stop_event,
        )

    def new_attempt(self, artifact_path: str) -> DeploymentAttempt:
        name = Path(artifact_path).name
        return DeploymentAttempt(
            artifact=name,
            archive_path=self.layout.archive_path(name),
            staging_path=self.layout.staging_path,
            backup_path=self.layout.backup_path,
            live_path=self.layout.live_path,
        )

    def run(self, artifact_path: str) -> DeploymentAttempt:
        """Deploy the ``.tar.gz`` at ``artifact_path`` and return the finished attempt.

        :raises RemoteCommandError: A step failed (after rollback, if one ran)
        :raises ReadinessTimeout: A health check failed (after rollback)
        :raises RollbackError: The rollback itself failed
        """
        validate_deploy_inputs(artifact_path, self.deploy_command)

        attempt = self.new_attempt(artifact_path)
        q = shlex.quote
        live, backup, staging = attempt.live_path, attempt.backup_path, attempt.staging_path
        archive = attempt.archive_path
        rollback_failed = False

        try:
            # Prepare
            found = self._exec(f"if [ -d {q(live)} ]; then echo present; fi")
            attempt.had_previous = "present" in found.stdout
            parent = str(PurePosixPath(live).parent)
            self._exec(f"mkdir -p {q(parent)} {q(self.layout.archive_dir)}")
            report(
                self.reporter,
                "deploy.transfer",
                f"Copying artifact '{artifact_path}' to '{archive}'...",
            )
            self.executor.put(str(artifact_path), archive)

            # Backup; an empty one when there is no previous version
            if attempt.had_previous:
                copy = f"cp -a {q(live)} {q(backup)}"
            else:
                copy = f"mkdir -p {q(backup)}"
            self._exec_all([f"rm -rf {q(backup)}", copy])
            self._transition(attempt, DeployState.BACKUP_CREATED)

            try:
                # Stage
                self._exec_all([f"rm -rf {q(staging)}", f"mkdir -p {q(staging)}"])
                self._exec_all([f"mv {q(archive)} {q(staging)}/"])
                self._exec_all(
                    [f"tar -xzf {q(attempt.artifact)}", f"rm -f {q(attempt.artifact)}"],
                    cwd=staging,
                )
                self._transition(attempt, DeployState.STAGED)

                # Swap: the only point after which the new version is live
                self._exec_all([f"rm -rf {q(live)}", f"mv {q(staging)} {q(live)}"])
                self._transition(attempt, DeployState.SWAPPED)

                self._launch(live)
                self._health_check()
                self._transition(attempt, DeployState.HEALTH_CHECKED)

                attempt.committed = True
                self._transition(attempt, DeployState.COMMITTED)
            except BaseException as exc:
                report(
                    self.reporter,
                    "deploy.failed",
                    f"Deploy failed, rolling back: {exc}",
                    level=logging.ERROR,
                )
                try:
                    self.rollback(attempt)
                except BaseException as rollback_exc:
                    rollback_failed = True
                    raise RollbackError(
                        f"Rollback failed, '{live}' needs manual attention "
                        f"(backup kept at '{backup}'): {rollback_exc}",
                        original=exc,
                    ) from rollback_exc
                raise
        finally:
            self.cleanup(attempt, keep_backup=rollback_failed)

        report(self.reporter, "deploy.committed", f"Deployed '{attempt.artifact}' to '{live}'")
        return attempt

    def rollback(self, attempt: DeploymentAttempt) -> None:
        """Restore the backup into the live path and restart it.

        On a first deploy there is nothing to restart: the live path is
        removed again, leaving the host as it was before the attempt.
        """
        q = shlex.quote
        live = attempt.live_path
        self._transition(attempt, DeployState.ROLLING_BACK)
        if attempt.had_previous:
            self._exec_all([f"rm -rf {q(live)}", f"mv {q(attempt.backup_path)} {q(live)}"])
            self._launch(live)
            message = f"Rolled back '{live}' to the previous deployment"
        else:
            self._exec(f"rm -rf {q(live)}")
            message = f"Removed '{live}'; there was no previous deployment to restore"
        self._transition(attempt, DeployState.ROLLED_BACK)
        report(self.reporter, "deploy.rolled_back", message, level=logging.WARNING)

    def cleanup(self, attempt: DeploymentAttempt, *, keep_backup: bool = False) -> None:
        """Remove transient remote state. Failures are logged, never raised."""
        q = shlex.quote
        self._transition(attempt, DeployState.CLEANUP)
        paths = [self.layout.archive_dir, attempt.staging_path]
        if not keep_backup:
            paths += [attempt.backup_path, self.layout.scratch_dir]
        try:
            self._exec(f"rm -rf {' '.join(q(p) for p in paths)}")
        except Exception as e:
            report(
                self.reporter,
                "deploy.cleanup_failed",
                f"Cleanup failed (ignored): {e}",
                level=logging.WARNING,
            )
