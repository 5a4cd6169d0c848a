"""Tests for the deploy transaction, run against a local directory tree."""

import time
from pathlib import Path

import pytest

from conftest import LocalExecutor, build_artifact, snapshot, status_client
from deploynode.deploy import DeployLayout, DeploymentOrchestrator, DeployState
from deploynode.errors import (
    ConfigurationError,
    ReadinessTimeout,
    RemoteCommandError,
    RemoteConnectionError,
    RollbackError,
)
from deploynode.remote import ignore_stderr, stderr_matching


def seed_live(layout: DeployLayout, files: dict[str, str]) -> Path:
    live = Path(layout.live_path)
    for name, text in files.items():
        path = live / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
    return live


def launch_log_command(log_file: Path, fail_on_version: str | None = None) -> str:
    """Deploy command appending the live VERSION to a log, optionally failing on one."""
    command = f'cat VERSION >> "{log_file}"'
    if fail_on_version:
        command += f' && test "$(cat VERSION)" != "{fail_on_version}"'
    return command


def test_layout_paths():
    layout = DeployLayout("shop", "production")
    assert layout.live_path == "/srv/deploy/shop/shop-production"
    assert layout.scratch_dir == "/tmp/deploynode/shop-production"
    assert layout.staging_path == "/tmp/deploynode/shop-production/staging"
    assert layout.backup_path == "/tmp/deploynode/shop-production/backup"
    assert layout.archive_dir == "/tmp/deploynode/shop-production/archive"
    assert layout.archive_path("build.tar.gz") == f"{layout.archive_dir}/build.tar.gz"


@pytest.mark.parametrize("project", ["", "../etc", "a b", "shop/api"])
def test_layout_rejects_unsafe_names(project):
    with pytest.raises(ConfigurationError):
        DeployLayout(project, "production")


def test_first_deploy_commits(executor, layout, artifact, tmp_path, reporter):
    log_file = tmp_path / "launches.log"
    orchestrator = DeploymentOrchestrator(
        executor, layout, launch_log_command(log_file), reporter=reporter
    )

    attempt = orchestrator.run(str(artifact))

    assert attempt.committed
    assert attempt.history == [
        DeployState.START,
        DeployState.BACKUP_CREATED,
        DeployState.STAGED,
        DeployState.SWAPPED,
        DeployState.HEALTH_CHECKED,
        DeployState.COMMITTED,
        DeployState.CLEANUP,
    ]
    assert snapshot(Path(layout.live_path)) == {
        "VERSION": b"2\n",
        "app/main.py": b"print('v2')\n",
    }
    assert log_file.read_text() == "2\n"
    assert not Path(layout.scratch_dir).exists()
    assert executor.transfers == [(str(artifact), layout.archive_path("shop.tar.gz"))]


def test_redeploy_replaces_previous_version(executor, layout, artifact, tmp_path):
    seed_live(layout, {"VERSION": "1\n", "stale.txt": "old\n"})
    log_file = tmp_path / "launches.log"

    DeploymentOrchestrator(executor, layout, launch_log_command(log_file)).run(str(artifact))

    live = snapshot(Path(layout.live_path))
    assert live["VERSION"] == b"2\n"
    assert "stale.txt" not in live
    assert not Path(layout.scratch_dir).exists()


def test_failing_deploy_command_rolls_back(executor, layout, artifact, tmp_path, reporter):
    live = seed_live(layout, {"VERSION": "1\n", "data/state.json": '{"ok": true}\n'})
    before = snapshot(live)
    log_file = tmp_path / "launches.log"
    orchestrator = DeploymentOrchestrator(
        executor, layout, launch_log_command(log_file, fail_on_version="2"), reporter=reporter
    )

    with pytest.raises(RemoteCommandError) as exc_info:
        orchestrator.run(str(artifact))

    assert exc_info.value.exit_status == 1
    assert snapshot(live) == before
    # launched once for the new version, then again for the restored one
    assert log_file.read_text() == "2\n1\n"
    assert not Path(layout.scratch_dir).exists()
    assert "deploy.rolled_back" in reporter.kinds()
    states = [e.data["state"] for e in reporter.events if e.kind == "deploy.state"]
    assert states[-3:] == [DeployState.ROLLING_BACK, DeployState.ROLLED_BACK, DeployState.CLEANUP]
    assert DeployState.COMMITTED not in states


def test_stderr_output_fails_by_default(executor, layout, artifact):
    live = seed_live(layout, {"VERSION": "1\n"})
    command = 'if [ "$(cat VERSION)" = "2" ]; then echo "pulling image" >&2; fi'

    with pytest.raises(RemoteCommandError) as exc_info:
        DeploymentOrchestrator(executor, layout, command).run(str(artifact))

    assert exc_info.value.exit_status == 0
    assert exc_info.value.stderr_lines == ["pulling image"]
    assert (live / "VERSION").read_text() == "1\n"


def test_stderr_policy_can_tolerate_tool_chatter(executor, layout, artifact):
    command = 'echo "pulling image" >&2; true'
    attempt = DeploymentOrchestrator(
        executor, layout, command, deploy_stderr_policy=ignore_stderr
    ).run(str(artifact))
    assert attempt.committed


def test_stderr_pattern_policy_only_fails_on_matching_lines(executor, layout, artifact, tmp_path):
    policy = stderr_matching(r"(?i)\berror\b")
    ok = DeploymentOrchestrator(
        executor, layout, 'echo "Step 1/3" >&2', deploy_stderr_policy=policy
    ).run(str(artifact))
    assert ok.committed

    v3 = build_artifact(tmp_path / "shop-v3.tar.gz", {"VERSION": "3\n"})
    command = 'if [ "$(cat VERSION)" = "3" ]; then echo "ERROR: port in use" >&2; fi'
    with pytest.raises(RemoteCommandError) as exc_info:
        DeploymentOrchestrator(executor, layout, command, deploy_stderr_policy=policy).run(str(v3))
    assert exc_info.value.stderr_lines == ["ERROR: port in use"]
    assert (Path(layout.live_path) / "VERSION").read_text() == "2\n"


def test_failing_health_check_rolls_back_within_bound(executor, layout, artifact, tmp_path):
    live = seed_live(layout, {"VERSION": "1\n"})
    log_file = tmp_path / "launches.log"
    orchestrator = DeploymentOrchestrator(
        executor,
        layout,
        launch_log_command(log_file),
        health_check_urls=["http://203.0.113.10/health"],
        health_check_timeout=0.3,
        health_check_interval=0.05,
        http_client=status_client(503),
    )

    start = time.monotonic()
    with pytest.raises(ReadinessTimeout):
        orchestrator.run(str(artifact))
    elapsed = time.monotonic() - start

    assert elapsed < 0.3 + 0.05 + 2.0
    assert (live / "VERSION").read_text() == "1\n"
    assert log_file.read_text() == "2\n1\n"
    assert not Path(layout.scratch_dir).exists()


def test_passing_health_check_commits(executor, layout, artifact, tmp_path):
    attempt = DeploymentOrchestrator(
        executor,
        layout,
        "true",
        health_check_urls=["http://203.0.113.10/health", "http://203.0.113.10/ready"],
        health_check_timeout=1,
        health_check_interval=0.01,
        http_client=status_client(502, 200),
    ).run(str(artifact))
    assert attempt.committed


def test_failure_before_backup_does_not_roll_back(layout, artifact):
    live = seed_live(layout, {"VERSION": "1\n"})

    class DroppingExecutor(LocalExecutor):
        def put(self, local_path, remote_path):
            raise RemoteConnectionError("put", message="connection reset")

    executor = DroppingExecutor()
    with pytest.raises(RemoteConnectionError):
        DeploymentOrchestrator(executor, layout, "true").run(str(artifact))

    assert not executor.ran("mv ")
    assert (live / "VERSION").read_text() == "1\n"
    assert not Path(layout.scratch_dir).exists()


def test_failed_rollback_raises_distinct_error_and_keeps_backup(layout, artifact):
    seed_live(layout, {"VERSION": "1\n"})
    executor = LocalExecutor(
        fail_when=lambda command: command.startswith(f"mv {layout.backup_path} ")
    )

    with pytest.raises(RollbackError) as exc_info:
        DeploymentOrchestrator(
            executor, layout, 'test "$(cat VERSION)" != "2"'
        ).run(str(artifact))

    assert isinstance(exc_info.value.original, RemoteCommandError)
    assert (Path(layout.backup_path) / "VERSION").read_text() == "1\n"
    assert not Path(layout.staging_path).exists()


def test_cleanup_failure_does_not_mask_success(layout, artifact, reporter):
    cleanup = f"rm -rf {layout.archive_dir} {layout.staging_path}"
    executor = LocalExecutor(fail_when=lambda command: command.startswith(cleanup))

    attempt = DeploymentOrchestrator(executor, layout, "true", reporter=reporter).run(str(artifact))

    assert attempt.committed
    assert "deploy.cleanup_failed" in reporter.kinds()


def test_missing_artifact_is_a_configuration_error(executor, layout, tmp_path):
    with pytest.raises(ConfigurationError):
        DeploymentOrchestrator(executor, layout, "true").run(str(tmp_path / "nope.tar.gz"))
    assert executor.commands == []


def test_commands_run_in_order_without_overlap(executor, layout, artifact):
    seed_live(layout, {"VERSION": "1\n"})
    DeploymentOrchestrator(executor, layout, "echo starting").run(str(artifact))
    commands = [command for command, _ in executor.commands]

    def index(fragment):
        return next(i for i, c in enumerate(commands) if fragment in c)

    order = [
        "mkdir -p",
        "cp -a",
        "tar -xzf",
        f"mv {layout.staging_path} {layout.live_path}",
        "echo starting",
    ]
    assert [index(fragment) for fragment in order] == sorted(index(f) for f in order)
    start_cwd = next(cwd for command, cwd in executor.commands if command == "echo starting")
    assert start_cwd == layout.live_path


def test_first_deploy_health_check_failure_restores_empty_host(
    executor, layout, artifact, tmp_path, reporter
):
    log_file = tmp_path / "launches.log"
    orchestrator = DeploymentOrchestrator(
        executor,
        layout,
        launch_log_command(log_file),
        health_check_urls=["http://203.0.113.10/health"],
        health_check_timeout=0.2,
        health_check_interval=0.05,
        http_client=status_client(503),
        reporter=reporter,
    )

    with pytest.raises(ReadinessTimeout):
        orchestrator.run(str(artifact))

    assert not Path(layout.live_path).exists()
    # nothing to relaunch without a previous version
    assert log_file.read_text() == "2\n"
    assert not Path(layout.scratch_dir).exists()
    assert "deploy.rolled_back" in reporter.kinds()


def test_first_deploy_command_failure_is_not_a_rollback_error(executor, layout, artifact):
    with pytest.raises(RemoteCommandError) as exc_info:
        DeploymentOrchestrator(executor, layout, "exit 3").run(str(artifact))

    assert not isinstance(exc_info.value, RollbackError)
    assert exc_info.value.exit_status == 3
    assert not Path(layout.live_path).exists()
    assert [command for command, _ in executor.commands].count("exit 3") == 1


def test_artifact_named_like_scratch_entries(executor, layout, tmp_path):
    seed_live(layout, {"VERSION": "1\n"})
    artifact = build_artifact(tmp_path / "backup", {"VERSION": "2\n"})

    attempt = DeploymentOrchestrator(executor, layout, "true").run(str(artifact))

    assert attempt.committed
    assert attempt.archive_path == f"{layout.archive_dir}/backup"
    assert (Path(layout.live_path) / "VERSION").read_text() == "2\n"
