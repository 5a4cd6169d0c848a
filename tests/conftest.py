"""Shared fixtures: an in-memory provider, a local-shell executor, and artifacts."""

import io
import itertools
import shlex
import shutil
import subprocess
import tarfile
import threading
import time
from pathlib import Path

import httpx
import pytest

from deploynode.deploy import DeployLayout
from deploynode.errors import ProviderError
from deploynode.remote import CommandResult

INSTANCE_IP = "203.0.113.10"


def pytest_addoption(parser):
    parser.addoption(
        "--provider",
        default="linode",
        help="Cloud provider for integration tests (default: linode)",
    )


@pytest.fixture(scope="session")
def provider_name(request):
    return request.config.getoption("--provider")


class FakeProvider:
    """In-memory provider recording every call."""

    provider_name = "linode"

    def __init__(self):
        self.instance_defaults = {
            "type": "g6-nanode-1",
            "region": "us-central",
            "image": "linode/centos7",
            "booted": True,
        }
        self.instances: list[dict] = []
        self.domains: list[dict] = []
        self.records: dict[int, list[dict]] = {}
        self.calls: list[tuple] = []
        self.fail_on: set[str] = set()
        self._ids = itertools.count(100)
        self._lock = threading.Lock()

    def _call(self, name: str, *args):
        with self._lock:
            self.calls.append((name, *args))
        if name in self.fail_on:
            raise ProviderError(f"{name} failed", status_code=500)

    def _next_id(self) -> int:
        with self._lock:
            return next(self._ids)

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0].startswith(("create", "update"))]

    def list_instances(self):
        self._call("list_instances")
        return [dict(i) for i in self.instances]

    def create_instance(self, spec):
        self._call("create_instance", dict(spec))
        instance = {**spec, "id": self._next_id(), "ipv4": [INSTANCE_IP], "status": "provisioning"}
        self.instances.append(instance)
        return dict(instance)

    def list_domains(self):
        self._call("list_domains")
        return [dict(d) for d in self.domains]

    def create_domain(self, spec):
        self._call("create_domain", dict(spec))
        domain = {**spec, "id": self._next_id()}
        self.domains.append(domain)
        self.records[domain["id"]] = []
        return dict(domain)

    def list_records(self, domain_id):
        self._call("list_records", domain_id)
        return [dict(r) for r in self.records.get(domain_id, [])]

    def create_record(self, domain_id, spec):
        self._call("create_record", domain_id, dict(spec))
        record = {"ttl_sec": 0, **spec, "id": self._next_id()}
        self.records.setdefault(domain_id, []).append(record)
        return dict(record)

    def update_record(self, domain_id, record_id, spec):
        self._call("update_record", domain_id, record_id, dict(spec))
        record = next(r for r in self.records[domain_id] if r["id"] == record_id)
        record.update(spec)
        return dict(record)


@pytest.fixture
def provider():
    return FakeProvider()


class RecordingReporter:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [e.kind for e in self.events]


@pytest.fixture
def reporter():
    return RecordingReporter()


class LocalExecutor:
    """RemoteExecutor that runs commands with bash on the local machine.

    ``fail_when`` makes matching commands exit 1 without running.
    """

    def __init__(self, fail_when=None):
        self.fail_when = fail_when
        self.commands: list[tuple[str, str | None]] = []
        self.transfers: list[tuple[str, str]] = []
        self.host = None
        self.closed = False

    def connect(self, host, credentials):
        self.host = host
        self.credentials = credentials

    def run(self, command, *, cwd=None, on_stdout=None, on_stderr=None):
        self.commands.append((command, cwd))
        if self.fail_when and self.fail_when(command):
            if on_stderr:
                on_stderr("simulated failure")
            return CommandResult(command, 1, [], ["simulated failure"])

        script = f"cd {shlex.quote(cwd)} && {command}" if cwd else command
        proc = subprocess.run(["bash", "-c", script], capture_output=True, text=True)
        stdout = [line for line in proc.stdout.splitlines() if line.strip()]
        stderr = [line for line in proc.stderr.splitlines() if line.strip()]
        for line in stdout:
            if on_stdout:
                on_stdout(line)
        for line in stderr:
            if on_stderr:
                on_stderr(line)
        return CommandResult(command, proc.returncode, stdout, stderr)

    def put(self, local_path, remote_path):
        self.transfers.append((local_path, remote_path))
        shutil.copyfile(local_path, remote_path)

    def close(self):
        self.closed = True

    def ran(self, fragment: str) -> bool:
        return any(fragment in command for command, _ in self.commands)


@pytest.fixture
def executor():
    return LocalExecutor()


@pytest.fixture
def layout(tmp_path):
    return DeployLayout(
        project="shop",
        environment="test",
        base_dir=str(tmp_path / "srv"),
        scratch_root=str(tmp_path / "scratch"),
    )


def build_artifact(path: Path, files: dict[str, str]) -> Path:
    """Write a .tar.gz containing ``files`` (relative path -> text)."""
    with tarfile.open(path, "w:gz") as tar:
        for name, text in files.items():
            data = text.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            info.mtime = int(time.time()) - 60
            tar.addfile(info, io.BytesIO(data))
    return path


@pytest.fixture
def artifact(tmp_path):
    return build_artifact(
        tmp_path / "shop.tar.gz",
        {"VERSION": "2\n", "app/main.py": "print('v2')\n"},
    )


def snapshot(directory: Path) -> dict[str, bytes]:
    """Relative path -> bytes for every file under ``directory``."""
    return {
        str(p.relative_to(directory)): p.read_bytes()
        for p in sorted(directory.rglob("*"))
        if p.is_file()
    }


def status_client(*statuses: int) -> httpx.Client:
    """httpx client answering with ``statuses`` in turn, repeating the last one."""
    sequence = list(statuses)

    def handler(request: httpx.Request) -> httpx.Response:
        status = sequence.pop(0) if len(sequence) > 1 else sequence[0]
        return httpx.Response(status)

    return httpx.Client(transport=httpx.MockTransport(handler))
