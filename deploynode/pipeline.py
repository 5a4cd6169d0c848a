"""End-to-end run: reconcile resources, wait for the host, deploy onto it."""

import threading
from dataclasses import dataclass
from typing import Sequence

import httpx

from .deploy import (
    DeployLayout,
    DeploymentAttempt,
    DeploymentOrchestrator,
    validate_deploy_inputs,
)
from .errors import ProviderError
from .progress import LogReporter, Reporter, report
from .providers import Provider
from .readiness import BOOT_WAIT_INTERVAL, BOOT_WAIT_TIMEOUT, accept_boot_status, wait_until_ready
from .reconcile import ResourceReconciler
from .remote import RemoteExecutor, StderrPolicy, fail_on_stderr
from .types import ComputeInstance, DomainRecord, DomainSpec, InstanceSpec, SSHCredentials


@dataclass
class PipelineResult:
    instance: ComputeInstance
    records: dict[str, list[DomainRecord]]
    attempt: DeploymentAttempt


def instance_address(instance: ComputeInstance) -> str:
    if not instance.get("ipv4"):
        raise ProviderError(f"Instance '{instance.get('label')}' has no IPv4 address")
    return instance["ipv4"][0]


def run_pipeline(
    provider: Provider,
    executor: RemoteExecutor,
    *,
    label: str,
    instance_spec: InstanceSpec,
    domains: dict[str, list[str]],
    domain_spec: DomainSpec,
    credentials: SSHCredentials,
    layout: DeployLayout,
    artifact_path: str,
    deploy_command: str,
    health_check_urls: Sequence[str] = (),
    health_check_timeout: float = 60,
    boot_timeout: float = BOOT_WAIT_TIMEOUT,
    boot_interval: float = BOOT_WAIT_INTERVAL,
    deploy_stderr_policy: StderrPolicy = fail_on_stderr,
    reporter: Reporter | None = None,
    stop_event: threading.Event | None = None,
    http_client: httpx.Client | None = None,
) -> PipelineResult:
    """Provision, point DNS, wait for the host, then deploy.

    A missing artifact or empty deploy command is rejected before any
    provider call. Any reconciliation or readiness error aborts before the
    host is touched.
    """
    validate_deploy_inputs(artifact_path, deploy_command)
    reporter = reporter or LogReporter()
    reconciler = ResourceReconciler(provider, reporter)

    instance = reconciler.reconcile_instance(label, instance_spec)
    host = instance_address(instance)
    records = reconciler.reconcile_dns(domains, host, domain_spec)

    url = f"http://{host}"
    report(reporter, "boot.waiting", f"Waiting for '{label}' to initialize (checking {url})...")
    wait_until_ready(
        url,
        interval=boot_interval,
        timeout=boot_timeout,
        accept=accept_boot_status,
        client=http_client,
        stop_event=stop_event,
    )
    report(
        reporter,
        "boot.ready",
        f"{url} is up. Connected domains: {', '.join(domains)}",
    )

    report(reporter, "ssh.connecting", f"Connecting to {credentials.get('user', 'deploy')}@{host}...")
    executor.connect(host, credentials)
    try:
        orchestrator = DeploymentOrchestrator(
            executor,
            layout,
            deploy_command,
            health_check_urls=health_check_urls,
            health_check_timeout=health_check_timeout,
            deploy_stderr_policy=deploy_stderr_policy,
            reporter=reporter,
            stop_event=stop_event,
            http_client=http_client,
        )
        attempt = orchestrator.run(artifact_path)
    finally:
        executor.close()

    return PipelineResult(instance=instance, records=records, attempt=attempt)
