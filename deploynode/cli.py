#!/usr/bin/env python3
"""Provision a node, point DNS at it, and deploy a build artifact with rollback.

Usage: uv run deploynode <command> [options]

Examples:
    uv run deploynode up web-1 example.com,www.example.com ./dist.tar.gz "docker compose up -d" \\
        --email ops@example.com --public-key "$(cat ~/.ssh/id_ed25519.pub)" \\
        --private-key-file ~/.ssh/id_ed25519
    uv run deploynode instance list
    uv run deploynode dns verify example.com,api.example.com 203.0.113.10
    uv run deploynode deploy 203.0.113.10 ./dist.tar.gz "./start.sh" --environment staging
"""

import signal
import threading
from pathlib import Path

import cyclopts
from rich import print

from .config import (
    DEFAULT_DEPLOY_USER,
    DEFAULT_ENVIRONMENT,
    build_instance_spec,
    default_project,
    get_setting,
    parse_domains,
)
from .deploy import BASE_DEPLOY_DIR, DeployLayout, DeploymentOrchestrator, validate_deploy_inputs
from .errors import DeployNodeError, RollbackError
from .pipeline import instance_address, run_pipeline
from .progress import LogReporter
from .providers import ProviderName, get_provider
from .readiness import (
    BOOT_WAIT_INTERVAL,
    BOOT_WAIT_TIMEOUT,
    HEALTH_CHECK_TIMEOUT,
    accept_boot_status,
    check_dns,
    wait_until_ready,
)
from .reconcile import ResourceReconciler, address_record_names
from .remote import FabricExecutor, StderrPolicy, fail_on_stderr, ignore_stderr, stderr_matching
from .types import InstanceSpec, SSHCredentials
from .utils import error, log, setup_logging, warn

STOP = threading.Event()

app = cyclopts.App(
    name="deploynode",
    help="Provision a node, reconcile DNS, and deploy with rollback",
    sort_key=None,
)

instance_app = cyclopts.App(name="instance", help="Manage the compute instance", sort_key=1)
dns_app = cyclopts.App(name="dns", help="Manage DNS zones and address records", sort_key=2)

app.command(instance_app)
app.command(dns_app)


def _stderr_policy(allow_stderr: bool, stderr_fail_pattern: str | None) -> StderrPolicy:
    if stderr_fail_pattern:
        return stderr_matching(stderr_fail_pattern)
    return ignore_stderr if allow_stderr else fail_on_stderr


def _credentials(
    deploy_user: str, private_key_file: str | None, port: int
) -> SSHCredentials:
    credentials: SSHCredentials = {"user": deploy_user, "port": port}
    private_key = get_setting("DEPLOYNODE_SSH_PRIVATE_KEY")
    if private_key_file:
        credentials["key_filename"] = str(Path(private_key_file).expanduser())
    elif private_key:
        credentials["private_key"] = private_key
    return credentials


def _layout(project: str | None, environment: str, base_dir: str | None) -> DeployLayout:
    return DeployLayout(
        project=project or default_project(),
        environment=environment,
        base_dir=base_dir or get_setting("DEPLOYNODE_BASE_DIR", BASE_DEPLOY_DIR),
    )


def _reporter(*secrets: str | None) -> LogReporter:
    return LogReporter(
        secrets=[
            *secrets,
            get_setting("LINODE_TOKEN"),
            get_setting("DEPLOYNODE_SSH_PRIVATE_KEY"),
        ]
    )


@app.command(name="up")
def up(
    label: str,
    domains: str,
    artifact: str,
    command: str,
    *,
    email: str,
    public_key: str,
    private_key_file: str | None = None,
    deploy_user: str = DEFAULT_DEPLOY_USER,
    ssh_port: int = 22,
    provider: ProviderName | None = None,
    region: str | None = None,
    instance_type: str | None = None,
    image: str | None = None,
    root_pass: str | None = None,
    admin_users_file: str | None = None,
    project: str | None = None,
    environment: str = DEFAULT_ENVIRONMENT,
    base_dir: str | None = None,
    health_check: list[str] | None = None,
    health_check_timeout: float = HEALTH_CHECK_TIMEOUT,
    boot_timeout: float = BOOT_WAIT_TIMEOUT,
    allow_stderr: bool = False,
    stderr_fail_pattern: str | None = None,
):
    """Provision the instance, point DNS at it, wait for it, then deploy.

    :param label: Instance label; an existing instance with this label is reused
    :param domains: Comma-separated names, e.g. example.com,api.example.com
    :param artifact: Local .tar.gz build artifact
    :param command: Deploy command, run in the live directory
    :param email: SOA email for newly created DNS zones
    :param public_key: Deploy user's public key, installed at boot
    :param private_key_file: Deploy user's private key (default: DEPLOYNODE_SSH_PRIVATE_KEY)
    :param provider: Cloud provider (default: DEPLOYNODE_PROVIDER or linode)
    :param root_pass: Root password for a new Linode (default: random)
    :param admin_users_file: JSON file of admin users for the boot script
    :param project: Project name (default: DEPLOYNODE_PROJECT, GitHub repository, or cwd)
    :param environment: Deployment environment, part of the live path
    :param health_check: URL that must return 200 after deploy (repeatable)
    :param allow_stderr: Do not treat deploy command stderr output as failure
    :param stderr_fail_pattern: Only stderr lines matching this regex fail the deploy command
    """
    validate_deploy_inputs(artifact, command)
    parsed_domains = parse_domains(domains)
    layout = _layout(project, environment, base_dir)
    p = get_provider(provider, region=region)
    overrides: InstanceSpec = {"region": region, "type": instance_type, "image": image}
    instance_spec = build_instance_spec(
        p.provider_name,
        deploy_user=deploy_user,
        public_key=public_key,
        base_dir=layout.base_dir,
        root_pass=root_pass,
        admin_users_file=admin_users_file,
        overrides=overrides,
    )

    result = run_pipeline(
        p,
        FabricExecutor(),
        label=label,
        instance_spec=instance_spec,
        domains=parsed_domains,
        domain_spec={"soa_email": email},
        credentials=_credentials(deploy_user, private_key_file, ssh_port),
        layout=layout,
        artifact_path=artifact,
        deploy_command=command,
        health_check_urls=health_check or [],
        health_check_timeout=health_check_timeout,
        boot_timeout=boot_timeout,
        deploy_stderr_policy=_stderr_policy(allow_stderr, stderr_fail_pattern),
        reporter=_reporter(root_pass),
        stop_event=STOP,
    )
    log(f"Done! '{layout.live_path}' on {instance_address(result.instance)}")


@instance_app.command(name="ensure")
def ensure_instance(
    label: str,
    *,
    public_key: str,
    deploy_user: str = DEFAULT_DEPLOY_USER,
    provider: ProviderName | None = None,
    region: str | None = None,
    instance_type: str | None = None,
    image: str | None = None,
    root_pass: str | None = None,
    admin_users_file: str | None = None,
    base_dir: str = BASE_DEPLOY_DIR,
):
    """Find the instance by label, creating it if absent.

    :param label: Instance label
    :param public_key: Deploy user's public key, installed at boot
    """
    p = get_provider(provider, region=region)
    spec = build_instance_spec(
        p.provider_name,
        deploy_user=deploy_user,
        public_key=public_key,
        base_dir=base_dir,
        root_pass=root_pass,
        admin_users_file=admin_users_file,
        overrides={"region": region, "type": instance_type, "image": image},
    )
    instance = ResourceReconciler(p, _reporter(root_pass)).reconcile_instance(label, spec)
    print(f"  ID: {instance['id']}")
    print(f"  IP: {instance_address(instance)}")


@instance_app.command(name="list")
def list_instances(*, provider: ProviderName | None = None, region: str | None = None):
    """List instances in the account."""
    p = get_provider(provider, region=region)
    instances = p.list_instances()
    if not instances:
        log("No instances found")
        return

    rows = [
        (str(i.get("label", "")), ", ".join(i.get("ipv4", [])) or "N/A", str(i.get("status", "")))
        for i in instances
    ]
    max_label = max(len(r[0]) for r in rows + [("LABEL", "", "")])
    max_ip = max(len(r[1]) for r in rows + [("", "IP ADDRESS", "")])
    print(f"  {'LABEL'.ljust(max_label)}  {'IP ADDRESS'.ljust(max_ip)}  STATUS")
    print(f"  {'-' * max_label}  {'-' * max_ip}  ---")
    for label, ip, status in rows:
        print(f"  {label.ljust(max_label)}  {ip.ljust(max_ip)}  {status}")


@dns_app.command(name="ensure")
def ensure_dns(
    domains: str,
    ip: str,
    *,
    email: str,
    provider: ProviderName | None = None,
):
    """Create missing zones and point the apex and every subdomain at IP.

    :param domains: Comma-separated names, e.g. example.com,api.example.com
    :param ip: IPv4 address the records should target
    :param email: SOA email for newly created zones
    """
    parsed = parse_domains(domains)
    p = get_provider(provider)
    ResourceReconciler(p, _reporter()).reconcile_dns(parsed, ip, {"soa_email": email})


@dns_app.command(name="verify")
def verify_dns(domains: str, ip: str, *, nameserver: str = "8.8.8.8"):
    """Check that every reconciled name already resolves to IP.

    :param domains: Comma-separated names, e.g. example.com,api.example.com
    :param ip: Expected IPv4 address
    :param nameserver: Resolver to query
    """
    names = [
        f"{label}.{name}" if label else name
        for name, subdomains in parse_domains(domains).items()
        for label in address_record_names(subdomains)
    ]
    mismatches = check_dns(names, ip, nameserver)
    for name in names:
        if name in mismatches:
            warn(f"'{name}' resolves to '{mismatches[name] or 'nothing'}', expected '{ip}'")
        else:
            log(f"'{name}' -> {ip}")
    if mismatches:
        error(f"{len(mismatches)} of {len(names)} names do not resolve to '{ip}' yet")


@app.command(name="wait")
def wait(
    url: str,
    *,
    timeout: float = BOOT_WAIT_TIMEOUT,
    interval: float = BOOT_WAIT_INTERVAL,
):
    """Block until URL answers with a status between 200 and 503.

    :param url: URL to poll
    :param timeout: Seconds before giving up
    :param interval: Seconds between polls
    """
    wait_until_ready(
        url, interval=interval, timeout=timeout, accept=accept_boot_status, stop_event=STOP
    )


@app.command(name="deploy")
def deploy(
    host: str,
    artifact: str,
    command: str,
    *,
    private_key_file: str | None = None,
    deploy_user: str = DEFAULT_DEPLOY_USER,
    ssh_port: int = 22,
    project: str | None = None,
    environment: str = DEFAULT_ENVIRONMENT,
    base_dir: str | None = None,
    health_check: list[str] | None = None,
    health_check_timeout: float = HEALTH_CHECK_TIMEOUT,
    allow_stderr: bool = False,
    stderr_fail_pattern: str | None = None,
):
    """Run only the deploy transaction against an existing host.

    :param host: Host name or IP address
    :param artifact: Local .tar.gz build artifact
    :param command: Deploy command, run in the live directory
    :param health_check: URL that must return 200 after deploy (repeatable)
    """
    validate_deploy_inputs(artifact, command)
    layout = _layout(project, environment, base_dir)
    with FabricExecutor() as executor:
        executor.connect(host, _credentials(deploy_user, private_key_file, ssh_port))
        DeploymentOrchestrator(
            executor,
            layout,
            command,
            health_check_urls=health_check or [],
            health_check_timeout=health_check_timeout,
            deploy_stderr_policy=_stderr_policy(allow_stderr, stderr_fail_pattern),
            reporter=_reporter(),
            stop_event=STOP,
        ).run(artifact)
    log(f"Done! '{layout.live_path}' on {host}")


def main():
    setup_logging(get_setting("DEPLOYNODE_LOG_LEVEL", "INFO"))
    signal.signal(signal.SIGTERM, lambda *_: STOP.set())
    try:
        app()
    except RollbackError as e:
        error(f"{e}\nOriginal failure: {e.original}")
    except DeployNodeError as e:
        error(str(e))


if __name__ == "__main__":
    main()
