"""deploynode - provision a node, reconcile DNS, deploy with rollback."""

from .deploy import DeployLayout, DeploymentAttempt, DeploymentOrchestrator, DeployState
from .errors import (
    ConfigurationError,
    DeployNodeError,
    ProviderError,
    ReadinessTimeout,
    RemoteCommandError,
    RemoteConnectionError,
    RollbackError,
    WaitCancelled,
)
from .pipeline import PipelineResult, run_pipeline
from .providers import PROVIDER_OPTIONS, AWSProvider, LinodeProvider, Provider, get_provider
from .readiness import accept_boot_status, accept_ok_status, wait_until_ready
from .reconcile import ResourceReconciler, address_record_names
from .remote import FabricExecutor, RemoteExecutor
from .types import (
    ComputeInstance,
    Domain,
    DomainRecord,
    DomainSpec,
    InstanceSpec,
    ProviderName,
    RecordSpec,
    SSHCredentials,
)
from .utils import error, log, warn

__all__ = [
    "AWSProvider",
    "LinodeProvider",
    "Provider",
    "PROVIDER_OPTIONS",
    "get_provider",
    "ResourceReconciler",
    "address_record_names",
    "wait_until_ready",
    "accept_boot_status",
    "accept_ok_status",
    "DeployLayout",
    "DeploymentAttempt",
    "DeploymentOrchestrator",
    "DeployState",
    "FabricExecutor",
    "RemoteExecutor",
    "PipelineResult",
    "run_pipeline",
    "DeployNodeError",
    "ConfigurationError",
    "ProviderError",
    "ReadinessTimeout",
    "RemoteCommandError",
    "RemoteConnectionError",
    "RollbackError",
    "WaitCancelled",
    "log",
    "warn",
    "error",
    "ComputeInstance",
    "Domain",
    "DomainRecord",
    "DomainSpec",
    "InstanceSpec",
    "ProviderName",
    "RecordSpec",
    "SSHCredentials",
]
