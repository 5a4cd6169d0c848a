"""Type definitions for deploynode."""

from typing import Literal, TypedDict

ProviderName = Literal["linode", "aws"]
RecordType = Literal["A", "AAAA", "CNAME", "MX", "TXT"]


class InstanceSpec(TypedDict, total=False):
    """Desired provisioning template for a compute instance."""

    type: str
    region: str
    image: str
    booted: bool
    root_pass: str
    authorized_keys: list[str]
    stackscript_id: int
    stackscript_data: dict[str, str]  # boot-time customization payload (Linode)
    user_data: str  # boot-time customization payload (AWS cloud-init)
    key_name: str  # AWS only: EC2 key pair name


class ComputeInstance(TypedDict, total=False):
    """Compute instance as returned by a provider."""

    id: str | int
    label: str
    ipv4: list[str]
    status: str
    region: str
    type: str
    image: str


class DomainSpec(TypedDict, total=False):
    """Desired state for a DNS zone."""

    type: str  # "master" for a primary zone
    soa_email: str


class Domain(TypedDict, total=False):
    """DNS zone as returned by a provider."""

    id: str | int
    domain: str
    type: str
    soa_email: str


class RecordSpec(TypedDict, total=False):
    """Desired state for a DNS record. ``name`` is ``""`` for the zone apex."""

    type: RecordType
    name: str
    target: str
    ttl_sec: int


class DomainRecord(TypedDict, total=False):
    """DNS record as returned by a provider."""

    id: str | int
    type: RecordType
    name: str
    target: str
    ttl_sec: int


class SSHCredentials(TypedDict, total=False):
    """Credentials for the remote command channel."""

    user: str
    private_key: str  # key text; takes precedence over key_filename
    key_filename: str
    port: int
