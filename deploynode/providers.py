"""Cloud provider clients for Linode and AWS.

Each provider object carries its own credentials; nothing is configured
process-wide. All methods raise ProviderError on API failure and are never
retried.
"""

import os
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Protocol

import boto3
import httpx
from botocore.exceptions import BotoCoreError, ClientError
from dotenv import load_dotenv

from .errors import ConfigurationError, ProviderError
from .types import (
    ComputeInstance,
    Domain,
    DomainRecord,
    InstanceSpec,
    ProviderName,
    RecordSpec,
)
from .utils import debug, log

PROVIDER_OPTIONS: list[ProviderName] = ["linode", "aws"]

LINODE_API_URL = "https://api.linode.com/v4"


class Provider(Protocol):
    provider_name: ProviderName
    instance_defaults: InstanceSpec

    def list_instances(self) -> list[ComputeInstance]: ...

    def create_instance(self, spec: dict) -> ComputeInstance: ...

    def list_domains(self) -> list[Domain]: ...

    def create_domain(self, spec: dict) -> Domain: ...

    def list_records(self, domain_id: str | int) -> list[DomainRecord]: ...

    def create_record(self, domain_id: str | int, spec: RecordSpec) -> DomainRecord: ...

    def update_record(
        self, domain_id: str | int, record_id: str | int, spec: RecordSpec
    ) -> DomainRecord: ...


class LinodeProvider:
    """Linode REST API v4 client."""

    PAGE_SIZE = 500

    def __init__(
        self,
        token: str,
        *,
        base_url: str = LINODE_API_URL,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        """
        :param token: Linode personal access token
        :param transport: Optional httpx transport (tests pass httpx.MockTransport)
        """
        if not token:
            raise ConfigurationError("A Linode API token is required (set LINODE_TOKEN)")
        self.provider_name: ProviderName = "linode"
        self.instance_defaults: InstanceSpec = {
            "type": "g6-nanode-1",
            "region": "us-central",
            "stackscript_id": 693032,
            "image": "linode/centos7",
            "booted": True,
        }
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {token}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> dict:
        try:
            response = self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as e:
            raise ProviderError(f"Linode API {method} {path} failed: {e}") from e

        if response.is_error:
            try:
                errors = response.json().get("errors", [])
                reason = "; ".join(
                    f"{err['field']}: {err['reason']}" if err.get("field") else err.get("reason", "")
                    for err in errors
                )
            except ValueError:
                reason = response.text
            raise ProviderError(
                f"Linode API {method} {path} returned {response.status_code}: {reason}",
                status_code=response.status_code,
            )
        return response.json()

    def _paginate(self, path: str) -> list[dict]:
        items = []
        page = 1
        while True:
            body = self._request(
                "GET", path, params={"page": page, "page_size": self.PAGE_SIZE}
            )
            items.extend(body.get("data", []))
            if page >= body.get("pages", 1):
                return items
            page += 1

    def list_instances(self) -> list[ComputeInstance]:
        return self._paginate("/linode/instances")

    def create_instance(self, spec: dict) -> ComputeInstance:
        return self._request("POST", "/linode/instances", json=spec)

    def list_domains(self) -> list[Domain]:
        return self._paginate("/domains")

    def create_domain(self, spec: dict) -> Domain:
        return self._request("POST", "/domains", json=spec)

    def list_records(self, domain_id: str | int) -> list[DomainRecord]:
        return self._paginate(f"/domains/{domain_id}/records")

    def create_record(self, domain_id: str | int, spec: RecordSpec) -> DomainRecord:
        return self._request("POST", f"/domains/{domain_id}/records", json=dict(spec))

    def update_record(
        self, domain_id: str | int, record_id: str | int, spec: RecordSpec
    ) -> DomainRecord:
        return self._request(
            "PUT", f"/domains/{domain_id}/records/{record_id}", json=dict(spec)
        )


@contextmanager
def _aws_errors(action: str):
    """Translate boto errors raised inside the block into ProviderError."""
    try:
        yield
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "Unknown")
        status = e.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        raise ProviderError(f"AWS {action} failed ({code}): {e}", status_code=status) from e
    except BotoCoreError as e:
        raise ProviderError(f"AWS {action} failed: {e}") from e


class AWSProvider:
    """EC2 instances and Route53 hosted zones.

    Route53 has no record ids, so a record is identified by ``"<name>|<type>"``
    and both create and update are issued as UPSERT changes.
    """

    # Debian images published by the Debian project account
    DEBIAN_OWNER = "136693071363"

    def __init__(
        self,
        *,
        region: str | None = None,
        aws_profile: str | None = None,
        session: boto3.Session | None = None,
    ):
        self.provider_name: ProviderName = "aws"
        if session is None:
            config: dict[str, Any] = {}
            if aws_profile:
                config["profile_name"] = aws_profile
            if region:
                config["region_name"] = region
            session = boto3.Session(**config)
        self._session = session
        self.region = session.region_name or "ap-southeast-2"
        self.instance_defaults: InstanceSpec = {
            "type": "t3.micro",
            "region": self.region,
            "image": "debian-12-amd64-*",
            "booted": True,
        }
        self._ec2 = None
        self._route53 = None
        self._zone_names: dict[str, str] = {}
        # boto3 sessions are not thread-safe; DNS fan-out reaches these from workers
        self._clients_lock = threading.Lock()

    @property
    def ec2(self):
        with self._clients_lock:
            if self._ec2 is None:
                self._ec2 = self._session.client("ec2", region_name=self.region)
            return self._ec2

    @property
    def route53(self):
        with self._clients_lock:
            if self._route53 is None:
                self._route53 = self._session.client("route53")
            return self._route53

    def validate_auth(self) -> None:
        """Fail fast if credentials are missing or expired."""
        with self._clients_lock:
            sts = self._session.client("sts")
        with _aws_errors("authentication"):
            identity = sts.get_caller_identity()
        log(f"AWS: region={self.region}  account={identity.get('Account', 'unknown')}")

    @staticmethod
    def _to_instance(raw: dict) -> ComputeInstance:
        label = next(
            (tag["Value"] for tag in raw.get("Tags", []) if tag["Key"] == "Name"),
            raw["InstanceId"],
        )
        ip = raw.get("PublicIpAddress")
        return {
            "id": raw["InstanceId"],
            "label": label,
            "ipv4": [ip] if ip else [],
            "status": raw["State"]["Name"],
            "region": raw.get("Placement", {}).get("AvailabilityZone", ""),
            "type": raw.get("InstanceType", ""),
            "image": raw.get("ImageId", ""),
        }

    def list_instances(self) -> list[ComputeInstance]:
        instances = []
        with _aws_errors("describe_instances"):
            paginator = self.ec2.get_paginator("describe_instances")
            for page in paginator.paginate(
                Filters=[
                    {
                        "Name": "instance-state-name",
                        "Values": ["running", "pending", "stopping", "stopped"],
                    }
                ]
            ):
                for reservation in page["Reservations"]:
                    instances.extend(self._to_instance(i) for i in reservation["Instances"])
        return instances

    def _find_ami(self, pattern: str) -> str:
        if pattern.startswith("ami-"):
            return pattern
        with _aws_errors("describe_images"):
            response = self.ec2.describe_images(
                Filters=[
                    {"Name": "name", "Values": [pattern]},
                    {"Name": "state", "Values": ["available"]},
                    {"Name": "architecture", "Values": ["x86_64"]},
                ],
                Owners=[self.DEBIAN_OWNER],
            )
        if not response["Images"]:
            raise ProviderError(f"No AMI found matching pattern: '{pattern}'")
        images = sorted(response["Images"], key=lambda x: x["CreationDate"], reverse=True)
        return images[0]["ImageId"]

    def create_instance(self, spec: dict) -> ComputeInstance:
        ami_id = self._find_ami(spec["image"])
        debug(f"Using AMI: '{ami_id}'")
        run_params: dict[str, Any] = {
            "ImageId": ami_id,
            "InstanceType": spec["type"],
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {
                    "ResourceType": "instance",
                    "Tags": [
                        {"Key": "Name", "Value": spec["label"]},
                        {"Key": "ManagedBy", "Value": "deploynode"},
                        {
                            "Key": "CreatedAt",
                            "Value": datetime.now(timezone.utc).isoformat(),
                        },
                    ],
                }
            ],
        }
        if spec.get("key_name"):
            run_params["KeyName"] = spec["key_name"]
        if spec.get("user_data"):
            run_params["UserData"] = spec["user_data"]

        with _aws_errors("run_instances"):
            response = self.ec2.run_instances(**run_params)
            instance_id = response["Instances"][0]["InstanceId"]
            # A public address is only assigned once the instance leaves "pending"
            self.ec2.get_waiter("instance_running").wait(InstanceIds=[instance_id])
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        instance = self._to_instance(response["Reservations"][0]["Instances"][0])
        if not instance["ipv4"]:
            raise ProviderError(f"No public IP address assigned to instance '{instance_id}'")
        return instance

    def list_domains(self) -> list[Domain]:
        domains = []
        with _aws_errors("list_hosted_zones"):
            for page in self.route53.get_paginator("list_hosted_zones").paginate():
                for zone in page["HostedZones"]:
                    if zone.get("Config", {}).get("PrivateZone"):
                        continue
                    zone_id = zone["Id"].split("/")[-1]
                    name = zone["Name"].rstrip(".")
                    self._zone_names[zone_id] = name
                    domains.append({"id": zone_id, "domain": name, "type": "master"})
        return domains

    def create_domain(self, spec: dict) -> Domain:
        with _aws_errors("create_hosted_zone"):
            response = self.route53.create_hosted_zone(
                Name=spec["domain"],
                CallerReference=str(int(time.time() * 1000)),
            )
        zone = response["HostedZone"]
        zone_id = zone["Id"].split("/")[-1]
        name = zone["Name"].rstrip(".")
        self._zone_names[zone_id] = name
        nameservers = response.get("DelegationSet", {}).get("NameServers", [])
        if nameservers:
            log(f"Point the registrar for '{name}' at: {', '.join(nameservers)}")
        return {"id": zone_id, "domain": name, "type": spec.get("type", "master")}

    def _zone_name(self, zone_id: str) -> str:
        if zone_id not in self._zone_names:
            with _aws_errors("get_hosted_zone"):
                zone = self.route53.get_hosted_zone(Id=zone_id)["HostedZone"]
            self._zone_names[zone_id] = zone["Name"].rstrip(".")
        return self._zone_names[zone_id]

    def _fqdn(self, zone_id: str, name: str) -> str:
        zone = self._zone_name(zone_id)
        return f"{name}.{zone}" if name else zone

    def list_records(self, domain_id: str | int) -> list[DomainRecord]:
        zone_id = str(domain_id)
        zone = self._zone_name(zone_id)
        records = []
        with _aws_errors("list_resource_record_sets"):
            paginator = self.route53.get_paginator("list_resource_record_sets")
            for page in paginator.paginate(HostedZoneId=zone_id):
                for rrset in page["ResourceRecordSets"]:
                    if not rrset.get("ResourceRecords"):
                        continue  # alias records have no literal target
                    fqdn = rrset["Name"].rstrip(".")
                    name = "" if fqdn == zone else fqdn.removesuffix(f".{zone}")
                    records.append(
                        {
                            "id": f"{name}|{rrset['Type']}",
                            "type": rrset["Type"],
                            "name": name,
                            "target": rrset["ResourceRecords"][0]["Value"],
                            "ttl_sec": rrset.get("TTL", 300),
                        }
                    )
        return records

    def _upsert(self, zone_id: str, record: DomainRecord) -> DomainRecord:
        with _aws_errors("change_resource_record_sets"):
            self.route53.change_resource_record_sets(
                HostedZoneId=zone_id,
                ChangeBatch={
                    "Changes": [
                        {
                            "Action": "UPSERT",
                            "ResourceRecordSet": {
                                "Name": self._fqdn(zone_id, record["name"]),
                                "Type": record["type"],
                                "TTL": record.get("ttl_sec", 300),
                                "ResourceRecords": [{"Value": record["target"]}],
                            },
                        }
                    ]
                },
            )
        return {**record, "id": f"{record['name']}|{record['type']}"}

    def create_record(self, domain_id: str | int, spec: RecordSpec) -> DomainRecord:
        return self._upsert(str(domain_id), {"ttl_sec": 300, **spec})

    def update_record(
        self, domain_id: str | int, record_id: str | int, spec: RecordSpec
    ) -> DomainRecord:
        zone_id = str(domain_id)
        current = next(
            (r for r in self.list_records(zone_id) if r["id"] == record_id), None
        )
        if current is None:
            raise ProviderError(f"Record '{record_id}' not found in zone '{zone_id}'")
        return self._upsert(zone_id, {**current, **spec})


def get_provider(
    provider: ProviderName | None = None,
    *,
    token: str | None = None,
    region: str | None = None,
    aws_profile: str | None = None,
) -> Provider:
    """Get a provider client, reading unset options from the environment."""
    load_dotenv()
    if provider is None:
        provider = os.getenv("DEPLOYNODE_PROVIDER", "linode")
    if provider not in PROVIDER_OPTIONS:
        raise ConfigurationError(
            f"Unknown provider: '{provider}'. Available: {', '.join(PROVIDER_OPTIONS)}"
        )

    if provider == "linode":
        return LinodeProvider(token or os.getenv("LINODE_TOKEN", ""))
    return AWSProvider(
        region=region or os.getenv("AWS_REGION"),
        aws_profile=aws_profile or os.getenv("AWS_PROFILE"),
    )
