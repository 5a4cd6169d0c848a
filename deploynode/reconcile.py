"""Idempotent find-or-create / find-or-update reconciliation of provider resources.

Every operation looks up live state before mutating it, so running the same
reconciliation twice issues no create or update calls the second time.
"""

from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from typing import Callable, Iterable, TypeVar

from .progress import LogReporter, Reporter, report
from .providers import Provider
from .types import ComputeInstance, Domain, DomainRecord, DomainSpec, InstanceSpec, RecordSpec

T = TypeVar("T")

MAX_WORKERS = 8


def describe_instance(instance: ComputeInstance) -> str:
    ip = instance["ipv4"][0] if instance.get("ipv4") else "no-ip"
    return f"Instance: {instance.get('label')}@{ip} ({instance['id']})"


def describe_domain(domain: Domain) -> str:
    return f"Domain: {domain['domain']} ({domain['id']})"


def describe_record(record: DomainRecord, domain_id: str | int) -> str:
    return (
        f"{record.get('type')} Record: '{record.get('name')}' ({record.get('id')}) "
        f"with target: {record.get('target')} for Domain: {domain_id}"
    )


def address_record_names(subdomains: Iterable[str]) -> list[str]:
    """Return the apex label ``""`` followed by each subdomain, without duplicates."""
    names = [""]
    for name in subdomains:
        if name not in names:
            names.append(name)
    return names


def run_concurrently(tasks: list[Callable[[], T]]) -> list[T]:
    """Run independent tasks on a thread pool, failing on the first exception.

    Results come back in task order. Tasks not yet started when one fails are
    cancelled and the failure is re-raised.
    """
    if len(tasks) <= 1:
        return [task() for task in tasks]

    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(tasks))) as pool:
        futures: list[Future] = [pool.submit(task) for task in tasks]
        done, pending = wait(futures, return_when=FIRST_EXCEPTION)
        for future in pending:
            future.cancel()
        for future in futures:
            if future in done and future.exception() is not None:
                raise future.exception()
        return [future.result() for future in futures]


class ResourceReconciler:
    """Converge a compute instance, DNS zones and address records to desired state."""

    def __init__(self, provider: Provider, reporter: Reporter | None = None):
        self.provider = provider
        self.reporter = reporter or LogReporter()

    def find_instance(self, label: str) -> ComputeInstance | None:
        return next(
            (i for i in self.provider.list_instances() if i.get("label") == label), None
        )

    def reconcile_instance(self, label: str, desired_spec: InstanceSpec) -> ComputeInstance:
        """Return the instance labelled ``label``, creating it if absent.

        An existing instance is reused as-is; no drift correction is attempted.
        Only the create call is awaited, not the boot.
        """
        existing = self.find_instance(label)
        if existing:
            report(
                self.reporter,
                "instance.reused",
                f"Using existing {describe_instance(existing)}",
                id=existing["id"],
            )
            return existing

        spec = {**self.provider.instance_defaults, **desired_spec, "label": label}
        report(self.reporter, "instance.creating", f"Creating new instance '{label}'...")
        instance = self.provider.create_instance(spec)
        report(
            self.reporter,
            "instance.created",
            f"Created new {describe_instance(instance)}",
            id=instance["id"],
        )
        return instance

    def find_domain(self, name: str) -> Domain | None:
        return next((d for d in self.provider.list_domains() if d["domain"] == name), None)

    def reconcile_domain(self, name: str, desired_spec: DomainSpec) -> Domain:
        """Return the zone named ``name``, creating a primary zone if absent."""
        existing = self.find_domain(name)
        if existing:
            report(
                self.reporter,
                "domain.reused",
                f"Using existing {describe_domain(existing)}",
                id=existing["id"],
            )
            return existing

        report(self.reporter, "domain.creating", f"Creating new domain '{name}'...")
        domain = self.provider.create_domain({"type": "master", **desired_spec, "domain": name})
        report(
            self.reporter,
            "domain.created",
            f"Created new {describe_domain(domain)}",
            id=domain["id"],
        )
        return domain

    def find_record(
        self, domain_id: str | int, record_type: str, name: str
    ) -> DomainRecord | None:
        return next(
            (
                r
                for r in self.provider.list_records(domain_id)
                if r.get("type") == record_type and r.get("name") == name
            ),
            None,
        )

    def reconcile_record(self, domain_id: str | int, record_spec: RecordSpec) -> DomainRecord:
        """Reuse, update or create the record matching ``{type, name}``.

        Updates carry only the fields that differ from the live record.
        """
        record_spec = {"type": "A", **record_spec}
        existing = self.find_record(domain_id, record_spec["type"], record_spec["name"])

        if existing:
            changes = {
                key: value for key, value in record_spec.items() if existing.get(key) != value
            }
            if not changes:
                report(
                    self.reporter,
                    "record.reused",
                    f"Using existing {describe_record(existing, domain_id)}",
                    id=existing["id"],
                )
                return existing

            updated = self.provider.update_record(domain_id, existing["id"], changes)
            report(
                self.reporter,
                "record.updated",
                f"Updated {describe_record(updated, domain_id)}",
                id=updated["id"],
                changes=changes,
            )
            return updated

        record = self.provider.create_record(domain_id, record_spec)
        report(
            self.reporter,
            "record.created",
            f"Created new {describe_record(record, domain_id)}",
            id=record["id"],
        )
        return record

    def reconcile_address_records(
        self, domain: Domain, subdomains: Iterable[str], target: str
    ) -> list[DomainRecord]:
        """Point the apex and every subdomain of ``domain`` at ``target``."""
        names = address_record_names(subdomains)
        return run_concurrently(
            [
                lambda name=name: self.reconcile_record(
                    domain["id"], {"type": "A", "name": name, "target": target}
                )
                for name in names
            ]
        )

    def reconcile_dns(
        self,
        domains: dict[str, list[str]],
        target: str,
        desired_spec: DomainSpec,
    ) -> dict[str, list[DomainRecord]]:
        """Reconcile every zone in ``domains`` and its address records.

        :param domains: Registrable domain name -> subdomain labels
        :param target: IPv4 address every record should point at
        :param desired_spec: Zone settings used when a zone must be created
        :return: Domain name -> reconciled address records
        """

        def link(name: str, subdomains: list[str]) -> list[DomainRecord]:
            domain = self.reconcile_domain(name, desired_spec)
            records = self.reconcile_address_records(domain, subdomains, target)
            report(
                self.reporter,
                "domain.linked",
                f"Linked {describe_domain(domain)} to {target}",
                domain=name,
            )
            return records

        names = list(domains)
        results = run_concurrently(
            [lambda name=name: link(name, domains[name]) for name in names]
        )
        return dict(zip(names, results))
