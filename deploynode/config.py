"""Configuration: environment settings, domain parsing and instance boot payloads."""

import json
import os
import secrets
import shlex
from functools import lru_cache
from pathlib import Path
from textwrap import dedent

import tldextract
from dotenv import load_dotenv

from .errors import ConfigurationError
from .types import InstanceSpec
from .utils import log

DEFAULT_DEPLOY_USER = "deploy"
DEFAULT_ENVIRONMENT = "production"


@lru_cache(maxsize=1)
def _load_env_file() -> None:
    load_dotenv()


def get_setting(name: str, default: str | None = None) -> str | None:
    """Read a setting from the environment, after loading ``.env`` once."""
    _load_env_file()
    value = os.getenv(name)
    return value if value else default


def default_project() -> str:
    """Project name: DEPLOYNODE_PROJECT, else the GitHub repository name, else cwd."""
    project = get_setting("DEPLOYNODE_PROJECT")
    if project:
        return project
    repository = get_setting("GITHUB_REPOSITORY")
    if repository:
        return repository.split("/")[-1]
    return Path.cwd().name


@lru_cache(maxsize=1)
def _extractor() -> tldextract.TLDExtract:
    # Bundled public suffix snapshot only; never fetch over the network
    return tldextract.TLDExtract(suffix_list_urls=(), cache_dir=None)


def parse_domains(domains: str | list[str]) -> dict[str, list[str]]:
    """Group fully-qualified names by registrable domain.

    ``"example.com,api.example.com,www.example.com"`` becomes
    ``{"example.com": ["api", "www"]}``. The apex is implied and not listed.

    :raises ConfigurationError: If a name has no registrable domain
    """
    items = domains.split(",") if isinstance(domains, str) else list(domains)
    parsed: dict[str, list[str]] = {}
    for item in items:
        host = item.strip().lower().rstrip(".")
        if not host:
            continue
        result = _extractor()(host)
        if not result.domain or not result.suffix:
            raise ConfigurationError(f"Invalid domain: '{item.strip()}'")
        name = f"{result.domain}.{result.suffix}"
        subdomains = parsed.setdefault(name, [])
        if result.subdomain and result.subdomain not in subdomains:
            subdomains.append(result.subdomain)

    if not parsed:
        raise ConfigurationError("No domains given")
    return parsed


def generate_root_pass() -> str:
    return secrets.token_urlsafe(24)


def read_admin_users(path: str | None) -> str:
    """Return the admin users JSON document, ``[]`` when no file is given."""
    if not path:
        return "[]"
    file = Path(path)
    if not file.exists():
        raise ConfigurationError(f"Admin users file not found: '{path}'")
    content = file.read_text()
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Admin users file '{path}' is not valid JSON: {e}") from e
    return content


def render_user_data(deploy_user: str, public_key: str, base_dir: str) -> str:
    """cloud-init script creating the deploy user and the deploy base directory."""
    user = shlex.quote(deploy_user)
    home = f"/home/{deploy_user}"
    return dedent(f"""
        #!/bin/bash
        set -e
        id -u {user} >/dev/null 2>&1 || useradd -m -s /bin/bash {user}
        mkdir -p {shlex.quote(home)}/.ssh
        echo {shlex.quote(public_key.strip())} >> {shlex.quote(home)}/.ssh/authorized_keys
        chmod 700 {shlex.quote(home)}/.ssh
        chmod 600 {shlex.quote(home)}/.ssh/authorized_keys
        chown -R {user}:{user} {shlex.quote(home)}/.ssh
        mkdir -p {shlex.quote(base_dir)}
        chown {user}:{user} {shlex.quote(base_dir)}
    """).lstrip()


def build_instance_spec(
    provider_name: str,
    *,
    deploy_user: str,
    public_key: str,
    base_dir: str,
    root_pass: str | None = None,
    admin_users_file: str | None = None,
    overrides: InstanceSpec | None = None,
) -> InstanceSpec:
    """Desired instance template carrying the provider's boot-time payload."""
    if not public_key.strip():
        raise ConfigurationError("The deploy user's public key is required")

    if provider_name == "linode":
        if not root_pass:
            root_pass = generate_root_pass()
            log("Generated a random root password for the new instance")
        spec: InstanceSpec = {
            "root_pass": root_pass,
            "stackscript_data": {
                "admin_users_json": read_admin_users(admin_users_file),
                "deploy_user": deploy_user,
                "deploy_user_public_key": public_key.strip(),
            },
        }
    else:
        spec = {"user_data": render_user_data(deploy_user, public_key, base_dir)}

    if overrides:
        spec.update({k: v for k, v in overrides.items() if v is not None})
    return spec
