"""
Proxmox User & VM Administration Library

This module provides the operations behind the admin web interface and CLI:
realm user management, CSV bulk onboarding and short-lived VM deployments on a
Proxmox host. Proxmox is reached either over SSH (``pveum``/``qm`` commands) or
through the token-authenticated REST API.

Classes:
    SSHTransport: Runs one shell command per call on the Proxmox host
    ApiTransport: Issues one REST request per call through proxmoxer
    UserManager: Realm user listing, creation and deletion
    VMManager: VM lifecycle (deploy, status, stop, templates)
    ImportManager: CSV bulk user import
    AdminManager: Wires configuration, transports and managers together

Functions:
    load_secrets(): Load credentials from secrets.toml
    load_infra_config(): Load VM defaults from infra.toml
    get_transport(): Build the transport selected in the configuration
"""

import csv
import io
import json
import os
import random
import re
import shlex
import time
import urllib.parse
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import paramiko
import requests
import tomli
from proxmoxer import ProxmoxAPI
from proxmoxer.core import AuthenticationError, ResourceException
import logging

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8
MIN_VMID = 100
MAX_VMID = 999999999
REQUIRED_IMPORT_COLUMNS = ("first_name", "last_name", "password")
ALREADY_DELETED = "VM already deleted"
STOPPED_AND_REMOVED = "VM stopped and removed"

_TEMPLATE_NAME = re.compile(r"^[A-Za-z0-9._-]+$")
_USERID = re.compile(r"^[^@\s]+@[^@\s]+$")
_MAC = re.compile(r"(?:[0-9a-fA-F]{2}[:-]){5}[0-9a-fA-F]{2}")
_IPV4 = re.compile(r"\b(\d{1,3}(?:\.\d{1,3}){3})\b")
_PASSWORD_ARG = re.compile(r"(--password\s+)('[^']*'|\S+)")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class PveAdminError(Exception):
    """Base class for every error raised by this module."""


class ConfigError(PveAdminError):
    """Configuration is missing or inconsistent."""


class ValidationError(PveAdminError):
    """Input was rejected before any remote call was made."""


class SchemaError(ValidationError):
    """Tabular input lacks a required column."""


class RemoteError(PveAdminError):
    """The Proxmox host or API rejected or failed an operation."""


class RemoteConnectionError(RemoteError):
    """The Proxmox host could not be reached."""


class AuthError(RemoteError):
    """Proxmox refused our credentials."""


class CommandError(RemoteError):
    """A shell command exited non-zero and wrote to stderr."""

    def __init__(self, command: str, exit_code: int, stderr: str):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        super().__init__(f"Command failed ({exit_code}): {stderr}")


class ApiError(RemoteError):
    """A REST call returned a non-success status."""

    def __init__(
        self,
        status_code: int,
        message: str,
        errors: Optional[Dict[str, Any]] = None,
    ):
        self.status_code = status_code
        self.errors = errors or {}
        if self.errors:
            details = "; ".join(f"{k}: {v}" for k, v in self.errors.items())
            message = f"{message} ({details})"
        super().__init__(f"HTTP {status_code}: {message}")


class OwnershipError(PveAdminError):
    """The requester does not own the resource."""


class NotFoundError(PveAdminError):
    """The requested resource does not exist."""


class TemplateNotFoundError(NotFoundError):
    """The template's backing disk is missing."""


class AllocationExhaustedError(PveAdminError):
    """No free VMID was found within the probe budget."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def load_secrets(secrets_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration secrets from secrets.toml file.

    Args:
        secrets_path: Optional path to secrets file. If None, uses
            $PVEADMIN_SECRETS or secrets.toml next to this module.

    Returns:
        Dict containing configuration sections for proxmox, ssh, api, web

    Raises:
        FileNotFoundError: If secrets.toml file is not found
        tomli.TOMLDecodeError: If the TOML file is malformed
    """
    if secrets_path is None:
        secrets_path = os.environ.get(
            "PVEADMIN_SECRETS",
            os.path.join(os.path.dirname(__file__), "secrets.toml"),
        )

    logger.debug(f"Loading secrets from {secrets_path}")
    with open(secrets_path, "rb") as f:
        return tomli.load(f)


def load_infra_config(infra_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load infrastructure configuration from infra.toml file.

    Args:
        infra_path: Optional path to infra file. If None, uses default location.

    Returns:
        Dict containing infrastructure configuration sections

    Raises:
        FileNotFoundError: If infra.toml file is not found
        tomli.TOMLDecodeError: If the TOML file is malformed
    """
    if infra_path is None:
        infra_path = os.path.join(os.path.dirname(__file__), "infra.toml")

    logger.debug(f"Loading infrastructure config from {infra_path}")
    with open(infra_path, "rb") as f:
        return tomli.load(f)


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "t", "yes", "y", "on")


@dataclass
class ProxmoxConfig:
    """Connection settings for one Proxmox host."""

    host: str
    realm: str = "pve"
    transport: str = "ssh"
    node: str = "pve"
    ssh_user: str = "root"
    ssh_password: Optional[str] = None
    ssh_port: int = 22
    ssh_timeout: float = 30.0
    api_user: Optional[str] = None
    token_name: Optional[str] = None
    token_value: Optional[str] = None
    verify_ssl: bool = True
    api_port: int = 8006

    @property
    def has_ssh_credentials(self) -> bool:
        return bool(self.host and self.ssh_user and self.ssh_password)

    @property
    def has_api_credentials(self) -> bool:
        return bool(self.host and self.api_user and self.token_name and self.token_value)

    @classmethod
    def from_secrets(
        cls,
        secrets: Dict[str, Any],
        environ: Optional[Dict[str, str]] = None,
    ) -> "ProxmoxConfig":
        """
        Build a config from the secrets dict, letting environment variables win.

        Args:
            secrets: Parsed secrets.toml contents
            environ: Environment mapping (defaults to os.environ)

        Returns:
            Validated ProxmoxConfig

        Raises:
            ConfigError: If the host is missing or the selected transport has
                no credentials
        """
        if environ is None:
            environ = dict(os.environ)

        proxmox = secrets.get("proxmox", {})
        ssh = secrets.get("ssh", {})
        api = secrets.get("api", {})

        host = environ.get("PROXMOX_HOST", proxmox.get("host", ""))
        # proxmoxer wants a bare host
        if host.endswith("/api2/json"):
            host = host.replace("/api2/json", "")
        host = re.sub(r"^https?://", "", host).rstrip("/")

        config = cls(
            host=host,
            realm=environ.get("PROXMOX_REALM", proxmox.get("realm", "pve")),
            transport=environ.get(
                "PROXMOX_TRANSPORT", proxmox.get("transport", "ssh")
            ).lower(),
            node=proxmox.get("node", "pve"),
            ssh_user=environ.get("PROXMOX_USER", ssh.get("user", "root")),
            ssh_password=environ.get("PROXMOX_PASSWORD", ssh.get("password")),
            ssh_port=int(ssh.get("port", 22)),
            ssh_timeout=float(ssh.get("timeout", 30)),
            api_user=api.get("user"),
            token_name=environ.get("PROXMOX_TOKEN_NAME", api.get("token_name")),
            token_value=environ.get("PROXMOX_TOKEN_VALUE", api.get("token_value")),
            verify_ssl=_parse_bool(api.get("verify_ssl"), True),
            api_port=int(api.get("port", 8006)),
        )
        config.validate()
        return config

    def validate(self) -> None:
        if not self.host:
            raise ConfigError("Proxmox host is not configured")
        if self.transport not in ("ssh", "api"):
            raise ConfigError(
                f"Unknown transport '{self.transport}' (expected 'ssh' or 'api')"
            )
        if self.transport == "ssh" and not self.has_ssh_credentials:
            raise ConfigError("SSH transport selected but [ssh] password is missing")
        if self.transport == "api" and not self.has_api_credentials:
            raise ConfigError(
                "API transport selected but [api] user, token_name or token_value is missing"
            )


@dataclass
class VMDefaults:
    """Deployment settings read from the [vm] section of infra.toml."""

    template_dir: str = "/var/lib/vz/template/qemu"
    storage: str = "local-lvm"
    bridge: str = "vmbr1"
    nic_model: str = "virtio"
    session_hours: float = 2
    ip_poll_attempts: int = 12
    ip_poll_interval: float = 5
    stop_grace_seconds: float = 3
    vmid_range: Tuple[int, int] = (2000, 9999)
    vmid_probes: int = 100

    @classmethod
    def from_infra(cls, infra: Optional[Dict[str, Any]] = None) -> "VMDefaults":
        vm = (infra or {}).get("vm", {})
        defaults = cls()
        low, high = vm.get("vmid_range", defaults.vmid_range)
        return cls(
            template_dir=vm.get("template_dir", defaults.template_dir).rstrip("/"),
            storage=vm.get("storage", defaults.storage),
            bridge=vm.get("bridge", defaults.bridge),
            nic_model=vm.get("nic_model", defaults.nic_model),
            session_hours=float(vm.get("session_hours", defaults.session_hours)),
            ip_poll_attempts=int(vm.get("ip_poll_attempts", defaults.ip_poll_attempts)),
            ip_poll_interval=float(vm.get("ip_poll_interval", defaults.ip_poll_interval)),
            stop_grace_seconds=float(
                vm.get("stop_grace_seconds", defaults.stop_grace_seconds)
            ),
            vmid_range=(int(low), int(high)),
            vmid_probes=int(vm.get("vmid_probes", defaults.vmid_probes)),
        )


# ---------------------------------------------------------------------------
# Transports
# ---------------------------------------------------------------------------


class SSHTransport:
    """
    Execute commands on the Proxmox host over SSH.

    A fresh session is opened for every command and closed afterwards.
    """

    kind = "ssh"

    def __init__(self, config: ProxmoxConfig):
        if not config.has_ssh_credentials:
            raise ConfigError("SSH credentials are not configured")
        self.host = config.host
        self.port = config.ssh_port
        self.username = config.ssh_user
        self.password = config.ssh_password
        self.timeout = config.ssh_timeout

    def _connect(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self.password,
                timeout=self.timeout,
                banner_timeout=self.timeout,
                auth_timeout=self.timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthError(
                f"SSH authentication failed for {self.username}@{self.host}"
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise RemoteConnectionError(
                f"Could not connect to {self.host}:{self.port}: {e}"
            ) from e
        return client

    def execute(self, command: str) -> str:
        """
        Run a single command on the Proxmox host.

        Args:
            command: Shell command line; callers quote their own arguments

        Returns:
            The command's stdout, stripped

        Raises:
            CommandError: If the exit code is non-zero and stderr is non-empty
            AuthError: If the SSH login is rejected
            RemoteConnectionError: If the host cannot be reached
        """
        logger.debug(f"SSH {self.username}@{self.host}: {_redact(command)}")
        client = self._connect()
        try:
            _stdin, stdout, stderr = client.exec_command(command, timeout=self.timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise RemoteConnectionError(f"SSH execution failed: {e}") from e
        finally:
            client.close()

        if exit_code != 0 and err.strip():
            logger.debug(f"Command exited with code {exit_code}: {err.strip()}")
            raise CommandError(command, exit_code, err.strip())
        return out.strip()


class ApiTransport:
    """Issue requests against the Proxmox REST API using an API token."""

    kind = "api"

    def __init__(self, config: ProxmoxConfig, proxmox: Optional[ProxmoxAPI] = None):
        if proxmox is None:
            if not config.has_api_credentials:
                raise ConfigError("API token credentials are not configured")
            logger.debug(
                f"Connecting to Proxmox API at {config.host}:{config.api_port} "
                f"as {config.api_user}!{config.token_name}"
            )
            proxmox = ProxmoxAPI(
                config.host,
                port=config.api_port,
                user=config.api_user,
                token_name=config.token_name,
                token_value=config.token_value,
                verify_ssl=config.verify_ssl,
                timeout=30,
            )
        self.proxmox = proxmox

    def execute(self, method: str, path: str, **params: Any) -> Any:
        """
        Call one API endpoint.

        Args:
            method: GET, POST, PUT or DELETE
            path: Path below /api2/json, e.g. "access/users"
            **params: Query parameters (GET) or form fields (mutating verbs)

        Returns:
            The response's ``data`` payload

        Raises:
            ApiError: On a non-success HTTP status
            AuthError: On 401/403 or a rejected token
            RemoteConnectionError: If the API cannot be reached
        """
        verb = method.upper()
        if verb not in ("GET", "POST", "PUT", "DELETE"):
            raise ValueError(f"Unsupported HTTP method: {method}")

        logger.debug(f"API {verb} {path} {sorted(params)}")
        resource = self.proxmox(path.strip("/"))
        try:
            return getattr(resource, verb.lower())(**params)
        except ResourceException as e:
            message = e.status_message or str(e)
            if e.status_code in (401, 403):
                raise AuthError(f"HTTP {e.status_code}: {message}") from e
            raise ApiError(e.status_code, message, getattr(e, "errors", None)) from e
        except AuthenticationError as e:
            raise AuthError(str(e)) from e
        except requests.exceptions.RequestException as e:
            raise RemoteConnectionError(f"Proxmox API unreachable: {e}") from e


def get_transport(config: ProxmoxConfig):
    """Return the transport selected by ``config.transport``."""
    if config.transport == "api":
        return ApiTransport(config)
    return SSHTransport(config)


def q(value: Any) -> str:
    """Shell-quote a single argument."""
    return shlex.quote(str(value))


def _redact(command: str) -> str:
    return _PASSWORD_ARG.sub(r"\1****", command)


# ---------------------------------------------------------------------------
# Metadata codecs
# ---------------------------------------------------------------------------


def encode_comment(full_name: str, email: str = "") -> str:
    """Serialize directory metadata into a user's comment field."""
    return json.dumps(
        {"email": email or "", "fullName": full_name or ""},
        separators=(",", ":"),
        sort_keys=True,
    )


def decode_comment(comment: Optional[str]) -> Dict[str, str]:
    """
    Read directory metadata back from a comment field.

    Anything that is not a JSON object decodes to empty fields; a comment
    typed by hand in the Proxmox UI must not break the user listing.
    """
    empty = {"email": "", "fullName": ""}
    if not comment:
        return empty
    try:
        parsed = json.loads(comment)
    except (TypeError, ValueError):
        return empty
    if not isinstance(parsed, dict):
        return empty
    email = parsed.get("email")
    full_name = parsed.get("fullName")
    return {
        "email": email if isinstance(email, str) else "",
        "fullName": full_name if isinstance(full_name, str) else "",
    }


def encode_vm_metadata(metadata: Dict[str, Any]) -> str:
    """Serialize deployment metadata for a VM description."""
    return json.dumps(metadata, separators=(",", ":"), sort_keys=True)


def decode_vm_metadata(description: Optional[str]) -> Dict[str, Any]:
    """
    Parse deployment metadata from a VM description.

    Proxmox may hand the description back percent-encoded, so both the raw
    and the unquoted text are tried. Returns {} when neither is a JSON object.
    """
    if not description:
        return {}
    for candidate in (description, urllib.parse.unquote(description)):
        try:
            parsed = json.loads(candidate)
        except (TypeError, ValueError):
            continue
        if isinstance(parsed, dict):
            return parsed
    return {}


def parse_qm_config(output: str) -> Dict[str, str]:
    """Turn ``qm config`` output ("key: value" lines) into a dict."""
    config = {}
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if not sep or not key.strip():
            continue
        config[key.strip()] = value.strip()
    return config


def find_mac_address(config: Dict[str, str]) -> Optional[str]:
    """
    Return the MAC address of the first network interface in a VM config.

    NIC values look like "virtio=BC:24:11:AA:BB:CC,bridge=vmbr1".
    """
    for key in sorted(k for k in config if re.match(r"^net\d+$", k)):
        for part in config[key].split(","):
            if "=" not in part:
                continue
            _, value = part.split("=", 1)
            if _MAC.fullmatch(value.strip()):
                return value.strip()
    return None


def normalize_mac(mac: Optional[str]) -> Optional[str]:
    """Lowercase a MAC address and strip its separators."""
    if not mac:
        return None
    normalized = mac.lower().replace(":", "").replace("-", "")
    if len(normalized) == 12 and all(c in "0123456789abcdef" for c in normalized):
        return normalized
    return None


def lookup_neighbor_ip(neighbor_output: str, mac: str) -> Optional[str]:
    """
    Find the IPv4 address bound to ``mac`` in ``arp -n`` or ``ip neigh`` output.

    Returns:
        The address, or None if the MAC is not in the table
    """
    wanted = normalize_mac(mac)
    if not wanted:
        return None
    for line in neighbor_output.splitlines():
        mac_match = _MAC.search(line)
        if not mac_match or normalize_mac(mac_match.group(0)) != wanted:
            continue
        ip_match = _IPV4.search(line)
        if ip_match:
            return ip_match.group(1)
    return None


# ---------------------------------------------------------------------------
# Polling
# ---------------------------------------------------------------------------


def poll_until(
    probe: Callable[[], Any],
    attempts: int,
    interval: float,
    backoff: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
    delay_first: bool = True,
    retry_on: Tuple[type, ...] = (RemoteError,),
) -> Any:
    """
    Call ``probe`` until it returns something truthy.

    Args:
        probe: Zero-argument callable; a truthy result ends the polling
        attempts: Maximum number of probes
        interval: Seconds to wait before a probe
        backoff: Factor applied to the wait after every probe
        sleep: Sleep function, replaceable in tests
        delay_first: Wait before the first probe too
        retry_on: Exception types counted as a miss instead of propagated

    Returns:
        The first truthy probe result, or None once attempts are exhausted
    """
    delay = interval
    for attempt in range(1, attempts + 1):
        if delay_first or attempt > 1:
            sleep(delay)
            delay *= backoff
        try:
            result = probe()
        except retry_on as e:
            logger.debug(f"Probe attempt {attempt}/{attempts} failed: {e}")
            continue
        if result:
            return result
    return None


def allocate_vmid(
    is_taken: Callable[[int], bool],
    rng: Optional[random.Random] = None,
    low: int = 2000,
    high: int = 9999,
    max_probes: int = 100,
) -> int:
    """
    Pick an unused VMID.

    Starts at a random value in [low, high] and walks upward, skipping ids
    for which ``is_taken`` returns True.

    Raises:
        AllocationExhaustedError: If ``max_probes`` ids were all taken
    """
    rng = rng or random.Random()
    start = rng.randint(low, high)
    for offset in range(max_probes):
        candidate = start + offset
        if candidate > MAX_VMID:
            break
        if not is_taken(candidate):
            return candidate
    raise AllocationExhaustedError(
        f"No free VMID found after {max_probes} probes starting at {start}"
    )


def validate_vmid(vmid: Any) -> int:
    try:
        value = int(vmid)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid VMID: {vmid!r}")
    if not MIN_VMID <= value <= MAX_VMID:
        raise ValidationError(f"VMID {value} outside [{MIN_VMID}, {MAX_VMID}]")
    return value


def _isoformat(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).isoformat(timespec="seconds").replace(
        "+00:00", "Z"
    )


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass
class RealmUser:
    userid: str
    full_name: str = ""
    email: str = ""
    enabled: bool = True

    @classmethod
    def from_entry(cls, entry: Dict[str, Any]) -> "RealmUser":
        """Build a user from a raw directory entry."""
        decoded = decode_comment(entry.get("comment"))
        fallback_name = " ".join(
            part for part in (entry.get("firstname"), entry.get("lastname")) if part
        )
        return cls(
            userid=entry.get("userid", ""),
            full_name=decoded["fullName"] or fallback_name,
            email=decoded["email"] or entry.get("email") or "",
            enabled=str(entry.get("enable", 1)) != "0",
        )

    @property
    def realm(self) -> str:
        return self.userid.rpartition("@")[2]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userid": self.userid,
            "email": self.email,
            "fullName": self.full_name,
            "enabled": self.enabled,
        }


@dataclass
class VmRecord:
    vmid: int
    name: str
    status: str
    ip_address: Optional[str] = None
    owner: str = ""
    template: str = ""
    memory: Optional[int] = None
    cores: Optional[int] = None
    deployed_at: Optional[str] = None
    expires_at: Optional[str] = None

    @property
    def address_pending(self) -> bool:
        return self.ip_address is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vmid": self.vmid,
            "name": self.name,
            "status": self.status,
            "ipAddress": self.ip_address,
            "addressPending": self.address_pending,
            "owner": self.owner,
            "template": self.template,
            "memory": self.memory,
            "cores": self.cores,
            "deployedAt": self.deployed_at,
            "expiresAt": self.expires_at,
        }


@dataclass
class Template:
    id: str
    name: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, **self.metadata}


@dataclass
class ImportResult:
    ok: bool
    userid: Optional[str] = None
    full_name: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"ok": self.ok}
        if self.userid is not None:
            data["userid"] = self.userid
        if self.full_name is not None:
            data["fullName"] = self.full_name
        if self.error is not None:
            data["error"] = self.error
        return data


@dataclass
class ImportSummary:
    results: List[ImportResult] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def success(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def failed(self) -> int:
        return self.total - self.success

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "success": self.success,
            "failed": self.failed,
            "results": [r.to_dict() for r in self.results],
        }


# ---------------------------------------------------------------------------
# User directory
# ---------------------------------------------------------------------------


class UserManager:
    """
    Handles realm user operations.

    Subclasses supply the three remote primitives for their transport;
    validation and record building live here.
    """

    def __init__(self, transport):
        self.transport = transport

    def _fetch_entries(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _add_user(self, userid: str, password: str, comment: str) -> None:
        raise NotImplementedError

    def _remove_user(self, userid: str) -> None:
        raise NotImplementedError

    def list_users(self) -> List[RealmUser]:
        """Get every user known to Proxmox, regardless of realm."""
        return [
            RealmUser.from_entry(entry)
            for entry in self._fetch_entries()
            if isinstance(entry, dict) and entry.get("userid")
        ]

    def list_realm_users(self, realm: str) -> List[RealmUser]:
        """
        Get users of one realm, sorted by email (or userid when email is empty).

        Args:
            realm: Realm name, e.g. 'pve'

        Returns:
            List of RealmUser
        """
        users = [u for u in self.list_users() if u.userid.endswith(f"@{realm}")]
        return sorted(users, key=lambda u: (u.email or u.userid).lower())

    def user_exists(self, userid: str) -> bool:
        """Check if a user exists."""
        return any(user.userid == userid for user in self.list_users())

    def create_user(
        self,
        userid: str,
        full_name: str,
        password: str,
        email: Optional[str] = None,
    ) -> RealmUser:
        """
        Create an enabled realm user.

        Args:
            userid: Full user ID including realm (e.g., 'jdoe@pve')
            full_name: Display name stored in the comment field
            password: Initial password, at least 8 characters
            email: Stored in the comment; defaults to the name part of userid

        Returns:
            The created RealmUser

        Raises:
            ValidationError: If the password or userid is unacceptable
            RemoteError: If the user exists or Proxmox rejects the call
        """
        userid = (userid or "").strip()
        if not _USERID.match(userid):
            raise ValidationError(f"Invalid userid '{userid}' (expected name@realm)")
        if not password or len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"Password must be at least {MIN_PASSWORD_LENGTH} characters"
            )

        email = email or userid.split("@")[0]
        self._add_user(userid, password, encode_comment(full_name, email))
        logger.info(f"Created user {userid}")
        return RealmUser(userid=userid, full_name=full_name, email=email, enabled=True)

    def delete_user(self, userid: str) -> Dict[str, str]:
        """
        Delete a user.

        Args:
            userid: Full user ID including realm (e.g., 'user@pve')

        Returns:
            {"userid": userid}

        Raises:
            ValidationError: If userid is empty
            RemoteError: If the user does not exist or deletion is rejected
        """
        userid = (userid or "").strip()
        if not userid:
            raise ValidationError("Missing userid")
        self._remove_user(userid)
        logger.info(f"Deleted user {userid}")
        return {"userid": userid}


class ShellUserManager(UserManager):
    """User operations through ``pveum`` over SSH."""

    def _fetch_entries(self) -> List[Dict[str, Any]]:
        output = self.transport.execute("pveum user list --output-format json")
        try:
            entries = json.loads(output or "[]")
        except ValueError as e:
            raise RemoteError(f"Unexpected output from pveum user list: {e}") from e
        if not isinstance(entries, list):
            raise RemoteError("Unexpected output from pveum user list: not a list")
        return entries

    def _add_user(self, userid: str, password: str, comment: str) -> None:
        self.transport.execute(
            f"pveum user add {q(userid)} --password {q(password)} --comment {q(comment)}"
        )

    def _remove_user(self, userid: str) -> None:
        self.transport.execute(f"pveum user delete {q(userid)}")


class ApiUserManager(UserManager):
    """User operations through the ``access/users`` REST endpoints."""

    def _fetch_entries(self) -> List[Dict[str, Any]]:
        return self.transport.execute("GET", "access/users") or []

    def _add_user(self, userid: str, password: str, comment: str) -> None:
        self.transport.execute(
            "POST",
            "access/users",
            userid=userid,
            password=password,
            comment=comment,
            enable=1,
        )

    def _remove_user(self, userid: str) -> None:
        # The userid must be url-encoded because it contains '@'
        encoded_userid = urllib.parse.quote(userid, safe="")
        self.transport.execute("DELETE", f"access/users/{encoded_userid}")


def make_user_manager(transport) -> UserManager:
    if getattr(transport, "kind", "ssh") == "api":
        return ApiUserManager(transport)
    return ShellUserManager(transport)


# ---------------------------------------------------------------------------
# VM lifecycle
# ---------------------------------------------------------------------------


class VMManager:
    """Handles VM lifecycle operations through ``qm`` on the Proxmox host."""

    def __init__(
        self,
        transport,
        defaults: Optional[VMDefaults] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.transport = transport
        self.defaults = defaults or VMDefaults()
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.clock = clock

    def _run(self, command: str) -> str:
        return self.transport.execute(command)

    def template_disk_path(self, template_name: str) -> str:
        return f"{self.defaults.template_dir}/{template_name}-disk0.qcow2"

    def vmid_exists(self, vmid: int) -> bool:
        """True if ``qm status`` knows the VMID."""
        try:
            self._run(f"qm status {int(vmid)}")
            return True
        except CommandError:
            return False

    def get_config(self, vmid: int) -> Dict[str, str]:
        return parse_qm_config(self._run(f"qm config {int(vmid)}"))

    def resolve_ip(self, vmid: int) -> Optional[str]:
        """
        Look up a VM's IPv4 address through the host's neighbor table.

        Returns:
            The address, or None if the NIC's MAC is not in the table yet
        """
        return self._ip_from_config(self.get_config(vmid))

    def _ip_from_config(self, config: Dict[str, str]) -> Optional[str]:
        mac = find_mac_address(config)
        if not mac:
            return None
        neighbors = self._run("arp -n 2>/dev/null || ip neigh show")
        return lookup_neighbor_ip(neighbors, mac)

    def destroy_vm(self, vmid: int) -> None:
        self._run(f"qm destroy {int(vmid)} --purge 1 --skiplock 1")

    def deploy(
        self,
        template_name: str,
        owner_username: str,
        memory: int = 2048,
        cores: int = 2,
    ) -> VmRecord:
        """
        Create, start and address a VM from a template for one user.

        Args:
            template_name: Template whose disk is <template_dir>/<name>-disk0.qcow2
            owner_username: User recorded as the VM's owner
            memory: Memory in MB
            cores: CPU cores

        Returns:
            VmRecord of the running VM; ``address_pending`` is True when no
            address showed up in the neighbor table within the poll budget

        Raises:
            ValidationError: On a bad template name, owner or size
            TemplateNotFoundError: If the template's disk is missing
            AllocationExhaustedError: If no free VMID was found
            RemoteError: If any qm step fails (a VM this call created is
                destroyed first)
        """
        template_name = (template_name or "").strip()
        owner_username = (owner_username or "").strip()
        if not _TEMPLATE_NAME.match(template_name):
            raise ValidationError(f"Invalid template name '{template_name}'")
        if not owner_username or not re.match(r"^[^\s'\"]+$", owner_username):
            raise ValidationError(f"Invalid owner username '{owner_username}'")
        try:
            memory = int(memory)
            cores = int(cores)
        except (TypeError, ValueError):
            raise ValidationError("memory and cores must be integers")
        if memory <= 0 or cores <= 0:
            raise ValidationError("memory and cores must be positive")

        logger.info(f"[DEPLOY] Starting deployment: {template_name} for {owner_username}")

        disk_path = self.template_disk_path(template_name)
        # test -f fails silently, so its verdict is echoed instead
        if self._run(f"test -f {q(disk_path)} && echo present || true") != "present":
            raise TemplateNotFoundError(
                f"Template {template_name} not found. Has it been converted?"
            )

        low, high = self.defaults.vmid_range
        vmid = allocate_vmid(
            self.vmid_exists,
            rng=self.rng,
            low=low,
            high=high,
            max_probes=self.defaults.vmid_probes,
        )

        display_name = f"{template_name}-{owner_username}"
        deployed_at = self.clock()
        expires_at = deployed_at + timedelta(hours=self.defaults.session_hours)
        metadata = {
            "username": owner_username,
            "vmName": template_name,
            "deployedAt": _isoformat(deployed_at),
            "expiresAt": _isoformat(expires_at),
        }
        storage = self.defaults.storage

        # A failed create means the VMID may belong to someone else; only
        # a VM this call created is destroyed on failure
        logger.info(f"[DEPLOY] Creating VM {vmid}...")
        self._run(
            f"qm create {vmid} --name {q(display_name)} --memory {memory} "
            f"--cores {cores} --net0 {q(f'{self.defaults.nic_model},bridge={self.defaults.bridge}')}"
        )

        try:
            logger.info(f"[DEPLOY] Importing disk into VM {vmid}...")
            self._run(f"qm importdisk {vmid} {q(disk_path)} {q(storage)}")

            logger.info(f"[DEPLOY] Configuring VM {vmid}...")
            self._run(
                f"qm set {vmid} --scsihw virtio-scsi-pci --scsi0 {q(f'{storage}:vm-{vmid}-disk-0')}"
            )
            self._run(f"qm set {vmid} --boot order=scsi0")
            self._run(f"qm set {vmid} --vga std")
            self._run(f"qm set {vmid} --description {q(encode_vm_metadata(metadata))}")

            logger.info(f"[DEPLOY] Starting VM {vmid}...")
            self._run(f"qm start {vmid}")

            logger.info(f"[DEPLOY] Waiting for IP address of VM {vmid}...")
            ip_address = poll_until(
                lambda: self.resolve_ip(vmid),
                attempts=self.defaults.ip_poll_attempts,
                interval=self.defaults.ip_poll_interval,
                sleep=self.sleep,
            )
        except Exception as e:
            logger.error(f"[DEPLOY] VM {vmid} failed: {e}")
            self._cleanup(vmid)
            raise

        if ip_address:
            logger.info(f"[DEPLOY] VM {vmid} deployed at {ip_address}")
        else:
            logger.info(f"[DEPLOY] VM {vmid} deployed, address still pending")

        return VmRecord(
            vmid=vmid,
            name=display_name,
            status="running",
            ip_address=ip_address,
            owner=owner_username,
            template=template_name,
            memory=memory,
            cores=cores,
            deployed_at=metadata["deployedAt"],
            expires_at=metadata["expiresAt"],
        )

    def _cleanup(self, vmid: int) -> None:
        try:
            self.destroy_vm(vmid)
            logger.info(f"[DEPLOY] Removed partially created VM {vmid}")
        except Exception as cleanup_error:
            logger.warning(f"[DEPLOY] Cleanup of VM {vmid} failed: {cleanup_error}")

    def stop(self, vmid: Any, requester_username: str) -> Dict[str, Any]:
        """
        Stop and destroy a VM owned by ``requester_username``.

        Returns:
            {"vmid": vmid, "message": ...}; a VM that no longer exists
            counts as already deleted

        Raises:
            OwnershipError: If the VM's metadata names another owner
        """
        vmid = validate_vmid(vmid)
        logger.info(f"[STOP] Stopping VM {vmid} for {requester_username}")

        try:
            config = self.get_config(vmid)
        except CommandError as e:
            if "does not exist" in e.stderr.lower():
                return {"vmid": vmid, "message": ALREADY_DELETED}
            raise

        metadata = decode_vm_metadata(config.get("description"))
        owner = metadata.get("username")
        if not requester_username or owner != requester_username:
            raise OwnershipError(f"VM {vmid} does not belong to {requester_username}")

        try:
            self._run(f"qm stop {vmid}")
        except CommandError as e:
            logger.warning(f"[STOP] Graceful stop of VM {vmid} failed: {e}")

        self.sleep(self.defaults.stop_grace_seconds)
        self.destroy_vm(vmid)
        logger.info(f"[STOP] VM {vmid} destroyed")
        return {"vmid": vmid, "message": STOPPED_AND_REMOVED}

    def status(self, vmid: Any) -> VmRecord:
        """
        Get the current state of a VM.

        Raises:
            NotFoundError: If Proxmox does not know the VMID
        """
        vmid = validate_vmid(vmid)
        try:
            status_output = self._run(f"qm status {vmid}")
            config = self.get_config(vmid)
        except CommandError as e:
            raise NotFoundError(f"VM {vmid} not found") from e

        metadata = decode_vm_metadata(config.get("description"))

        try:
            ip_address = self._ip_from_config(config)
        except RemoteError as e:
            logger.debug(f"Address lookup for VM {vmid} failed: {e}")
            ip_address = None

        return VmRecord(
            vmid=vmid,
            name=config.get("name", ""),
            status="running" if "running" in status_output else "stopped",
            ip_address=ip_address,
            owner=metadata.get("username", ""),
            template=metadata.get("vmName", ""),
            memory=_int_or_none(config.get("memory")),
            cores=_int_or_none(config.get("cores")),
            deployed_at=metadata.get("deployedAt"),
            expires_at=metadata.get("expiresAt"),
        )

    def list_templates(self) -> List[Template]:
        """Get templates described by <template_dir>/*-metadata.json files."""
        output = self._run(
            f"ls -1 {q(self.defaults.template_dir)}/*-metadata.json 2>/dev/null || true"
        )
        templates = []
        for path in (line.strip() for line in output.splitlines()):
            match = re.search(r"/([^/]+)-metadata\.json$", path)
            if not match:
                continue
            name = match.group(1)
            try:
                data = json.loads(self._run(f"cat {q(path)}"))
                if not isinstance(data, dict):
                    raise ValueError("metadata is not an object")
            except (RemoteError, ValueError) as e:
                logger.warning(f"Skipping template metadata {path}: {e}")
                continue
            templates.append(Template(id=name, name=name, metadata=data))
        return templates

    def list_active_vmids_for_user(self, username: str) -> List[int]:
        """VMIDs from ``qm list`` whose line mentions ``username``."""
        username = (username or "").strip()
        if not username:
            return []
        try:
            output = self._run("qm list")
        except RemoteError as e:
            logger.warning(f"Could not list VMs for {username}: {e}")
            return []
        vmids = []
        for line in output.splitlines():
            if username not in line:
                continue
            match = re.match(r"^\s*(\d+)", line)
            if match:
                vmids.append(int(match.group(1)))
        return vmids


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Bulk import
# ---------------------------------------------------------------------------


def normalize_name(value: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9]", "", (value or "").strip().lower())


def build_base_username(first_name: str, last_name: str) -> str:
    """First letter of the first name plus the last name, e.g. 'jdoe'."""
    first = normalize_name(first_name)
    last = normalize_name(last_name)
    if not first or not last:
        return ""
    return f"{first[0]}{last}"


def unique_userid(base: str, realm: str, taken: Set[str]) -> str:
    """Append 1, 2, 3, ... to ``base`` until ``base@realm`` is not taken."""
    username = base
    counter = 1
    while f"{username}@{realm}" in taken:
        username = f"{base}{counter}"
        counter += 1
    return f"{username}@{realm}"


def parse_import_csv(text: str) -> Tuple[List[str], List[Dict[str, str]]]:
    """
    Parse bulk import CSV text.

    Args:
        text: CSV with a header row; blank lines are ignored

    Returns:
        Tuple of (header, rows) with every cell trimmed

    Raises:
        SchemaError: If a required column is missing from the header
    """
    records = (
        [c.strip() for c in cols]
        for cols in csv.reader(io.StringIO(text or ""))
    )
    # Blank lines come back as [] or all-empty cells
    records = (cells for cells in records if any(cells))
    header = next(records, [])

    for column in REQUIRED_IMPORT_COLUMNS:
        if column not in header:
            raise SchemaError(f"CSV missing column: {column}")

    rows = []
    for cells in records:
        rows.append(
            {h: (cells[i] if i < len(cells) else "") for i, h in enumerate(header)}
        )
    return header, rows


class ImportManager:
    """Creates realm users from CSV rows, one row at a time."""

    def __init__(self, users: UserManager, realm: str):
        self.users = users
        self.realm = realm

    def import_users(self, csv_text: str) -> ImportSummary:
        """
        Import users from CSV text with columns first_name,last_name,password.

        Every row is attempted even if earlier rows fail.

        Raises:
            SchemaError: If a required column is missing (nothing is created)
        """
        _, rows = parse_import_csv(csv_text)

        # Preload user list once to reduce API calls
        taken = {user.userid for user in self.users.list_users()}

        summary = ImportSummary()
        for row in rows:
            summary.results.append(self._import_row(row, taken))

        logger.info(
            f"[import-users] total={summary.total} success={summary.success} "
            f"failed={summary.failed}"
        )
        return summary

    def _import_row(self, row: Dict[str, str], taken: Set[str]) -> ImportResult:
        first_name = row.get("first_name", "")
        last_name = row.get("last_name", "")
        password = row.get("password", "")

        if not first_name or not last_name:
            return ImportResult(ok=False, error="Missing first_name or last_name")
        if len(password) < MIN_PASSWORD_LENGTH:
            return ImportResult(
                ok=False,
                error=f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            )

        base = build_base_username(first_name, last_name)
        if not base:
            return ImportResult(ok=False, error="Invalid name values")

        userid = unique_userid(base, self.realm, taken)
        full_name = f"{first_name} {last_name}"
        try:
            self.users.create_user(userid, full_name, password)
        except PveAdminError as e:
            logger.warning(f"[import-users] {userid} failed: {e}")
            return ImportResult(ok=False, userid=userid, error=str(e))

        taken.add(userid)
        return ImportResult(ok=True, userid=userid, full_name=full_name)


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class AdminManager:
    """
    Main class that provides the high-level operations used by the web app
    and the CLI.
    """

    def __init__(
        self,
        secrets: Optional[Dict[str, Any]] = None,
        infra: Optional[Dict[str, Any]] = None,
        transport=None,
        shell=None,
    ):
        """
        Initialize the AdminManager.

        Args:
            secrets: Optional secrets dict. If None, loads from default location.
            infra: Optional infra dict. If None, loads infra.toml when present.
            transport: Transport for user operations; built from config if None
            shell: SSH transport for VM operations; built from config if None
        """
        if secrets is None:
            secrets = load_secrets()
        if infra is None:
            try:
                infra = load_infra_config()
            except FileNotFoundError:
                logger.debug("No infra.toml found, using VM defaults")
                infra = {}

        self.secrets = secrets
        self.config = ProxmoxConfig.from_secrets(secrets)
        self.realm = self.config.realm
        self.vm_defaults = VMDefaults.from_infra(infra)

        if transport is None:
            transport = get_transport(self.config)
        if shell is None and getattr(transport, "kind", None) == "ssh":
            shell = transport
        self.transport = transport
        self._shell = shell
        self._vms: Optional[VMManager] = None

        self.users = make_user_manager(transport)
        self.imports = ImportManager(self.users, self.realm)

    @property
    def vms(self) -> VMManager:
        """VM operations; they need shell access to the Proxmox host."""
        if self._vms is None:
            if self._shell is None:
                if not self.config.has_ssh_credentials:
                    raise ConfigError(
                        "VM operations need SSH access; configure the [ssh] section"
                    )
                self._shell = SSHTransport(self.config)
            self._vms = VMManager(self._shell, self.vm_defaults)
        return self._vms
