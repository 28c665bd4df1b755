#!/usr/bin/env python3
"""dnsmasq-webhook - external-dns webhook provider for dnsmasq snippet directories

Lets Kubernetes external-dns (webhook provider protocol) manage DNS records on a
device whose resolver reads one dnsmasq configuration snippet per record from a
local directory (e.g. Firewalla's dnsmasq_local). Every batch of changes is
written to that directory and followed by a single resolver restart.

Supported record types:
    - A:      address=/<name>/<ipv4>           (file: <name>)
    - TXT:    txt-record=<name>,"<value>"      (file: <name>.txt)
    - CNAME:  cname=<name>,<target>            (file: <name>.cname)

Environment variables:

    Webhook:
        DOMAIN_FILTER            Comma-separated domains advertised to external-dns (required)
        PORT_PROVIDER            Webhook API port (default: 8888)
        PORT_HEALTH              Health check port (default: 8080)
        LISTEN_ADDRESS           Bind address for both servers (default: 0.0.0.0)

    dnsmasq:
        DNSMASQ_DIR              Managed snippet directory
                                 (default: /home/pi/.firewalla/config/dnsmasq_local)
        DNS_TTL                  TTL reported for every record (default: 300).
                                 Never written to disk.
        RESTART_COMMAND          Command that makes the resolver pick up changes
                                 (default: sudo systemctl restart firerouter_dns)
        RELOAD_TIMEOUT_SECONDS   Timeout for the restart command (default: 30, 0 = none)

    Runtime:
        DRY_RUN                  Log writes, deletes and restarts instead of doing them
                                 (default: false)
        RECORDS_CACHE            Cache the parsed directory between applies (default: false)
        SHUTDOWN_TIMEOUT_SECONDS Deadline for draining queued changes on shutdown (default: 10)
        LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
        CONFIG_PATH              Optional YAML file with the same settings as lowercase keys
                                 (default: /config/dnsmasq-webhook.yaml).
                                 Environment variables take precedence.
                                 Example:
                                   domain_filter:
                                     - home.example.com
                                   dnsmasq_dir: /etc/dnsmasq.d/external-dns
                                   restart_command: systemctl restart dnsmasq

Commands:
    serve        Run the webhook and health servers (default)
    healthcheck  Probe the local /healthz endpoint, exit 0 when healthy
    list         Print the records currently on disk as JSON
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import subprocess
import sys
import threading
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

import requests
import uvicorn
import yaml
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse, Response

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "/config/dnsmasq-webhook.yaml")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DEFAULT_DNSMASQ_DIR = "/home/pi/.firewalla/config/dnsmasq_local"
DEFAULT_RESTART_COMMAND = "sudo systemctl restart firerouter_dns"

WEBHOOK_MEDIA_TYPE = "application/external.dns.webhook+json;version=1"
MAX_REQUEST_BYTES = 10 * 1024 * 1024
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class WebhookError(Exception):
    """Base class for errors raised by the synchronization engine."""


class ValidationError(WebhookError):
    """A record or change-set is malformed. Raised before any file is touched."""


class ReloadError(WebhookError):
    """The resolver restart command failed after files were already changed."""

    def __init__(self, command: str, reason: str, output: str = ""):
        self.command = command
        self.reason = reason
        self.output = output
        message = f"Failed to reload DNS service ({command}): {reason}"
        if output:
            message = f"{message}: {output}"
        super().__init__(message)


class ApplyError(WebhookError):
    """A change-set failed part way through.

    ``step`` is one of ``validate``, ``delete``, ``update``, ``create`` or
    ``reload``. The underlying error is chained as ``__cause__``. Files changed
    before the failure stay changed.
    """

    def __init__(self, step: str, record: Optional["DNSRecord"], cause: BaseException):
        self.step = step
        self.record = record
        target = f" {record.record_type} {record.name}" if record is not None else ""
        super().__init__(f"{step}{target} failed: {cause}")


class SerializerClosedError(WebhookError):
    """A change-set arrived after shutdown began."""


# =============================================================================
# Data Classes
# =============================================================================

RECORD_TYPE_A = "A"
RECORD_TYPE_TXT = "TXT"
RECORD_TYPE_CNAME = "CNAME"
SUPPORTED_RECORD_TYPES = (RECORD_TYPE_A, RECORD_TYPE_TXT, RECORD_TYPE_CNAME)

# File suffix per record type. A records use the bare name.
RECORD_FILE_SUFFIXES = {
    RECORD_TYPE_A: "",
    RECORD_TYPE_TXT: ".txt",
    RECORD_TYPE_CNAME: ".cname",
}


@dataclass(frozen=True)
class DNSRecord:
    """A DNS record as exchanged with external-dns.

    ``ttl`` is not stored in the snippet files, so it does not take part in
    equality.
    """

    name: str
    record_type: str
    targets: Tuple[str, ...]
    ttl: int = field(default=0, compare=False)

    @classmethod
    def from_endpoint(cls, data: Any, default_ttl: int = 0) -> "DNSRecord":
        """Build a record from an external-dns endpoint object.

        Only the shape is checked here; content is checked by ``validate_record``.
        """
        if not isinstance(data, dict):
            raise ValidationError(f"Endpoint must be an object, got {type(data).__name__}")

        name = data.get("dnsName")
        record_type = data.get("recordType")
        if not isinstance(name, str) or not name:
            raise ValidationError("Endpoint is missing dnsName")
        if not isinstance(record_type, str) or not record_type:
            raise ValidationError(f"Endpoint {name} is missing recordType")

        raw_targets = data.get("targets") or []
        if not isinstance(raw_targets, list) or not all(isinstance(t, str) for t in raw_targets):
            raise ValidationError(f"Endpoint {name} targets must be a list of strings")

        ttl = data.get("recordTTL")
        if not isinstance(ttl, int) or isinstance(ttl, bool) or ttl < 0:
            ttl = default_ttl

        return cls(name=name, record_type=record_type, targets=tuple(raw_targets), ttl=ttl)

    def to_endpoint(self) -> Dict[str, Any]:
        return {
            "dnsName": self.name,
            "targets": list(self.targets),
            "recordType": self.record_type,
            "recordTTL": self.ttl,
        }

    @property
    def key(self) -> Tuple[str, str]:
        """Identity of the backing file: (name, record type)."""
        return (self.name, self.record_type)


@dataclass(frozen=True)
class ChangeSet:
    """One batch of changes requested by external-dns.

    ``update_old`` and ``update_new`` are parallel: the same index describes
    one record before and after the update.
    """

    create: Tuple[DNSRecord, ...] = ()
    update_old: Tuple[DNSRecord, ...] = ()
    update_new: Tuple[DNSRecord, ...] = ()
    delete: Tuple[DNSRecord, ...] = ()

    def __post_init__(self) -> None:
        if len(self.update_old) != len(self.update_new):
            raise ValidationError(
                f"updateOld has {len(self.update_old)} entries but updateNew has "
                f"{len(self.update_new)}"
            )

    @classmethod
    def from_json(cls, payload: Any, default_ttl: int = 0) -> "ChangeSet":
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValidationError("Change-set must be a JSON object")

        def records(key: str) -> Tuple[DNSRecord, ...]:
            items = payload.get(key) or []
            if not isinstance(items, list):
                raise ValidationError(f"{key} must be a list of endpoints")
            return tuple(DNSRecord.from_endpoint(item, default_ttl) for item in items)

        return cls(
            create=records("create"),
            update_old=records("updateOld"),
            update_new=records("updateNew"),
            delete=records("delete"),
        )

    @property
    def total_changes(self) -> int:
        return len(self.create) + len(self.update_new) + len(self.delete)


@dataclass(frozen=True)
class WebhookSettings:
    """Runtime settings gathered from the environment and the optional YAML file."""

    domain_filter: Tuple[str, ...]
    dnsmasq_dir: str = DEFAULT_DNSMASQ_DIR
    dns_ttl: int = 300
    dry_run: bool = False
    restart_command: str = DEFAULT_RESTART_COMMAND
    reload_timeout_seconds: float = 30.0
    port_provider: int = 8888
    port_health: int = 8080
    listen_address: str = "0.0.0.0"
    log_level: str = "INFO"
    records_cache: bool = False
    shutdown_timeout_seconds: float = 10.0


# =============================================================================
# Validation
# =============================================================================

DNS_NAME_RE = re.compile(
    r"^(\*\.)?[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?"
    r"(\.[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?)*\.?$"
)
IPV4_OCTET_RE = re.compile(r"^(0|[1-9][0-9]{0,2})$")


def is_valid_dns_name(name: Any) -> bool:
    """Check DNS label syntax and reject anything usable for path traversal."""
    if not isinstance(name, str) or not name:
        return False
    if ".." in name or "/" in name or "\\" in name:
        return False
    return bool(DNS_NAME_RE.match(name))


def is_valid_ipv4(ip: Any) -> bool:
    """Dotted-quad IPv4 without leading zeros."""
    if not isinstance(ip, str) or not ip:
        return False
    parts = ip.split(".")
    if len(parts) != 4:
        return False
    return all(IPV4_OCTET_RE.match(part) and int(part) <= 255 for part in parts)


def _is_utf8_encodable(value: str) -> bool:
    # Lone surrogates survive JSON decoding but cannot be written to a file.
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _is_valid_txt_value(value: Any) -> bool:
    # A line break would split the value across two snippet lines.
    return (
        isinstance(value, str)
        and bool(value)
        and "\n" not in value
        and "\r" not in value
        and _is_utf8_encodable(value)
    )


TARGET_VALIDATORS: Dict[str, Callable[[Any], bool]] = {
    RECORD_TYPE_A: is_valid_ipv4,
    RECORD_TYPE_TXT: _is_valid_txt_value,
    RECORD_TYPE_CNAME: is_valid_dns_name,
}


def validate_record_identity(name: str, record_type: str) -> None:
    """Validate the (name, type) pair that addresses a record file."""
    if not is_valid_dns_name(name):
        raise ValidationError(f"Invalid DNS name: {name!r}")
    if record_type not in SUPPORTED_RECORD_TYPES:
        raise ValidationError(
            f"Unsupported record type {record_type!r} for {name}. "
            f"Supported: {', '.join(SUPPORTED_RECORD_TYPES)}"
        )
    if record_type == RECORD_TYPE_A:
        # A bare filename with a typed suffix would be read back as that type.
        lowered = name.lower()
        for suffix in RECORD_FILE_SUFFIXES.values():
            if suffix and lowered.endswith(suffix):
                raise ValidationError(f"A record name {name!r} ends with reserved suffix {suffix!r}")


def validate_record(record: DNSRecord) -> None:
    """Raise ValidationError unless the record can be written."""
    validate_record_identity(record.name, record.record_type)
    if not record.targets:
        raise ValidationError(f"{record.record_type} record {record.name} has no targets")
    is_valid_target = TARGET_VALIDATORS[record.record_type]
    for target in record.targets:
        if not is_valid_target(target):
            raise ValidationError(
                f"Invalid {record.record_type} target for {record.name}: {target!r}"
            )


def sanitize_domain_for_filename(domain: str) -> str:
    """Neutralize path separators and parent references in a record name."""
    return domain.replace("/", "-").replace("\\", "-").replace("..", "--")


# =============================================================================
# Record Codec
# =============================================================================

ADDRESS_LINE_RE = re.compile(r"^address=/([^/]+)/(.+)$")
TXT_LINE_RE = re.compile(r'^txt-record=([^,]+),"(.*)"')
CNAME_LINE_RE = re.compile(r"^cname=([^,]+),(.+)$")


def _accept_any(_value: str) -> bool:
    return True


def encode_record(record: DNSRecord) -> str:
    """Render a record as dnsmasq snippet lines, one per target."""
    if record.record_type == RECORD_TYPE_A:
        lines = [f"address=/{record.name}/{ip}" for ip in record.targets]
    elif record.record_type == RECORD_TYPE_TXT:
        lines = [f'txt-record={record.name},"{value}"' for value in record.targets]
    elif record.record_type == RECORD_TYPE_CNAME:
        lines = [f"cname={record.name},{target}" for target in record.targets]
    else:
        raise ValidationError(f"Unsupported record type: {record.record_type}")
    return "\n".join(lines) + "\n"


def decode_record(record_type: str, lines: Sequence[str], ttl: int = 0) -> Optional[DNSRecord]:
    """Parse snippet lines back into a record.

    The name comes from the first matching line. Targets that fail validation
    are dropped. Returns None when nothing usable is left.
    """
    if record_type == RECORD_TYPE_A:
        pattern, is_valid_target = ADDRESS_LINE_RE, is_valid_ipv4
    elif record_type == RECORD_TYPE_TXT:
        # Quoted values are kept verbatim.
        pattern, is_valid_target = TXT_LINE_RE, _accept_any
    elif record_type == RECORD_TYPE_CNAME:
        pattern, is_valid_target = CNAME_LINE_RE, is_valid_dns_name
    else:
        raise ValidationError(f"Unsupported record type: {record_type}")

    name: Optional[str] = None
    targets: List[str] = []
    for line in lines:
        match = pattern.match(line)
        if not match:
            continue
        if name is None:
            name = match.group(1)
        target = match.group(2)
        if is_valid_target(target):
            targets.append(target)
        else:
            logger.debug(f"Dropping malformed {record_type} target for {match.group(1)}: {target!r}")

    if name is None or not targets:
        return None
    return DNSRecord(name=name, record_type=record_type, targets=tuple(targets), ttl=ttl)


def record_type_for_filename(filename: str) -> str:
    for record_type, suffix in RECORD_FILE_SUFFIXES.items():
        if suffix and filename.endswith(suffix):
            return record_type
    return RECORD_TYPE_A


# =============================================================================
# Directory Store
# =============================================================================


class DnsmasqDirectoryStore:
    """Reads and writes one dnsmasq snippet file per (name, record type).

    The directory is the only record of truth: a record exists exactly when
    its file does. Writes go through a dot-prefixed temp file, which dnsmasq's
    conf-dir and ``list_records`` both skip.
    """

    FILE_MODE = 0o644

    def __init__(self, directory: str, *, ttl: int = 300, dry_run: bool = False):
        self.directory = Path(directory)
        self.ttl = ttl
        self.dry_run = dry_run

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def record_path(self, name: str, record_type: str) -> Path:
        filename = sanitize_domain_for_filename(name) + RECORD_FILE_SUFFIXES.get(record_type, "")
        if filename in ("", ".", "..") or filename.startswith("."):
            raise ValidationError(f"Cannot derive a record file name from {name!r}")
        path = self.directory / filename
        if path.parent != self.directory:
            raise ValidationError(f"Record file for {name!r} escapes {self.directory}")
        return path

    def list_records(self) -> List[DNSRecord]:
        logger.debug(f"Reading DNS records from {self.directory}")
        self.ensure_directory()

        records: List[DNSRecord] = []
        for path in sorted(self.directory.iterdir()):
            # Same skip rule as dnsmasq conf-dir: dotfiles and editor backups.
            if path.name.startswith(".") or path.name.endswith("~"):
                continue
            try:
                if not path.is_file():
                    continue
                record_type = record_type_for_filename(path.name)
                # dnsmasq breaks lines on "\n" only; str.splitlines would also
                # split TXT values on form feeds and Unicode line separators.
                lines = [line.rstrip("\r") for line in path.read_text("utf-8").split("\n")]
                record = decode_record(record_type, lines, ttl=self.ttl)
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Failed to parse record file {path.name}: {e}")
                continue

            if record is None:
                logger.debug(f"No usable records in {path.name}, skipping")
                continue
            records.append(record)

        logger.info(f"Read {len(records)} DNS record(s) from {self.directory}")
        return records

    def write_record(self, record: DNSRecord) -> None:
        validate_record(record)
        path = self.record_path(record.name, record.record_type)
        content = encode_record(record)

        if self.dry_run:
            logger.info(f"[DRY RUN] Would write {path}: {content.strip()!r}")
            return

        self.ensure_directory()
        tmp_path = path.with_name(f".{path.name}.tmp")
        try:
            tmp_path.write_text(content, "utf-8")
            os.chmod(tmp_path, self.FILE_MODE)
            tmp_path.replace(path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.info(
            f"Wrote {record.record_type} record {record.name} -> {', '.join(record.targets)}"
        )

    def delete_record(self, name: str, record_type: str) -> None:
        path = self.record_path(name, record_type)

        if self.dry_run:
            logger.info(f"[DRY RUN] Would delete {path}")
            return

        try:
            path.unlink()
        except FileNotFoundError:
            logger.warning(f"Record file {path} not found (already deleted?)")
            return
        logger.info(f"Deleted {record_type} record {name}")


# =============================================================================
# Reload Trigger
# =============================================================================


class ReloadTrigger:
    """Runs the command that makes the resolver pick up snippet changes.

    The command goes through ``/bin/sh``, so ``||``, ``&&`` and ``$VAR`` work
    in RESTART_COMMAND. It comes from operator configuration only.
    """

    def __init__(
        self,
        command: str,
        *,
        dry_run: bool = False,
        timeout_seconds: Optional[float] = 30.0,
    ):
        self.command = command
        self.dry_run = dry_run
        self.timeout_seconds = timeout_seconds or None

    def reload(self) -> None:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would restart DNS service: {self.command}")
            return

        logger.info(f"Restarting DNS service: {self.command}")
        try:
            result = subprocess.run(
                self.command,
                shell=True,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ReloadError(self.command, f"timed out after {e.timeout}s") from e
        except OSError as e:
            raise ReloadError(self.command, str(e)) from e

        stdout = (result.stdout or "").strip()
        stderr = (result.stderr or "").strip()
        if stdout:
            logger.debug(f"Restart stdout: {stdout}")
        if stderr:
            logger.debug(f"Restart stderr: {stderr}")

        if result.returncode != 0:
            raise ReloadError(self.command, f"exit status {result.returncode}", stderr or stdout)
        logger.info("DNS service restarted")


# =============================================================================
# Change Applier
# =============================================================================


class ChangeApplier:
    """Applies one change-set: deletes, then updates, then creates, then reload.

    Not safe to call concurrently; go through MutationSerializer.
    """

    def __init__(self, store: DnsmasqDirectoryStore, reload_trigger: ReloadTrigger):
        self.store = store
        self.reload_trigger = reload_trigger

    def _validate(self, change_set: ChangeSet) -> None:
        for record in change_set.delete + change_set.update_old:
            try:
                validate_record_identity(record.name, record.record_type)
            except ValidationError as e:
                raise ApplyError("validate", record, e) from e
        for record in change_set.update_new + change_set.create:
            try:
                validate_record(record)
            except ValidationError as e:
                raise ApplyError("validate", record, e) from e

    def apply(self, change_set: ChangeSet) -> None:
        logger.info(
            f"Applying DNS changes: create={len(change_set.create)} "
            f"update={len(change_set.update_new)} delete={len(change_set.delete)}"
        )
        self._validate(change_set)

        for record in change_set.delete:
            try:
                self.store.delete_record(record.name, record.record_type)
            except (OSError, WebhookError) as e:
                raise ApplyError("delete", record, e) from e

        for old, new in zip(change_set.update_old, change_set.update_new):
            try:
                # Renamed or retyped records would otherwise leave the old file behind.
                if old.key != new.key:
                    self.store.delete_record(old.name, old.record_type)
                self.store.write_record(new)
            except (OSError, WebhookError) as e:
                raise ApplyError("update", new, e) from e

        for record in change_set.create:
            try:
                self.store.write_record(record)
            except (OSError, WebhookError) as e:
                raise ApplyError("create", record, e) from e

        if change_set.total_changes == 0:
            logger.info("No DNS changes to apply")
            return

        try:
            self.reload_trigger.reload()
        except ReloadError as e:
            raise ApplyError("reload", None, e) from e
        logger.info(f"Applied {change_set.total_changes} DNS change(s)")


# =============================================================================
# Mutation Serializer
# =============================================================================


@dataclass
class _QueueEntry:
    change_set: ChangeSet
    future: "Future[None]"


class MutationSerializer:
    """Runs change-sets one at a time, in arrival order, on a single worker thread.

    ``submit`` never blocks on I/O: it appends to the queue under the lock and
    returns a Future. The worker takes the next entry under the same lock it
    uses to go idle, so an arrival can never observe a stale idle state.
    """

    IDLE = "idle"
    BUSY = "busy"

    def __init__(
        self,
        apply: Callable[[ChangeSet], None],
        *,
        on_applied: Optional[Callable[[], None]] = None,
    ):
        self._apply = apply
        self._on_applied = on_applied
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._pending: Deque[_QueueEntry] = deque()
        self._state = self.IDLE
        self._closed = False
        self._worker = threading.Thread(
            target=self._run, name="mutation-serializer", daemon=True
        )
        self._worker.start()

    @property
    def state(self) -> str:
        with self._lock:
            return self._state

    @property
    def queue_length(self) -> int:
        with self._lock:
            return len(self._pending)

    def submit(self, change_set: ChangeSet) -> "Future[None]":
        future: "Future[None]" = Future()
        with self._lock:
            if self._closed:
                raise SerializerClosedError("MutationSerializer is closed")
            self._pending.append(_QueueEntry(change_set, future))
            if self._state == self.BUSY:
                logger.debug(f"Update in progress, queued change-set ({len(self._pending)} waiting)")
            self._wakeup.notify()
        return future

    def apply(self, change_set: ChangeSet) -> None:
        """Submit and wait for the result, re-raising the apply error if any."""
        self.submit(change_set).result()

    def _next_entry(self) -> Optional[_QueueEntry]:
        with self._lock:
            self._state = self.IDLE
            while not self._pending and not self._closed:
                self._wakeup.wait()
            if not self._pending:
                return None
            self._state = self.BUSY
            return self._pending.popleft()

    def _run(self) -> None:
        while True:
            entry = self._next_entry()
            if entry is None:
                return
            if not entry.future.set_running_or_notify_cancel():
                continue

            error: Optional[BaseException] = None
            try:
                self._apply(entry.change_set)
            except BaseException as e:
                # Handed to the caller; the worker keeps draining the queue.
                logger.error(f"Failed to apply DNS changes: {e!r}")
                error = e
            finally:
                # Before resolving, so a caller reading right after sees fresh state.
                if self._on_applied is not None:
                    try:
                        self._on_applied()
                    except Exception:
                        logger.exception("Post-apply hook failed")
                if error is not None:
                    entry.future.set_exception(error)
                else:
                    entry.future.set_result(None)

    def close(self, timeout: Optional[float] = None, *, cancel_pending: bool = False) -> bool:
        """Stop accepting work and wait for the worker to drain.

        Returns False if the worker was still running when ``timeout`` expired.
        """
        with self._lock:
            self._closed = True
            if cancel_pending:
                while self._pending:
                    self._pending.popleft().future.cancel()
            self._wakeup.notify_all()
        self._worker.join(timeout)
        if self._worker.is_alive():
            logger.warning(f"Pending DNS changes still running after {timeout}s shutdown deadline")
            return False
        return True


# =============================================================================
# DNS Provider Interface and Implementations
# =============================================================================


class DNSProvider(ABC):
    """What the webhook server needs from a record backend."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def get_records(self) -> List[DNSRecord]:
        """Get all DNS records managed by this provider."""
        pass

    @abstractmethod
    def apply_changes(self, change_set: ChangeSet) -> None:
        """Apply a change-set, raising on failure."""
        pass

    def close(self, timeout: Optional[float] = None) -> bool:
        return True


class DnsmasqDNSProvider(DNSProvider):
    """dnsmasq snippet directory behind a single-writer serializer."""

    def __init__(
        self,
        store: DnsmasqDirectoryStore,
        reload_trigger: ReloadTrigger,
        *,
        cache_records: bool = False,
    ):
        self.store = store
        self.applier = ChangeApplier(store, reload_trigger)
        self._cache_records = cache_records
        self._cache_lock = threading.Lock()
        self._cached: Optional[List[DNSRecord]] = None
        self.serializer = MutationSerializer(self.applier.apply, on_applied=self.invalidate_cache)

    @property
    def name(self) -> str:
        return "dnsmasq"

    def get_records(self) -> List[DNSRecord]:
        if not self._cache_records:
            return self.store.list_records()
        with self._cache_lock:
            if self._cached is None:
                self._cached = self.store.list_records()
            return list(self._cached)

    def invalidate_cache(self) -> None:
        with self._cache_lock:
            self._cached = None

    def submit_changes(self, change_set: ChangeSet) -> "Future[None]":
        return self.serializer.submit(change_set)

    def apply_changes(self, change_set: ChangeSet) -> None:
        self.serializer.apply(change_set)

    def close(self, timeout: Optional[float] = None) -> bool:
        return self.serializer.close(timeout)


def create_dns_provider(settings: WebhookSettings) -> DnsmasqDNSProvider:
    """Factory function to wire the dnsmasq provider from settings."""
    store = DnsmasqDirectoryStore(
        settings.dnsmasq_dir, ttl=settings.dns_ttl, dry_run=settings.dry_run
    )
    reload_trigger = ReloadTrigger(
        settings.restart_command,
        dry_run=settings.dry_run,
        timeout_seconds=settings.reload_timeout_seconds,
    )
    return DnsmasqDNSProvider(store, reload_trigger, cache_records=settings.records_cache)


# =============================================================================
# Utility Functions
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_domain_filter(value: Any) -> Tuple[str, ...]:
    """Accept a comma-separated string or a YAML list."""
    if not value:
        return ()
    items = value if isinstance(value, list) else str(value).split(",")
    return tuple(str(item).strip() for item in items if str(item).strip())


def _parse_number(value: Any, key: str, cast: Callable[[Any], Any]) -> Any:
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{key} must be a number, got {value!r}") from None


def _load_config_file(path: str) -> Dict[str, Any]:
    """Load the optional YAML settings file. Missing or broken files yield {}."""
    if not path or not os.path.isfile(path):
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.warning(f"Failed to load config file {path}: {e}")
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning(f"Config file {path} must contain a mapping, ignoring it")
        return {}
    return data


def load_settings(
    environ: Optional[Mapping[str, str]] = None, config_path: Optional[str] = None
) -> WebhookSettings:
    """Build settings from the YAML file, overridden by environment variables."""
    env = os.environ if environ is None else environ
    if config_path is None:
        config_path = env.get("CONFIG_PATH", CONFIG_PATH)
    file_values = _load_config_file(config_path)

    def pick(key: str, default: Any) -> Any:
        value = env.get(key)
        if value is not None and str(value).strip() != "":
            return value.strip() if isinstance(value, str) else value
        return file_values.get(key.lower(), default)

    defaults = WebhookSettings(domain_filter=())
    return WebhookSettings(
        domain_filter=_parse_domain_filter(pick("DOMAIN_FILTER", "")),
        dnsmasq_dir=str(pick("DNSMASQ_DIR", defaults.dnsmasq_dir)),
        dns_ttl=_parse_number(pick("DNS_TTL", defaults.dns_ttl), "DNS_TTL", int),
        dry_run=_parse_bool(pick("DRY_RUN", defaults.dry_run)),
        restart_command=str(pick("RESTART_COMMAND", defaults.restart_command)),
        reload_timeout_seconds=_parse_number(
            pick("RELOAD_TIMEOUT_SECONDS", defaults.reload_timeout_seconds),
            "RELOAD_TIMEOUT_SECONDS",
            float,
        ),
        port_provider=_parse_number(
            pick("PORT_PROVIDER", defaults.port_provider), "PORT_PROVIDER", int
        ),
        port_health=_parse_number(pick("PORT_HEALTH", defaults.port_health), "PORT_HEALTH", int),
        listen_address=str(pick("LISTEN_ADDRESS", defaults.listen_address)),
        log_level=str(pick("LOG_LEVEL", defaults.log_level)).upper(),
        records_cache=_parse_bool(pick("RECORDS_CACHE", defaults.records_cache)),
        shutdown_timeout_seconds=_parse_number(
            pick("SHUTDOWN_TIMEOUT_SECONDS", defaults.shutdown_timeout_seconds),
            "SHUTDOWN_TIMEOUT_SECONDS",
            float,
        ),
    )


def adjust_endpoints(endpoints: List[Any]) -> List[Any]:
    """Keep only endpoints this provider can store, unchanged."""
    adjusted = []
    for endpoint in endpoints:
        if not isinstance(endpoint, dict):
            logger.warning("Skipping invalid endpoint (not an object)")
            continue
        if endpoint.get("recordType") not in SUPPORTED_RECORD_TYPES:
            logger.debug(
                f"Filtering out unsupported record type {endpoint.get('recordType')} "
                f"for {endpoint.get('dnsName')}"
            )
            continue
        try:
            validate_record(DNSRecord.from_endpoint(endpoint))
        except ValidationError as e:
            logger.warning(f"Skipping invalid endpoint: {e}")
            continue
        adjusted.append(endpoint)
    return adjusted


# =============================================================================
# Webhook HTTP Server
# =============================================================================


def _webhook_response(payload: Any, status_code: int = status.HTTP_200_OK) -> Response:
    # external-dns requires the exact media type, without a charset.
    return Response(
        content=json.dumps(payload), status_code=status_code, media_type=WEBHOOK_MEDIA_TYPE
    )


def _require_webhook_accept(request: Request) -> None:
    accept = request.headers.get("accept")
    if not accept or WEBHOOK_MEDIA_TYPE in accept or "*/*" in accept:
        return
    logger.warning(f"Unsupported Accept header: {accept}")
    raise HTTPException(status_code=status.HTTP_406_NOT_ACCEPTABLE, detail="Not Acceptable")


async def _read_json(request: Request) -> Any:
    """Parse the body as JSON whatever its Content-Type; empty bodies are None."""
    raw = await request.body()
    if len(raw) > MAX_REQUEST_BYTES:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body too large")
    if not raw:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.warning(f"Invalid JSON body on {request.url.path}: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid request body"
        ) from e


def create_app(provider: DNSProvider, settings: WebhookSettings) -> FastAPI:
    """Create the external-dns webhook API.

    Inputs:
      - provider: Record backend that lists records and applies change-sets.
      - settings: Loaded settings; ``domain_filter`` and ``dns_ttl`` are used here.

    Outputs:
      - FastAPI application serving ``GET /``, ``GET /records``,
        ``POST /records`` and ``POST /adjustendpoints``.

    Example:
      >>> app = create_app(create_dns_provider(settings), settings)
    """
    app = FastAPI(title="dnsmasq-webhook", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.provider = provider
    app.state.settings = settings
    accept_dep = [Depends(_require_webhook_accept)]

    @app.get("/", dependencies=accept_dep)
    async def negotiate() -> Response:
        domain_filter = list(app.state.settings.domain_filter)
        logger.info(f"Negotiate response sent ({len(domain_filter)} domain filter(s))")
        return _webhook_response({"domainFilter": domain_filter})

    # Plain def: FastAPI runs it in the threadpool, off the event loop.
    @app.get("/records", dependencies=accept_dep)
    def get_records() -> Response:
        try:
            records = app.state.provider.get_records()
        except OSError as e:
            logger.error(f"Failed to get records: {e}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to retrieve DNS records",
            ) from e
        return _webhook_response([r.to_endpoint() for r in records])

    @app.post("/records")
    async def apply_changes(request: Request) -> Response:
        payload = await _read_json(request)
        try:
            change_set = ChangeSet.from_json(payload, default_ttl=app.state.settings.dns_ttl)
        except ValidationError as e:
            logger.warning(f"Invalid change-set: {e}")
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

        try:
            await run_in_threadpool(app.state.provider.apply_changes, change_set)
        except SerializerClosedError as e:
            logger.warning(f"Rejected DNS changes during shutdown: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Shutting down"
            ) from e
        except ApplyError as e:
            code = (
                status.HTTP_400_BAD_REQUEST
                if e.step == "validate"
                else status.HTTP_500_INTERNAL_SERVER_ERROR
            )
            raise HTTPException(status_code=code, detail=f"Failed to apply DNS changes: {e}") from e
        return Response(status_code=status.HTTP_204_NO_CONTENT, media_type=WEBHOOK_MEDIA_TYPE)

    @app.post("/adjustendpoints", dependencies=accept_dep)
    async def adjust(request: Request) -> Response:
        endpoints = await _read_json(request)
        if not isinstance(endpoints, list):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Request body must be an array of endpoints",
            )
        adjusted = adjust_endpoints(endpoints)
        logger.info(f"Adjusted endpoints: {len(endpoints)} in, {len(adjusted)} out")
        return _webhook_response(adjusted)

    return app


def create_health_app() -> FastAPI:
    """Liveness endpoint on its own port, so probes never queue behind applies."""
    app = FastAPI(title="dnsmasq-webhook-health", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/healthz")
    async def healthz() -> PlainTextResponse:
        return PlainTextResponse("ok")

    return app


def start_server(server: uvicorn.Server, name: str, stop: threading.Event) -> threading.Thread:
    """Run a uvicorn server on a daemon thread; ``stop`` is set when it exits."""

    def _runner() -> None:
        try:
            server.run()
        except Exception:
            logger.exception(f"Unhandled exception in {name} server thread")
        except SystemExit:
            # uvicorn exits this way when it cannot bind.
            logger.error(f"{name} server failed to start on {server.config.host}:{server.config.port}")
        finally:
            stop.set()

    thread = threading.Thread(target=_runner, name=name, daemon=True)
    thread.start()
    logger.info(f"{name} listening on {server.config.host}:{server.config.port}")
    return thread


def serve(settings: WebhookSettings, provider: DNSProvider) -> None:
    """Run the webhook and health servers until SIGTERM or SIGINT."""
    log_level = settings.log_level.lower()
    webhook = uvicorn.Server(
        uvicorn.Config(
            create_app(provider, settings),
            host=settings.listen_address,
            port=settings.port_provider,
            log_level=log_level,
        )
    )
    health = uvicorn.Server(
        uvicorn.Config(
            create_health_app(),
            host=settings.listen_address,
            port=settings.port_health,
            log_level=log_level,
            access_log=False,
        )
    )
    stop = threading.Event()

    # uvicorn only installs its own handlers on the main thread, so these win.
    def _shutdown(signum: int, _frame: Any) -> None:
        logger.info(f"Shutdown signal received: {signal.Signals(signum).name}")
        stop.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    webhook_thread = start_server(webhook, "webhook", stop)
    health_thread = start_server(health, "health", stop)
    stop.wait()

    # In-flight POST /records requests finish before the webhook server exits.
    webhook.should_exit = True
    webhook_thread.join(settings.shutdown_timeout_seconds)
    if not provider.close(settings.shutdown_timeout_seconds):
        logger.error("Forced shutdown with DNS changes still pending")
    health.should_exit = True
    health_thread.join(settings.shutdown_timeout_seconds)
    logger.info("Servers closed")


def healthcheck(settings: WebhookSettings) -> bool:
    url = f"http://127.0.0.1:{settings.port_health}/healthz"
    try:
        response = requests.get(url, timeout=5)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.error(f"Health check failed for {url}: {e}")
        return False
    return True


# =============================================================================
# Main
# =============================================================================


def validate_config(settings: WebhookSettings) -> bool:
    """Validate configuration."""
    errors = []

    if not settings.domain_filter:
        errors.append("DOMAIN_FILTER must contain at least one domain")
    for key, port in (("PORT_PROVIDER", settings.port_provider), ("PORT_HEALTH", settings.port_health)):
        if not 1 <= port <= 65535:
            errors.append(f"{key} must be a valid port number (1-65535), got {port}")
    if settings.port_provider == settings.port_health:
        errors.append("PORT_PROVIDER and PORT_HEALTH must differ")
    if settings.dns_ttl < 0:
        errors.append("DNS_TTL must be a non-negative number")
    if settings.log_level not in VALID_LOG_LEVELS:
        errors.append(f"LOG_LEVEL must be one of: {', '.join(VALID_LOG_LEVELS)}")
    if not settings.dnsmasq_dir:
        errors.append("DNSMASQ_DIR must not be empty")
    if not settings.restart_command.strip():
        errors.append("RESTART_COMMAND must not be empty")

    if settings.dry_run:
        logger.warning("DRY_RUN enabled: no files will be written and the DNS service will not restart")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(prog="dnsmasq-webhook", description=__doc__.splitlines()[0])
    parser.add_argument(
        "command", nargs="?", default="serve", choices=("serve", "healthcheck", "list")
    )
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        return 1
    logging.getLogger().setLevel(getattr(logging, settings.log_level, logging.INFO))

    if args.command == "healthcheck":
        return 0 if healthcheck(settings) else 1

    if args.command == "list":
        store = DnsmasqDirectoryStore(settings.dnsmasq_dir, ttl=settings.dns_ttl, dry_run=True)
        print(json.dumps([r.to_endpoint() for r in store.list_records()], indent=2))
        return 0

    if not validate_config(settings):
        logger.error("Configuration validation failed")
        return 1

    logger.info(f"dnsmasq-webhook: {settings.dnsmasq_dir} (dry run: {settings.dry_run})")
    logger.info(f"Domain filter: {', '.join(settings.domain_filter)}")
    logger.info(f"Restart command: {settings.restart_command}")

    provider = create_dns_provider(settings)
    try:
        provider.store.ensure_directory()
        serve(settings, provider)
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
