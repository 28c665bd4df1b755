"""Unit tests for ChangeApplier.

Tests the order in which a change-set touches the snippet directory and when
the DNS service is restarted.
"""

from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from dnsmasq_webhook.cli import (
    ApplyError,
    ChangeApplier,
    ChangeSet,
    DNSRecord,
    DnsmasqDirectoryStore,
    ReloadError,
    ReloadTrigger,
    ValidationError,
    encode_record,
)

# =============================================================================
# Test Doubles
# =============================================================================


class RecordingStore(DnsmasqDirectoryStore):
    """Real directory store that also records the order of operations."""

    def __init__(self, directory: str, fail_on: Optional[Tuple[str, str]] = None):
        super().__init__(directory)
        self.calls: List[Tuple[str, str, str]] = []
        self._fail_on = fail_on

    def write_record(self, record: DNSRecord) -> None:
        self.calls.append(("write", record.name, record.record_type))
        if self._fail_on == ("write", record.name):
            raise PermissionError(13, "Permission denied", record.name)
        super().write_record(record)

    def delete_record(self, name: str, record_type: str) -> None:
        self.calls.append(("delete", name, record_type))
        if self._fail_on == ("delete", name):
            raise PermissionError(13, "Permission denied", name)
        super().delete_record(name, record_type)


class RecordingReload(ReloadTrigger):
    def __init__(self, error: Optional[ReloadError] = None):
        super().__init__("true")
        self.count = 0
        self._error = error

    def reload(self) -> None:
        self.count += 1
        if self._error is not None:
            raise self._error


def a_record(name: str, *ips: str) -> DNSRecord:
    return DNSRecord(name, "A", tuple(ips or ("10.0.0.1",)), ttl=300)


def create_test_applier(
    tmp_path: Path,
    existing: Optional[List[DNSRecord]] = None,
    fail_on: Optional[Tuple[str, str]] = None,
    reload_error: Optional[ReloadError] = None,
) -> Tuple[ChangeApplier, RecordingStore, RecordingReload]:
    store = RecordingStore(str(tmp_path / "dnsmasq_local"), fail_on=fail_on)
    for record in existing or []:
        DnsmasqDirectoryStore.write_record(store, record)
    reload_trigger = RecordingReload(reload_error)
    return ChangeApplier(store, reload_trigger), store, reload_trigger


# =============================================================================
# Basic Operations
# =============================================================================


def test_create_writes_file_and_reloads_once(tmp_path: Path) -> None:
    applier, store, reload_trigger = create_test_applier(tmp_path)

    applier.apply(ChangeSet(create=(a_record("a.example.com"), a_record("b.example.com"))))

    assert {r.name for r in store.list_records()} == {"a.example.com", "b.example.com"}
    assert reload_trigger.count == 1


def test_delete_removes_file(tmp_path: Path) -> None:
    applier, store, reload_trigger = create_test_applier(
        tmp_path, existing=[a_record("a.example.com")]
    )

    applier.apply(ChangeSet(delete=(a_record("a.example.com"),)))

    assert store.list_records() == []
    assert reload_trigger.count == 1


def test_delete_of_already_missing_record_succeeds_and_reloads(tmp_path: Path) -> None:
    applier, store, reload_trigger = create_test_applier(tmp_path)

    applier.apply(ChangeSet(delete=(a_record("gone.example.com"),)))

    assert reload_trigger.count == 1


@pytest.mark.parametrize("change_set", [ChangeSet(), ChangeSet.from_json({}), ChangeSet.from_json(
    {"create": [], "updateOld": [], "updateNew": [], "delete": []}
)])
def test_empty_change_set_never_reloads(tmp_path: Path, change_set: ChangeSet) -> None:
    applier, store, reload_trigger = create_test_applier(tmp_path)

    applier.apply(change_set)

    assert reload_trigger.count == 0
    assert store.calls == []


# =============================================================================
# Updates
# =============================================================================


def test_update_with_rename_removes_old_file(tmp_path: Path) -> None:
    old = a_record("a.example.com", "10.0.0.1")
    new = a_record("b.example.com", "10.0.0.2")
    applier, store, reload_trigger = create_test_applier(tmp_path, existing=[old])

    applier.apply(ChangeSet(update_old=(old,), update_new=(new,)))

    assert not (store.directory / "a.example.com").exists()
    assert (store.directory / "b.example.com").read_text() == encode_record(new)
    assert store.calls == [("delete", "a.example.com", "A"), ("write", "b.example.com", "A")]
    assert reload_trigger.count == 1


def test_update_with_type_change_removes_old_file(tmp_path: Path) -> None:
    old = a_record("app.example.com")
    new = DNSRecord("app.example.com", "CNAME", ("lb.example.com",))
    applier, store, _ = create_test_applier(tmp_path, existing=[old])

    applier.apply(ChangeSet(update_old=(old,), update_new=(new,)))

    assert store.list_records() == [new]


def test_update_same_key_rewrites_without_delete(tmp_path: Path) -> None:
    old = a_record("a.example.com", "10.0.0.1")
    new = a_record("a.example.com", "10.0.0.1", "10.0.0.2")
    applier, store, _ = create_test_applier(tmp_path, existing=[old])

    applier.apply(ChangeSet(update_old=(old,), update_new=(new,)))

    assert store.calls == [("write", "a.example.com", "A")]
    assert store.list_records() == [new]


def test_update_with_identical_record_still_writes(tmp_path: Path) -> None:
    record = a_record("a.example.com")
    applier, store, reload_trigger = create_test_applier(tmp_path, existing=[record])

    applier.apply(ChangeSet(update_old=(record,), update_new=(record,)))

    assert store.calls == [("write", "a.example.com", "A")]
    assert reload_trigger.count == 1


# =============================================================================
# Ordering
# =============================================================================


def test_deletes_then_updates_then_creates(tmp_path: Path) -> None:
    applier, store, _ = create_test_applier(
        tmp_path, existing=[a_record("old.example.com"), a_record("gone.example.com")]
    )

    applier.apply(
        ChangeSet(
            create=(a_record("new.example.com"),),
            update_old=(a_record("old.example.com"),),
            update_new=(a_record("renamed.example.com"),),
            delete=(a_record("gone.example.com"),),
        )
    )

    assert store.calls == [
        ("delete", "gone.example.com", "A"),
        ("delete", "old.example.com", "A"),
        ("write", "renamed.example.com", "A"),
        ("write", "new.example.com", "A"),
    ]


def test_delete_and_create_of_same_record_leaves_record(tmp_path: Path) -> None:
    """Deletes run first, so a delete+create pair in one batch recreates the file."""
    applier, store, _ = create_test_applier(tmp_path, existing=[a_record("a.example.com", "10.0.0.1")])

    applier.apply(
        ChangeSet(
            delete=(a_record("a.example.com", "10.0.0.1"),),
            create=(a_record("a.example.com", "10.0.0.9"),),
        )
    )

    assert store.list_records() == [a_record("a.example.com", "10.0.0.9")]


# =============================================================================
# Failures
# =============================================================================


def test_invalid_record_rejected_before_any_io(tmp_path: Path) -> None:
    applier, store, reload_trigger = create_test_applier(tmp_path)

    with pytest.raises(ApplyError) as excinfo:
        applier.apply(
            ChangeSet(
                delete=(a_record("a.example.com"),),
                create=(a_record("../../etc/cron.d/evil"),),
            )
        )

    assert excinfo.value.step == "validate"
    assert isinstance(excinfo.value.__cause__, ValidationError)
    assert store.calls == []
    assert reload_trigger.count == 0


def test_unencodable_txt_value_is_a_validation_failure(tmp_path: Path) -> None:
    applier, store, reload_trigger = create_test_applier(tmp_path)
    lone_surrogate = DNSRecord("app.example.com", "TXT", ("\ud800",))

    with pytest.raises(ApplyError) as excinfo:
        applier.apply(ChangeSet(create=(lone_surrogate,)))

    assert excinfo.value.step == "validate"
    assert isinstance(excinfo.value.__cause__, ValidationError)
    assert store.calls == []
    assert not store.directory.exists()
    assert reload_trigger.count == 0


def test_traversal_in_delete_name_is_rejected(tmp_path: Path) -> None:
    applier, store, _ = create_test_applier(tmp_path)

    with pytest.raises(ApplyError):
        applier.apply(ChangeSet(delete=(DNSRecord("../victim", "A", ()),)))

    assert store.calls == []


def test_io_failure_aborts_remaining_steps(tmp_path: Path) -> None:
    applier, store, reload_trigger = create_test_applier(
        tmp_path, fail_on=("write", "b.example.com")
    )

    with pytest.raises(ApplyError) as excinfo:
        applier.apply(
            ChangeSet(
                create=(
                    a_record("a.example.com"),
                    a_record("b.example.com"),
                    a_record("c.example.com"),
                )
            )
        )

    assert excinfo.value.step == "create"
    assert excinfo.value.record == a_record("b.example.com")
    assert isinstance(excinfo.value.__cause__, PermissionError)
    # Partial application is kept, the rest of the batch never runs.
    assert [r.name for r in store.list_records()] == ["a.example.com"]
    assert ("write", "c.example.com", "A") not in store.calls
    assert reload_trigger.count == 0


def test_reload_failure_keeps_file_changes(tmp_path: Path) -> None:
    error = ReloadError("systemctl restart dnsmasq", "exit status 1", "boom")
    applier, store, reload_trigger = create_test_applier(tmp_path, reload_error=error)

    with pytest.raises(ApplyError) as excinfo:
        applier.apply(ChangeSet(create=(a_record("a.example.com"),)))

    assert excinfo.value.step == "reload"
    assert excinfo.value.__cause__ is error
    assert "boom" in str(excinfo.value)
    assert [r.name for r in store.list_records()] == ["a.example.com"]
    assert reload_trigger.count == 1
