"""Tests for tamper-evident audit trail behavior."""

import json

import pytest

from attorney.audit import AUDIT_KEY_ENV, AuditTrail, EventType


@pytest.fixture
def trail(tmp_path, monkeypatch):
    monkeypatch.delenv(AUDIT_KEY_ENV, raising=False)
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


def test_audit_hash_chain_detects_tampering(trail, tmp_path):
    trail.log(EventType.MANDATE_STORED, mandate_id="m-1", success=True)
    trail.log(EventType.PAYMENT_FORWARDED, mandate_id="m-1", success=True, amount="0.50")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    second = json.loads(lines[1])
    second["amount"] = "9999.00"
    lines[1] = json.dumps(second, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events()


def test_deleted_entry_breaks_chain(trail, tmp_path):
    for i in range(3):
        trail.log(EventType.INTENT_VERIFIED, mandate_id=f"m-{i}")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    (tmp_path / "audit.jsonl").write_text("\n".join([lines[0], lines[2]]) + "\n")

    with pytest.raises(RuntimeError, match="previous hash mismatch"):
        trail.read_events()


def test_log_event_splits_known_fields(trail):
    event_hash = trail.log_event(
        EventType.ENFORCEMENT_FAILED,
        "Payment request refused",
        {"mandate_id": "cart-1", "success": False, "reason": "value_mismatch", "amount": "160.00"},
    )

    [event] = trail.read_events()
    assert event.event_hash == event_hash
    assert event.mandate_id == "cart-1"
    assert event.success is False
    assert event.reason == "value_mismatch"
    assert event.details == {"amount": "160.00"}


def test_signed_event_keeps_signature(trail):
    trail.log_signed_event(EventType.APPROVAL_GRANTED, "Approved", {"mandate_id": "cart-1"}, "user", "0xabc")
    [event] = trail.read_events()
    assert event.signer_id == "user"
    assert event.signature == "0xabc"
    assert event.details is None


def test_filters_and_limit(trail):
    trail.log_event(EventType.INTENT_VERIFIED, "ok", {"mandate_id": "a"})
    trail.log_event(EventType.CART_VERIFIED, "ok", {"mandate_id": "b"})
    trail.log_event(EventType.CART_VERIFIED, "bad", {"mandate_id": "b", "success": False})

    assert [e.description for e in trail.read_events(mandate_id="b")] == ["ok", "bad"]
    assert len(trail.read_events(event_type=EventType.INTENT_VERIFIED)) == 1
    assert [e.description for e in trail.read_events(limit=1)] == ["bad"]


def test_summary(trail):
    trail.log_event(EventType.ENFORCEMENT_PASSED, "ok", {"mandate_id": "p-1"})
    trail.log_event(EventType.ENFORCEMENT_FAILED, "refused", {"mandate_id": "p-2", "success": False})

    summary = trail.summary()
    assert summary["total_events"] == 2
    assert summary["failures"] == 1
    assert summary["by_type"] == {"enforcement_passed": 1, "enforcement_failed": 1}
    assert json.loads(summary["last_event"])["mandate_id"] == "p-2"
    assert trail.summary(mandate_id="p-1")["total_events"] == 1


def test_chain_continues_across_instances(trail, tmp_path):
    trail.log_event(EventType.MANDATE_STORED, "first")
    reopened = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "audit_hmac.key")
    reopened.log_event(EventType.MANDATE_REVOKED, "second")

    assert [e.description for e in reopened.read_events()] == ["first", "second"]


def test_key_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv(AUDIT_KEY_ENV, "env-audit-key")
    first = AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "secret" / "k")
    first.log_event(EventType.MANDATE_STORED, "stored")

    assert len(AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "other" / "k").read_events()) == 1

    monkeypatch.delenv(AUDIT_KEY_ENV)
    with pytest.raises(RuntimeError, match="Audit chain broken"):
        AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "other" / "k").read_events()


def test_explicit_key_must_match(tmp_path):
    AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "k", hmac_key="one").log_event(
        EventType.MANDATE_STORED, "stored"
    )
    with pytest.raises(RuntimeError, match="Audit chain broken"):
        AuditTrail(path=tmp_path / "audit.jsonl", key_path=tmp_path / "k", hmac_key="two").read_events()


def test_files_are_private(trail, tmp_path):
    trail.log_event(EventType.MANDATE_STORED, "stored")
    assert (tmp_path / "audit.jsonl").stat().st_mode & 0o777 == 0o600
    assert (tmp_path / "secret" / "audit_hmac.key").stat().st_mode & 0o777 == 0o600


def test_time_range(tmp_path):
    ticks = iter([100.0, 200.0, 300.0])
    trail = AuditTrail(tmp_path / "audit.jsonl", tmp_path / "k", hmac_key="k", clock=lambda: next(ticks))
    first = trail.log(EventType.INTENT_VERIFIED, mandate_id="a")
    second = trail.log(EventType.CART_VERIFIED, mandate_id="a")
    third = trail.log(EventType.PAYMENT_MANDATE_VERIFIED, mandate_id="a")

    window = trail.read_events(start_time=150.0, end_time=250.0)
    assert [e.event_hash for e in window] == [second.event_hash]
    assert [e.event_hash for e in trail.read_events(start_time=200.0)] == [
        second.event_hash,
        third.event_hash,
    ]
    assert [e.event_hash for e in trail.read_events(end_time=199.9)] == [first.event_hash]
    assert trail.summary(start_time=300.0)["total_events"] == 1


def test_filtered_read_still_verifies_whole_chain(trail, tmp_path):
    old = trail.log(EventType.MANDATE_STORED, mandate_id="m-1", amount="1.00")
    trail.log(EventType.MANDATE_STORED, mandate_id="m-2")

    lines = (tmp_path / "audit.jsonl").read_text().splitlines()
    first = json.loads(lines[0])
    first["amount"] = "2.00"
    lines[0] = json.dumps(first, separators=(",", ":"))
    (tmp_path / "audit.jsonl").write_text("\n".join(lines) + "\n")

    with pytest.raises(RuntimeError, match="Audit chain broken"):
        trail.read_events(mandate_id="m-2", start_time=old.timestamp + 1e9)
