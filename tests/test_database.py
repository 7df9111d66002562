import pytest

import database
from access_ledger import is_valid_patient_id
from errors import UpstreamUnavailable


def test_generated_patient_ids_match_ledger_format():
    patient_id = database.generate_patient_id(2026)
    assert patient_id.startswith("P-2026-")
    assert is_valid_patient_id(patient_id)


def test_reads_degrade_without_supabase():
    assert database.fetch_patient("P-2026-047") is None
    assert database.fetch_life_packet("P-2026-047") is None
    assert database.fetch_audit_log() == []
    assert database.store_access_request({"request_id": "req-1"}) is False


def test_dependent_writes_raise_without_supabase():
    with pytest.raises(UpstreamUnavailable):
        database.find_patient_by_email("asha@example.com")
    with pytest.raises(UpstreamUnavailable):
        database.register_patient("u-1", "asha@example.com")
    with pytest.raises(UpstreamUnavailable):
        database.append_audit("ACCESS_REASON", "QmA", {})


class _Query:
    def __init__(self, table, log):
        self.table = table
        self.log = log

    def upsert(self, row):
        self.log.append((self.table, row))
        return self

    def execute(self):
        return self


class _Client:
    def __init__(self):
        self.log = []

    def table(self, name):
        return _Query(name, self.log)


def test_store_access_request_never_sends_payload(monkeypatch):
    client = _Client()
    monkeypatch.setattr(database, "get_client", lambda: client)

    stored = database.store_access_request({"request_id": "req-1", "state": "approved", "payload": {"bloodType": "O+"}})

    table, row = client.log[0]
    assert stored
    assert table == "access_requests"
    assert row["state"] == "approved"
    assert "payload" not in row
