import pytest

from src.domain.errors import AuthenticationError, TransientNetworkError
from src.services import reconciler


CLIENT_CREATE = "it.fattureincloud.webhooks.entities.clients.create"
INVOICE_CREATE = "it.fattureincloud.webhooks.issued_documents.invoices.create"
BASE = "https://sync.example.com/api/webhooks/fic"


@pytest.fixture
def account(fake_db, account_factory):
    row = account_factory()
    fake_db.tables["fic_accounts"] = [row]
    return row


def _local_rows(fake_db):
    return {row["fic_subscription_id"]: row for row in fake_db.rows("fic_subscriptions")}


def test_newly_discovered_subscription_is_stored(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/entity", types=[CLIENT_CREATE], secret="s-1")

    report = reconciler.reconcile_account(account)

    assert report.newly_discovered == 1
    assert report.errored == 0
    row = _local_rows(fake_db)["R1"]
    assert row["event_group"] == "entity"
    assert row["is_active"] is True
    assert row["webhook_secret"] == "s-1"


def test_second_pass_is_unchanged(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/entity", types=[CLIENT_CREATE])

    reconciler.reconcile_account(account)
    report = reconciler.reconcile_account(account)

    assert report.matched_unchanged == 1
    assert report.newly_discovered == 0
    assert len(fake_db.rows("fic_subscriptions")) == 1


def test_remote_expiry_is_tracked_and_cleared(fake_db, fake_fic, account):
    record = fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/entity", types=[CLIENT_CREATE])
    reconciler.reconcile_account(account)
    assert _local_rows(fake_db)["R1"]["expires_at"] is None

    record["expires_at"] = "2030-01-10T00:00:00+00:00"
    report = reconciler.reconcile_account(account)
    assert report.updated == 1
    assert _local_rows(fake_db)["R1"]["expires_at"] == "2030-01-10T00:00:00+00:00"

    record["expires_at"] = "2030-01-10T00:00:00Z"
    report = reconciler.reconcile_account(account)
    assert report.matched_unchanged == 1

    record["expires_at"] = None
    report = reconciler.reconcile_account(account)
    assert report.updated == 1
    assert _local_rows(fake_db)["R1"]["expires_at"] is None


def test_registered_types_win_over_url_group(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/entity", types=[INVOICE_CREATE])
    fake_db.tables["fic_subscriptions"] = [
        {
            "id": "local-1",
            "fic_account_id": "acct-1",
            "fic_subscription_id": "R1",
            "event_group": "entity",
            "event_types": [INVOICE_CREATE],
            "sink": f"{BASE}/acct-1/entity",
            "verified": True,
            "is_active": True,
            "verification_method": "header",
        }
    ]

    report = reconciler.reconcile_account(account)

    assert report.group_key_corrected == 1
    item = report.items[0]
    assert item.group_source == "types"
    assert item.url_group == "entity"
    assert item.effective_group == "issued_documents"
    assert item.previous_group == "entity"
    assert _local_rows(fake_db)["R1"]["event_group"] == "issued_documents"


def test_url_group_used_when_types_are_empty(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/receipts", types=[])

    report = reconciler.reconcile_account(account)

    assert report.items[0].group_source == "url"
    assert _local_rows(fake_db)["R1"]["event_group"] == "receipts"


def test_foreign_sink_falls_back_to_default_group(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink="https://hooks.example.com/receive", types=[])

    report = reconciler.reconcile_account(account)

    assert report.items[0].group_source == "default"
    assert report.misrouted_recreated == 0
    assert _local_rows(fake_db)["R1"]["event_group"] == "default"


def test_subscriptions_sharing_a_group_all_persist(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/entity", types=[CLIENT_CREATE])
    fake_fic.add_subscription(
        "1001",
        id="R2",
        sink=f"{BASE}/acct-1/entity",
        types=["it.fattureincloud.webhooks.entities.suppliers.create"],
    )

    report = reconciler.reconcile_account(account)

    assert report.newly_discovered == 2
    rows = _local_rows(fake_db)
    assert rows["R1"]["event_group"] == rows["R2"]["event_group"] == "entity"


def test_misrouted_subscription_is_recreated_with_same_types(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R9", sink=f"{BASE}/acct-2/entity", types=[CLIENT_CREATE])
    fake_db.tables["fic_subscriptions"] = [
        {
            "id": "local-9",
            "fic_account_id": "acct-1",
            "fic_subscription_id": "R9",
            "event_group": "entity",
            "event_types": [CLIENT_CREATE],
            "is_active": True,
        }
    ]

    report = reconciler.reconcile_account(account)

    assert report.misrouted_recreated == 1
    assert report.errored == 0
    assert ("delete", "1001", "R9") in fake_fic.calls
    create_calls = [call for call in fake_fic.calls if call[0] == "create"]
    assert create_calls == [("create", "1001", f"{BASE}/acct-1/entity", [CLIENT_CREATE])]

    rows = _local_rows(fake_db)
    assert "R9" not in rows
    new_row = rows[report.items[0].new_remote_id]
    assert new_row["is_active"] is True
    assert new_row["sink"] == f"{BASE}/acct-1/entity"
    assert report.deactivated_missing == 0


def test_misrouted_dry_run_touches_nothing(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R9", sink=f"{BASE}/acct-2/entity", types=[CLIENT_CREATE])

    report = reconciler.reconcile_account(account, dry_run=True)

    assert report.misrouted_recreated == 1
    assert [call[0] for call in fake_fic.calls] == ["list"]
    assert fake_db.rows("fic_subscriptions") == []


def test_misrouted_recreate_failure_is_reported(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R9", sink=f"{BASE}/acct-2/entity", types=[CLIENT_CREATE])
    fake_fic.failures["create"] = TransientNetworkError("upstream unavailable")

    report = reconciler.reconcile_account(account)

    assert report.misrouted_recreated == 0
    assert report.errored == 1
    assert report.items[0].action == "misrouted_recreate_failed"
    assert CLIENT_CREATE in report.errors[0]
    assert fake_fic.subscriptions["1001"] == []


def test_misrouted_recreate_proceeds_when_local_delete_fails(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R9", sink=f"{BASE}/acct-2/entity", types=[CLIENT_CREATE])
    fake_db.tables["fic_subscriptions"] = [
        {
            "id": "local-9",
            "fic_account_id": "acct-1",
            "fic_subscription_id": "R9",
            "event_group": "entity",
            "event_types": [CLIENT_CREATE],
            "is_active": True,
        }
    ]
    fake_db.failures[("fic_subscriptions", "delete")] = Exception("connection reset")

    report = reconciler.reconcile_account(account)

    assert [call[0] for call in fake_fic.calls] == ["list", "delete", "create"]
    assert report.misrouted_recreated == 1
    assert any("local delete" in error for error in report.errors)
    rows = _local_rows(fake_db)
    assert rows[report.items[0].new_remote_id]["is_active"] is True
    assert rows["R9"]["is_active"] is False
    assert report.deactivated_missing == 1


def test_dry_run_reports_without_writing(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/entity", types=[CLIENT_CREATE])
    fake_db.tables["fic_subscriptions"] = [
        {"id": "local-2", "fic_account_id": "acct-1", "fic_subscription_id": "GONE", "event_group": "entity", "is_active": True}
    ]

    report = reconciler.reconcile_account(account, dry_run=True)

    assert report.newly_discovered == 1
    assert report.deactivated_missing == 1
    assert not any(op in {"upsert", "update", "insert", "delete"} for _, op, _ in fake_db.operations)
    assert fake_db.rows("fic_subscriptions")[0]["is_active"] is True


def test_local_rows_missing_remotely_are_deactivated(fake_db, fake_fic, account):
    fake_db.tables["fic_subscriptions"] = [
        {"id": "local-2", "fic_account_id": "acct-1", "fic_subscription_id": "GONE", "event_group": "entity", "is_active": True}
    ]

    report = reconciler.reconcile_account(account)

    assert report.deactivated_missing == 1
    assert fake_db.rows("fic_subscriptions")[0]["is_active"] is False


def test_list_failure_for_one_account_does_not_stop_others(fake_db, fake_fic, monkeypatch, account_factory):
    fake_db.tables["fic_accounts"] = [account_factory("acct-1", "1001"), account_factory("acct-2", "2002")]
    fake_fic.add_subscription("2002", id="R2", sink=f"{BASE}/acct-2/entity", types=[CLIENT_CREATE])
    real_list = fake_fic.list_subscriptions

    def _flaky_list(credentials, **kwargs):
        if str(credentials.company_id) == "1001":
            raise TransientNetworkError("timeout")
        return real_list(credentials, **kwargs)

    monkeypatch.setattr(reconciler, "list_remote_subscriptions", _flaky_list)

    response = reconciler.run_reconciliation(dry_run=False)

    by_account = {report.account_id: report for report in response.accounts}
    assert by_account["acct-1"].errored == 1
    assert by_account["acct-2"].newly_discovered == 1
    assert "R2" in _local_rows(fake_db)


def test_authentication_failure_flags_account(fake_db, fake_fic, account):
    fake_fic.failures["list"] = AuthenticationError("invalid token")

    report = reconciler.reconcile_account(account)

    assert report.errored == 1
    assert fake_db.rows("fic_accounts")[0]["status"] == "needs_refresh"


def test_concurrent_pass_for_same_account_is_refused(fake_db, fake_fic, account):
    lock = reconciler._account_lock("acct-1")
    lock.acquire()
    try:
        report = reconciler.reconcile_account(account)
    finally:
        lock.release()

    assert report.skipped is True
    assert report.errored == 1
    assert "already running" in report.errors[0]
    assert fake_fic.calls == []


def test_unknown_account_is_reported(fake_db, fake_fic):
    response = reconciler.run_reconciliation(account_id="missing", dry_run=True)
    assert response.accounts[0].skipped is True
    assert response.accounts[0].errors == ["missing: account not found"]


def test_diagnose_reports_three_way_view(fake_db, fake_fic, account):
    fake_fic.add_subscription("1001", id="R1", sink=f"{BASE}/acct-1/entity", types=[INVOICE_CREATE])
    fake_fic.add_subscription("1001", id="R2", sink=f"{BASE}/acct-2/entity", types=[CLIENT_CREATE])
    fake_db.tables["fic_subscriptions"] = [
        {"id": "local-1", "fic_account_id": "acct-1", "fic_subscription_id": "R1", "event_group": "entity", "is_active": True, "verified": True},
        {"id": "local-3", "fic_account_id": "acct-1", "fic_subscription_id": "R3", "event_group": "entity", "is_active": True},
    ]

    diagnosis = reconciler.diagnose_account(account)

    assert diagnosis.remote_count == 2
    assert diagnosis.local_count == 2
    assert diagnosis.local_only == ["R3"]
    first, second = diagnosis.subscriptions
    assert first.group_discrepancy is True
    assert first.local_group == "entity"
    assert first.effective_group == "issued_documents"
    assert second.misrouted is True
    assert second.local_subscription_id is None
    assert [call[0] for call in fake_fic.calls] == ["list"]
