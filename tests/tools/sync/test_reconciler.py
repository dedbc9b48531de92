from __future__ import annotations

from datetime import date

import pytest
from sqlalchemy.exc import OperationalError

from txnsync.adapters.db.facade import DB
from txnsync.adapters.db.models import Connection
from txnsync.errors import ReconcileError
from txnsync.models.transaction import Transaction
from txnsync.tools.sync.reconciler import (
    AccountContext,
    Reconciler,
    build_account_context,
    build_transaction_row,
    to_cents,
)
from txnsync.tools.sync.sync_loop import PageSet

# Helper functions


def create_test_transaction(
    transaction_id: str,
    *,
    amount: float = 12.5,
    name: str = "Whole Foods Grocery",
    account_id: str = "acc_chk",
    txn_date: str = "2024-01-15",
) -> Transaction:
    return {
        "transaction_id": transaction_id,
        "account_id": account_id,
        "amount": amount,
        "iso_currency_code": "USD",
        "date": txn_date,
        "name": name,
        "merchant_name": None,
        "pending": False,
        "category": ["Shops", "Groceries"],
        "personal_finance_category": None,
    }


ACCOUNTS = {
    "acc_chk": AccountContext(
        account_id="acc_chk", type="depository", subtype="checking", mask="1234"
    ),
    "acc_cc": AccountContext(
        account_id="acc_cc", type="credit", subtype="credit card", name="Sapphire"
    ),
}


def get_connection(db: DB) -> Connection:
    conn = db.get_connection("item_1")
    assert conn is not None
    return conn


def test_to_cents_rounds_half_away_from_zero() -> None:
    # assert
    assert to_cents(12.5) == 1250
    assert to_cents(-20.0) == -2000
    assert to_cents(0.015) == 2
    assert to_cents(19.99) == 1999


def test_account_label_falls_back_to_type_and_mask() -> None:
    # input
    accounts = build_account_context(
        [
            {
                "account_id": "a1",
                "name": None,
                "mask": "1234",
                "type": "depository",
                "subtype": "checking",
                "balances": {},
            },
            {
                "account_id": "a2",
                "name": None,
                "mask": None,
                "type": "credit",
                "subtype": None,
                "balances": {},
            },
            {
                "account_id": "a3",
                "name": "Everyday Savings",
                "mask": "9",
                "type": "depository",
                "subtype": "savings",
                "balances": {},
            },
        ]
    )

    # assert
    assert accounts["a1"].label == "Checking ****1234"
    assert accounts["a2"].label == "Credit Card"
    assert accounts["a3"].label == "Everyday Savings"


def test_build_transaction_row_snapshots_account_and_infers() -> None:
    # input
    txn = create_test_transaction("t1", amount=-20.0, name="Paycheck Co")

    # act
    row = build_transaction_row(
        txn,
        client_id="client_1",
        connection_id="item_1",
        institution="First Bank",
        account=ACCOUNTS["acc_chk"],
    )

    # assert
    assert row["external_id"] == "t1"
    assert row["amount_cents"] == -2000
    assert row["posted_at"] == date(2024, 1, 15)
    assert row["month_year"] == "2024-01"
    assert row["account_type"] == "depository"
    assert row["account_name"] == "Checking ****1234"
    assert row["account_mask"] == "1234"
    assert row["institution"] == "First Bank"
    assert row["flow_kind"] == "income"
    assert row["suggested_category"] == "income"
    assert "user_category" not in row


def test_apply_inserts_added_records(client_db: DB) -> None:
    # input
    page_set = PageSet(
        added=[create_test_transaction("t1"), create_test_transaction("t2")],
        next_cursor="c1",
    )

    # helper setup
    reconciler = Reconciler(client_db)

    # act
    outcome = reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=page_set,
        accounts=ACCOUNTS,
    )

    # assert
    assert outcome.inserted == 2
    assert outcome.failed == 0
    assert client_db.count_transactions("client_1") == 2


def test_replaying_a_page_set_leaves_store_unchanged(client_db: DB) -> None:
    # input
    page_set = PageSet(
        added=[create_test_transaction("t1")],
        modified=[create_test_transaction("t2", amount=30.0)],
        removed=[{"transaction_id": "t3"}],
        next_cursor="c1",
    )

    # helper setup
    reconciler = Reconciler(client_db)
    conn = get_connection(client_db)
    reconciler.apply(
        client_id="client_1", connection=conn, page_set=page_set, accounts=ACCOUNTS
    )
    before = {
        t.external_id: (t.amount_cents, t.updated_at, t.suggested_category)
        for t in client_db.list_transactions("client_1", limit=None)
    }

    # act
    outcome = reconciler.apply(
        client_id="client_1", connection=conn, page_set=page_set, accounts=ACCOUNTS
    )

    # assert
    after = {
        t.external_id: (t.amount_cents, t.updated_at, t.suggested_category)
        for t in client_db.list_transactions("client_1", limit=None)
    }
    assert after == before
    assert outcome.skipped_duplicate == 1
    assert outcome.unchanged == 1
    assert outcome.inserted == 0
    assert outcome.removed_missing == 1


def test_modified_preserves_review_fields(client_db: DB) -> None:
    # input
    reconciler = Reconciler(client_db)
    conn = get_connection(client_db)
    reconciler.apply(
        client_id="client_1",
        connection=conn,
        page_set=PageSet(added=[create_test_transaction("t1")]),
        accounts=ACCOUNTS,
    )
    client_db.review_transaction(
        "t1", client_id="client_1", user_category="business", notes="team lunch"
    )
    modified = create_test_transaction("t1", amount=14.0, name="Whole Foods Market")

    # act
    outcome = reconciler.apply(
        client_id="client_1",
        connection=conn,
        page_set=PageSet(modified=[modified]),
        accounts=ACCOUNTS,
    )

    # assert
    txn = client_db.get_transaction("t1")
    assert txn is not None
    assert outcome.updated == 1
    assert txn.amount_cents == 1400
    assert txn.name == "Whole Foods Market"
    assert txn.user_category == "business"
    assert txn.is_reviewed is True
    assert txn.notes == "team lunch"
    assert txn.effective_category == "business"


def test_modified_record_without_row_is_inserted(client_db: DB) -> None:
    # input
    page_set = PageSet(modified=[create_test_transaction("t9")])

    # helper setup
    reconciler = Reconciler(client_db)

    # act
    outcome = reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=page_set,
        accounts=ACCOUNTS,
    )

    # assert
    assert outcome.inserted == 1
    assert client_db.get_transaction("t9") is not None


def test_added_then_removed_in_same_page_set_ends_absent(client_db: DB) -> None:
    # input
    page_set = PageSet(
        added=[create_test_transaction("t1")],
        modified=[create_test_transaction("t1", amount=99.0)],
        removed=[{"transaction_id": "t1"}],
    )

    # helper setup
    reconciler = Reconciler(client_db)

    # act
    outcome = reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=page_set,
        accounts=ACCOUNTS,
    )

    # assert
    assert outcome.removed == 1
    assert client_db.get_transaction("t1") is None


def test_removed_only_deletes_rows_of_the_same_client(client_db: DB) -> None:
    # input
    client_db.add_client("client_2")
    client_db.add_connection(
        connection_id="item_2", client_id="client_2", access_token="access-prod-2"
    )
    reconciler = Reconciler(client_db)
    reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=PageSet(added=[create_test_transaction("t1")]),
        accounts=ACCOUNTS,
    )
    other = client_db.get_connection("item_2")
    assert other is not None

    # act
    outcome = reconciler.apply(
        client_id="client_2",
        connection=other,
        page_set=PageSet(removed=[{"transaction_id": "t1"}]),
        accounts={},
    )

    # assert
    assert outcome.removed == 0
    assert outcome.removed_missing == 1
    assert client_db.get_transaction("t1") is not None


def test_modified_from_another_client_is_a_record_failure(client_db: DB) -> None:
    # input
    client_db.add_client("client_2")
    client_db.add_connection(
        connection_id="item_2", client_id="client_2", access_token="access-prod-2"
    )
    reconciler = Reconciler(client_db)
    reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=PageSet(added=[create_test_transaction("t1")]),
        accounts=ACCOUNTS,
    )
    other = client_db.get_connection("item_2")
    assert other is not None

    # act
    outcome = reconciler.apply(
        client_id="client_2",
        connection=other,
        page_set=PageSet(modified=[create_test_transaction("t1", amount=99.0)]),
        accounts={},
    )

    # assert
    txn = client_db.get_transaction("t1")
    assert txn is not None
    assert outcome.updated == 0
    assert outcome.failed == 1
    assert outcome.failures[0].operation == "modified"
    assert (txn.client_id, txn.connection_id) == ("client_1", "item_1")
    assert txn.amount_cents == 1250


def test_modified_without_account_context_keeps_stored_account_type(
    client_db: DB,
) -> None:
    # input
    purchase = create_test_transaction(
        "t1", amount=45.0, name="Amazon Marketplace", account_id="acc_cc"
    )
    reconciler = Reconciler(client_db)
    reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=PageSet(added=[purchase]),
        accounts=ACCOUNTS,
    )
    before = client_db.get_transaction("t1")
    assert before is not None
    assert before.flow_kind == "expense"

    # act
    modified = create_test_transaction(
        "t1", amount=50.0, name="Amazon Marketplace", account_id="acc_cc"
    )
    outcome = reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=PageSet(modified=[modified]),
        accounts={},
    )

    # assert
    txn = client_db.get_transaction("t1")
    assert txn is not None
    assert outcome.updated == 1
    assert txn.amount_cents == 5000
    assert txn.account_type == "credit"
    assert txn.account_subtype == "credit card"
    assert txn.account_name == "Sapphire"
    assert txn.flow_kind == "expense"


def test_bad_record_is_counted_and_others_still_apply(client_db: DB) -> None:
    # input
    bad = create_test_transaction("t_bad", txn_date="not-a-date")
    page_set = PageSet(added=[bad, create_test_transaction("t_ok")])

    # helper setup
    reconciler = Reconciler(client_db)

    # act
    outcome = reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=page_set,
        accounts=ACCOUNTS,
    )

    # assert
    assert outcome.inserted == 1
    assert outcome.failed == 1
    assert outcome.failures[0].external_id == "t_bad"
    assert outcome.failures[0].operation == "added"
    assert client_db.get_transaction("t_ok") is not None


def test_unknown_account_uses_sign_only_inference(client_db: DB) -> None:
    # input
    page_set = PageSet(
        added=[create_test_transaction("t1", amount=40.0, account_id="acc_x")]
    )

    # helper setup
    reconciler = Reconciler(client_db)

    # act
    reconciler.apply(
        client_id="client_1",
        connection=get_connection(client_db),
        page_set=page_set,
        accounts={},
    )

    # assert
    txn = client_db.get_transaction("t1")
    assert txn is not None
    assert txn.account_type is None
    assert txn.flow_kind == "income"


class UnreachableDB(DB):
    """DB whose store is down."""

    def ping(self) -> None:
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))


def test_unreachable_store_raises_reconcile_error() -> None:
    # input
    db = UnreachableDB("sqlite:///:memory:")
    db.create_schema()
    db.add_client("client_1")
    conn = db.add_connection(
        connection_id="item_1", client_id="client_1", access_token="access-prod"
    )

    # helper setup
    reconciler = Reconciler(db)

    # act / assert
    with pytest.raises(ReconcileError):
        reconciler.apply(
            client_id="client_1",
            connection=conn,
            page_set=PageSet(added=[create_test_transaction("t1")]),
            accounts={},
        )
    assert db.count_transactions("client_1") == 0
