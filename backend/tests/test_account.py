"""Account row helpers and the forward-only history cursor."""
from datetime import datetime

from mailmirror.account import (
    advance_history_id,
    alias_emails,
    get_install_time,
    my_aliases,
    record_install_time,
    save_account,
)
from mailmirror.models import Account
from mailmirror.remote import Alias, Profile


def test_advance_history_id_only_moves_forward():
    account = Account(email="me@example.com", history_id="100")
    assert advance_history_id(account, "99") is False
    assert advance_history_id(account, "100") is False
    assert advance_history_id(account, None) is False
    assert advance_history_id(account, "not-a-number") is False
    assert account.history_id == "100"
    # Numeric, not lexicographic.
    assert advance_history_id(account, "1000") is True
    assert account.history_id == "1000"


def test_advance_history_id_from_empty():
    account = Account(email="me@example.com")
    assert advance_history_id(account, "5") is True
    assert account.history_id == "5"


def test_aliases_include_primary_and_treat_as_alias():
    aliases = [
        Alias("Me.Name@gmail.com", is_primary=True),
        Alias("work@example.com", treat_as_alias=True),
        Alias("other@example.com"),
    ]
    assert alias_emails(aliases) == ["mename@gmail.com", "work@example.com"]


def test_save_account_keeps_cursor(store):
    account = save_account(store, Profile("me@example.com", "10"), [Alias("me@example.com", is_primary=True)])
    account.history_id = "10"
    store.commit()
    account = save_account(store, Profile("me@example.com", "20"), [Alias("alt@example.com", treat_as_alias=True)])
    store.commit()
    assert store.count(Account) == 1
    assert account.history_id == "10"
    assert my_aliases(account) == {"me@example.com", "alt@example.com"}
    assert my_aliases(None) == set()


def test_install_time_is_recorded_once(store):
    first = datetime(2026, 1, 1, 9, 30)
    assert record_install_time(store, first) == first
    assert record_install_time(store, datetime(2026, 6, 1)) == first
    assert get_install_time(store) == first
