"""Account row helpers: profile/alias persistence and the forward-only history cursor."""
import logging
from datetime import datetime
from typing import Optional, List

from .identity import normalize_email
from .models import Account
from .remote import Alias, Profile
from .store import Store

logger = logging.getLogger(__name__)

INSTALL_TIME_KEY = "install_time"


def alias_emails(aliases: List[Alias]) -> list[str]:
    """Send-as entries that count as the account's own addresses."""
    return sorted({normalize_email(a.email) for a in aliases if a.treat_as_alias or a.is_primary})


def my_aliases(account: Optional[Account]) -> set[str]:
    if account is None:
        return set()
    out = {normalize_email(a) for a in (account.aliases or [])}
    if account.email:
        out.add(normalize_email(account.email))
    return out


def save_account(store: Store, profile: Profile, aliases: List[Alias]) -> Account:
    """Create or update the account row. Never touches the cursor."""
    account = store.get_account()
    if account is None:
        account = Account(email=profile.email, aliases=alias_emails(aliases))
        store.add(account)
        store.flush()
    else:
        account.email = profile.email
        account.aliases = alias_emails(aliases)
    return account


def _as_int(history_id: Optional[str]) -> Optional[int]:
    try:
        return int(history_id) if history_id is not None else None
    except (TypeError, ValueError):
        return None


def advance_history_id(account: Account, new_history_id: Optional[str]) -> bool:
    """
    Move the cursor to new_history_id if it is newer. Returns True if it moved.
    Cursor values are numeric strings; a smaller value is ignored.
    """
    new = _as_int(new_history_id)
    if new is None:
        return False
    current = _as_int(account.history_id)
    if current is not None and new <= current:
        if new < current:
            logger.warning(f"Refusing to move history cursor backwards ({account.history_id} -> {new_history_id})")
        return False
    account.history_id = str(new)
    return True


def get_install_time(store: Store) -> Optional[datetime]:
    return store.get_datetime(INSTALL_TIME_KEY)


def record_install_time(store: Store, when: Optional[datetime] = None) -> datetime:
    """Set the install timestamp once; later calls keep the first value."""
    existing = get_install_time(store)
    if existing is not None:
        return existing
    when = when or datetime.utcnow()
    store.set_datetime(INSTALL_TIME_KEY, when)
    return when
