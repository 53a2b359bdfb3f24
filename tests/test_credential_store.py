from pathlib import Path

import pytest

from chart_feed.core.errors import AuthenticationRequiredError
from chart_feed.state.store import SQLiteCredentialStore


def test_credential_store_roundtrip_and_clear(tmp_path: Path) -> None:
    store = SQLiteCredentialStore(tmp_path / "nested" / "credentials.sqlite")
    assert store.get_api_key() is None
    assert not store.is_authenticated()

    store.set_api_key("  first-key ")
    store.set_api_key("second-key")
    assert store.get_api_key() == "second-key"
    assert store.require_api_key() == "second-key"

    store.clear()
    assert store.get_api_key() is None
    with pytest.raises(AuthenticationRequiredError):
        store.require_api_key()


def test_credential_store_persists_across_instances(tmp_path: Path) -> None:
    db_path = tmp_path / "credentials.sqlite"
    SQLiteCredentialStore(db_path).set_api_key("persisted")

    assert SQLiteCredentialStore(db_path).get_api_key() == "persisted"


def test_blank_key_counts_as_missing(tmp_path: Path) -> None:
    store = SQLiteCredentialStore(tmp_path / "credentials.sqlite")
    store.set_api_key("   ")

    assert store.get_api_key() is None
