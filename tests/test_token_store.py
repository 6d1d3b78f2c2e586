from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select, update

from crmbot.core.errors import DecryptionError, StorageError
from crmbot.models.token import OAuthToken
from crmbot.schemas.token import TokenRecord
from crmbot.services.token_store import TokenStore, expires_within

_NOW = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _record(user_id: str = "12345", **overrides) -> TokenRecord:
    values = dict(
        user_id=user_id,
        access_token="1000.access",
        refresh_token="1000.refresh",
        expires_at=_NOW + timedelta(hours=1),
        client_id="1000.CLIENT",
        client_secret="s3cret",
    )
    values.update(overrides)
    return TokenRecord(**values)


def _compare(saved: TokenRecord, loaded: TokenRecord) -> None:
    for name in ("user_id", "access_token", "refresh_token", "expires_at", "client_id", "client_secret"):
        assert getattr(loaded, name) == getattr(saved, name), name


class TestSaveAndGet:
    def test_insert_round_trip(self, session_factory):
        record = _record()
        with session_factory() as db:
            assert TokenStore(db).save(record) == 1
            loaded = TokenStore(db).get("12345")
        _compare(record, loaded)
        assert loaded.created_at is not None
        assert loaded.expires_at.tzinfo is not None

    def test_update_on_conflict_round_trip(self, session_factory):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record())
            updated = _record(
                access_token="1000.access-2",
                refresh_token="1000.refresh-2",
                expires_at=_NOW + timedelta(hours=2),
                client_id="1000.OTHER",
                client_secret="other",
            )
            store.save(updated)
            _compare(updated, store.get("12345"))

    def test_same_key_keeps_one_row(self, session_factory):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record())
            first = store.get("12345")
            store.save(_record())
            second = store.get("12345")
            count = db.execute(select(func.count()).select_from(OAuthToken)).scalar_one()
        assert count == 1
        assert second.updated_at >= first.updated_at
        assert second.created_at == first.created_at

    def test_numeric_user_id_is_stored_as_text(self, session_factory):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record(user_id="-100200300"))
            assert store.get(-100200300) is not None

    def test_get_missing_returns_none(self, session_factory):
        with session_factory() as db:
            assert TokenStore(db).get("999") is None

    def test_secrets_are_encrypted_at_rest(self, session_factory):
        with session_factory() as db:
            TokenStore(db).save(_record())
            row = db.execute(select(OAuthToken)).scalar_one()
        assert row.access_token != "1000.access"
        assert row.refresh_token != "1000.refresh"
        assert row.client_secret != "s3cret"
        assert row.client_id == "1000.CLIENT"

    def test_empty_refresh_token_survives(self, session_factory):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record(refresh_token=""))
            assert store.get("12345").refresh_token == ""


class TestExpiry:
    def test_missing_record_counts_as_expired(self, session_factory):
        with session_factory() as db:
            assert TokenStore(db).is_expired("999") is True

    @pytest.mark.parametrize(
        "remaining, expired",
        [
            (timedelta(hours=1), False),
            (timedelta(minutes=5, seconds=1), False),
            (timedelta(minutes=5), True),
            (timedelta(minutes=4, seconds=59), True),
            (timedelta(minutes=-1), True),
        ],
    )
    def test_five_minute_margin(self, session_factory, remaining, expired):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record(expires_at=_NOW + remaining))
            assert store.is_expired("12345", now=_NOW) is expired

    def test_expires_within_treats_naive_as_utc(self):
        naive = (_NOW + timedelta(minutes=3)).replace(tzinfo=None)
        assert expires_within(naive, timedelta(minutes=5), now=_NOW) is True
        assert expires_within(None, timedelta(minutes=5), now=_NOW) is True

    def test_list_expirations_skips_rows_without_expiry(self, session_factory):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record(user_id="1"))
            store.save(_record(user_id="2", expires_at=None))
            rows = store.list_expirations()
        assert rows == [("1", _NOW + timedelta(hours=1))]


class TestStorageErrors:
    def test_get_without_schema_raises_storage_error(self, broken_session_factory):
        with broken_session_factory() as db:
            with pytest.raises(StorageError):
                TokenStore(db).get("1")

    def test_save_without_schema_raises_storage_error(self, broken_session_factory):
        with broken_session_factory() as db:
            with pytest.raises(StorageError):
                TokenStore(db).save(_record())

    def test_corrupt_secret_raises_decryption_error(self, session_factory):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record())
            db.execute(update(OAuthToken).values(access_token="zz"))
            db.commit()
            with pytest.raises(DecryptionError):
                store.get("12345")

    def test_secret_moved_to_another_column_does_not_decrypt(self, session_factory):
        with session_factory() as db:
            store = TokenStore(db)
            store.save(_record())
            row = db.execute(select(OAuthToken)).scalar_one()
            db.execute(update(OAuthToken).values(refresh_token=row.access_token))
            db.commit()
            with pytest.raises(StorageError):
                store.get("12345")

    def test_unsupported_dialect_raises_storage_error(self, session_factory, engine, monkeypatch):
        monkeypatch.setattr(engine.dialect, "name", "oracle")
        with session_factory() as db:
            with pytest.raises(StorageError):
                TokenStore(db).save(_record())
