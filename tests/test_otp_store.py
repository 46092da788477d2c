import json
from unittest.mock import MagicMock, patch

import pytest
import redis

from utils.otp_store import (
    InMemoryCodeStore,
    Purpose,
    RedisCodeStore,
    VerificationEntry,
    VerifyOutcome,
    build_code_store,
    secrets_equal,
)


def _entry(identity="a@b.com", code="482913", issued_at=1000.0, ttl=600, purpose=Purpose.EMAIL_VERIFICATION):
    return VerificationEntry(
        identity_key=identity,
        purpose=purpose,
        code=code,
        issued_at=issued_at,
        expires_at=issued_at + ttl,
    )


def test_secrets_equal():
    assert secrets_equal("482913", "482913")
    assert not secrets_equal("482913", "482914")
    assert not secrets_equal("482913", "48291")


class TestInMemoryCodeStore:
    def test_put_replaces_whole_entry(self):
        store = InMemoryCodeStore()
        store.put(_entry(code="111111"))
        store.put(_entry(code="222222", issued_at=2000.0))
        stored = store.get(Purpose.EMAIL_VERIFICATION, "a@b.com")
        assert stored == _entry(code="222222", issued_at=2000.0)
        assert len(store) == 1

    def test_take_if_valid_outcomes(self):
        store = InMemoryCodeStore()
        assert store.take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "482913", 1001.0) is VerifyOutcome.NOT_FOUND

        store.put(_entry())
        assert store.take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "000000", 1001.0) is VerifyOutcome.MISMATCH
        assert store.take_if_valid(Purpose.PASSWORD_RESET, "a@b.com", "482913", 1001.0) is VerifyOutcome.NOT_FOUND
        assert store.take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "482913", 1002.0) is VerifyOutcome.MATCH
        assert len(store) == 0

    def test_expired_entry_is_deleted_on_check(self):
        store = InMemoryCodeStore()
        store.put(_entry())
        assert store.take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "000000", 1601.0) is VerifyOutcome.EXPIRED
        assert store.get(Purpose.EMAIL_VERIFICATION, "a@b.com") is None

    def test_sweep(self):
        store = InMemoryCodeStore()
        store.put(_entry(identity="old@b.com", issued_at=0.0))
        store.put(_entry(identity="new@b.com", issued_at=1000.0))
        store.put(_entry(identity="old@b.com", issued_at=0.0, purpose=Purpose.PASSWORD_RESET))
        assert store.sweep(700.0) == 2
        assert len(store) == 1
        assert store.sweep(700.0) == 0


class TestRedisCodeStore:
    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def pipe(self, client):
        pipe = MagicMock()
        client.pipeline.return_value.__enter__.return_value = pipe
        return pipe

    def _stored(self, entry):
        return json.dumps({
            "identity_key": entry.identity_key,
            "purpose": entry.purpose.value,
            "code": entry.code,
            "issued_at": entry.issued_at,
            "expires_at": entry.expires_at,
        })

    def test_put_writes_json_with_ttl(self, client):
        RedisCodeStore(client).put(_entry())
        key, raw = client.set.call_args.args
        assert key == "otp:email_verification:a@b.com"
        assert json.loads(raw)["code"] == "482913"
        assert json.loads(raw)["purpose"] == "email_verification"
        assert client.set.call_args.kwargs == {"ex": 600}

    def test_missing_key_is_not_found(self, client, pipe):
        pipe.get.return_value = None
        outcome = RedisCodeStore(client).take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "482913", 1001.0)
        assert outcome is VerifyOutcome.NOT_FOUND
        pipe.delete.assert_not_called()

    def test_mismatch_leaves_key(self, client, pipe):
        pipe.get.return_value = self._stored(_entry())
        outcome = RedisCodeStore(client).take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "000000", 1001.0)
        assert outcome is VerifyOutcome.MISMATCH
        pipe.delete.assert_not_called()

    def test_match_deletes_in_transaction(self, client, pipe):
        pipe.get.return_value = self._stored(_entry())
        outcome = RedisCodeStore(client).take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "482913", 1001.0)
        assert outcome is VerifyOutcome.MATCH
        pipe.watch.assert_called_with("otp:email_verification:a@b.com")
        pipe.multi.assert_called_once()
        pipe.delete.assert_called_once_with("otp:email_verification:a@b.com")
        pipe.execute.assert_called_once()

    def test_expired_value_is_deleted(self, client, pipe):
        pipe.get.return_value = self._stored(_entry())
        outcome = RedisCodeStore(client).take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "482913", 1601.0)
        assert outcome is VerifyOutcome.EXPIRED
        pipe.delete.assert_called_once()

    def test_concurrent_consume_retries_and_reports_not_found(self, client, pipe):
        pipe.get.side_effect = [self._stored(_entry()), None]
        pipe.execute.side_effect = redis.WatchError()
        outcome = RedisCodeStore(client).take_if_valid(Purpose.EMAIL_VERIFICATION, "a@b.com", "482913", 1001.0)
        assert outcome is VerifyOutcome.NOT_FOUND
        assert pipe.watch.call_count == 2

    def test_sweep_is_left_to_redis(self, client):
        assert RedisCodeStore(client).sweep(10_000.0) == 0


def test_build_code_store_selects_backend():
    assert isinstance(build_code_store(None), InMemoryCodeStore)
    with patch("utils.otp_store.redis.Redis.from_url") as from_url:
        store = build_code_store("redis://localhost:6379/0")
    assert isinstance(store, RedisCodeStore)
    from_url.assert_called_once_with("redis://localhost:6379/0", decode_responses=True)
