from __future__ import annotations

import importlib

import pytest
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet

from persistence.errors import DeserializationError
from persistence.manager import PersistenceManager
from persistence.s3_backend import S3Backend


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakePaginator:
    def __init__(self, s3: "_FakeS3", page_size: int = 2) -> None:
        self._s3 = s3
        self._page_size = page_size

    def paginate(self, *, Bucket: str, Prefix: str = ""):
        names = sorted(k for (b, k) in self._s3._store if b == Bucket and k.startswith(Prefix))
        for i in range(0, len(names), self._page_size):
            yield {"Contents": [{"Key": n} for n in names[i : i + self._page_size]]}
        if not names:
            yield {}


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> bytes

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str):
        self._store[(Bucket, Key)] = Body
        return {"ETag": f'"fake-{len(Body)}"'}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if item is None:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item)}

    def delete_object(self, *, Bucket: str, Key: str):
        self._store.pop((Bucket, Key), None)
        return {}

    def get_paginator(self, name: str):
        assert name == "list_objects_v2"
        return _FakePaginator(self)


@pytest.fixture
def fernet_key() -> bytes:
    return Fernet.generate_key()


def test_get_missing_returns_none(fernet_key):
    backend = S3Backend(s3=_FakeS3(), bucket="b", fernet_key=fernet_key)
    assert backend.get("nope") is None


def test_set_encrypts_at_rest_and_roundtrips(fernet_key):
    s3 = _FakeS3()
    backend = S3Backend(s3=s3, bucket="b", fernet_key=fernet_key, prefix="app/")

    backend.set("satspay_balance", '{"btc":1}')
    stored = s3._store[("b", "app/satspay_balance")]
    assert b"{" not in stored
    assert backend.get("satspay_balance") == '{"btc":1}'


def test_keys_lists_prefix_across_pages(fernet_key):
    s3 = _FakeS3()
    backend = S3Backend(s3=s3, bucket="b", fernet_key=fernet_key, prefix="app/")
    for name in ("a", "b", "c"):
        backend.set(name, "v")
    s3.put_object(Bucket="b", Key="elsewhere/x", Body=b"", ContentType="text/plain")

    assert sorted(backend.keys()) == ["a", "b", "c"]

    backend.remove("b")
    assert sorted(backend.keys()) == ["a", "c"]


def test_get_raises_on_bad_token(fernet_key):
    s3 = _FakeS3()
    s3.put_object(Bucket="b", Key="satspay/k", Body=b"garbage", ContentType="application/octet-stream")

    backend = S3Backend(s3=s3, bucket="b", fernet_key=fernet_key)
    with pytest.raises(DeserializationError):
        backend.get("k")


def test_other_client_errors_propagate(fernet_key):
    class _DeniedS3(_FakeS3):
        def get_object(self, *, Bucket: str, Key: str):
            raise ClientError({"Error": {"Code": "AccessDenied"}}, "GetObject")

    backend = S3Backend(s3=_DeniedS3(), bucket="b", fernet_key=fernet_key)
    with pytest.raises(ClientError):
        backend.get("k")


def test_from_env_missing_vars_raises(monkeypatch):
    for name in ("SATSPAY_BACKEND", "SATSPAY_S3_BUCKET", "SATSPAY_FERNET_KEY"):
        monkeypatch.delenv(name, raising=False)

    mod = importlib.import_module("persistence.s3_backend")
    with pytest.raises(RuntimeError) as exc:
        mod.S3Backend.from_env()
    assert "SATSPAY_S3_BUCKET" in str(exc.value)
    assert "SATSPAY_FERNET_KEY" in str(exc.value)


def test_from_env_reads_settings(monkeypatch, fernet_key):
    s3 = _FakeS3()
    monkeypatch.setattr("persistence.s3_backend.boto3.client", lambda *a, **kw: s3)
    monkeypatch.delenv("SATSPAY_BACKEND", raising=False)
    monkeypatch.setenv("SATSPAY_S3_BUCKET", "records")
    monkeypatch.setenv("SATSPAY_S3_PREFIX", "env/")
    monkeypatch.setenv("SATSPAY_FERNET_KEY", fernet_key.decode("ascii"))

    backend = S3Backend.from_env()
    backend.set("k", "v")
    assert ("records", "env/k") in s3._store


async def test_manager_over_s3_backend(fernet_key, sleeps):
    backend = S3Backend(s3=_FakeS3(), bucket="b", fernet_key=fernet_key)
    pm = PersistenceManager(backend, sleep=sleeps)

    assert await pm.save("transactions", [{"id": "tx1", "amount": 0.001}]) is True
    assert await pm.load("transactions") == [{"id": "tx1", "amount": 0.001}]
    assert "satspay_transactions" in backend.keys()
