from __future__ import annotations

import importlib
import threading

import pytest
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet

from state.models import PackRecord, PackTableSnapshot
from state.registry import PackNameConflictError, PackRegistry
from state.s3_store import OptimisticLockError, S3PackTable


KEY = Fernet.generate_key()


class _FakeBody:
    def __init__(self, data: bytes) -> None:
        self._data = data

    def read(self) -> bytes:
        return self._data


class _FakeS3:
    def __init__(self) -> None:
        self._store = {}  # (bucket, key) -> {Body: bytes, ETag: str}
        self._version = 0
        self.after_read = None  # runs once, after the next get_object has taken its copy

    def _etag(self) -> str:
        self._version += 1
        return f'"fake-{self._version}"'

    def put_object(self, *, Bucket: str, Key: str, Body: bytes, ContentType: str, IfNoneMatch=None):
        if IfNoneMatch == "*" and (Bucket, Key) in self._store:
            raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "PutObject")
        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": Body, "ETag": etag}
        return {"ETag": etag}

    def get_object(self, *, Bucket: str, Key: str):
        item = self._store.get((Bucket, Key))
        if self.after_read is not None:
            hook, self.after_read = self.after_read, None
            hook()
        if not item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "GetObject")
        return {"Body": _FakeBody(item["Body"]), "ETag": item["ETag"]}

    def copy_object(self, *, Bucket: str, Key: str, CopySource, IfMatch=None, MetadataDirective=None):
        dest_item = self._store.get((Bucket, Key))
        if IfMatch is not None and (not dest_item or dest_item.get("ETag") != IfMatch):
            raise ClientError({"Error": {"Code": "PreconditionFailed"}}, "CopyObject")
        src_item = self._store.get((CopySource["Bucket"], CopySource["Key"]))
        if not src_item:
            raise ClientError({"Error": {"Code": "NoSuchKey"}}, "CopyObject")
        etag = self._etag()
        self._store[(Bucket, Key)] = {"Body": src_item["Body"], "ETag": etag}
        return {"ETag": etag}

    def delete_object(self, *, Bucket: str, Key: str):
        self._store.pop((Bucket, Key), None)
        return {}

    def keys(self):
        return [k for (_b, k) in self._store]


def _table(s3: _FakeS3) -> S3PackTable:
    return S3PackTable(s3=s3, bucket="b", key="packs.json", fernet_key=KEY)


def test_read_missing_returns_empty_snapshot():
    snapshot, etag = _table(_FakeS3()).read()
    assert etag is None
    assert snapshot.records == []


def test_write_read_roundtrip_is_encrypted():
    s3 = _FakeS3()
    table = _table(s3)
    snap = PackTableSnapshot(records=[PackRecord(owner_id=1, display_name="A", generated_id="a_by_b")])

    etag = table.write(snap)
    stored = s3.get_object(Bucket="b", Key="packs.json")["Body"].read()
    assert b"a_by_b" not in stored

    got, read_etag = table.read()
    assert read_etag == etag
    assert got == snap


def test_read_raises_value_error_on_bad_token():
    s3 = _FakeS3()
    s3.put_object(Bucket="b", Key="packs.json", Body=b"garbage", ContentType="application/octet-stream")
    with pytest.raises(ValueError):
        _table(s3).read()


def test_conditional_write_conflict_raises():
    s3 = _FakeS3()
    table = _table(s3)
    etag1 = table.write(PackTableSnapshot.empty())
    table.write(PackTableSnapshot.empty(), if_match=etag1)

    with pytest.raises(OptimisticLockError):
        table.write(PackTableSnapshot.empty(), if_match=etag1)
    # Temporary objects are cleaned up either way
    assert s3.keys() == ["packs.json"]


def test_insert_select_delete_through_registry():
    registry = PackRegistry(_table(_FakeS3()), bot_username="b")
    registry.register_if_absent(1, "one")
    registry.register_if_absent(1, "two")
    registry.register_if_absent(2, "one")

    with pytest.raises(PackNameConflictError):
        registry.register_if_absent(1, "one")
    assert registry.list_packs(1) == ["one_by_b", "two_by_b"]

    registry.forget(1, "one_by_b")
    registry.forget(1, "one_by_b")
    assert registry.list_packs(1) == ["two_by_b"]
    assert registry.list_packs(2) == ["one_by_b"]


def test_other_writers_rows_are_seen_and_deleted():
    s3 = _FakeS3()
    a = _table(s3)
    b = _table(s3)

    assert b.select(1) == []
    assert a.insert(PackRecord(owner_id=1, display_name="y", generated_id="y_by_b"))

    # b never trusts an earlier read: it sees a's row and can remove it
    assert [r.generated_id for r in b.select(1)] == ["y_by_b"]
    assert b.delete(1, "y_by_b") is True
    assert _table(s3).select(1) == []

    # ... and a repeated insert of a's row is a genuine duplicate
    assert a.insert(PackRecord(owner_id=1, display_name="y", generated_id="y_by_b"))
    assert b.insert(PackRecord(owner_id=1, display_name="y", generated_id="y_by_b")) is False


def test_concurrent_write_is_replayed_on_fresh_read():
    s3 = _FakeS3()
    a = _table(s3)
    b = _table(s3)
    assert a.insert(PackRecord(owner_id=1, display_name="x", generated_id="x_by_b"))

    # a writes between b's read and b's conditional write
    s3.after_read = lambda: a.insert(PackRecord(owner_id=1, display_name="y", generated_id="y_by_b"))
    assert b.insert(PackRecord(owner_id=1, display_name="z", generated_id="z_by_b"))

    assert [r.generated_id for r in _table(s3).select(1)] == ["x_by_b", "y_by_b", "z_by_b"]


def test_racing_first_writes_do_not_clobber_each_other():
    s3 = _FakeS3()
    a = _table(s3)
    b = _table(s3)

    # Both see a missing object; a creates it first, b's create-only write must fail and retry
    s3.after_read = lambda: a.insert(PackRecord(owner_id=1, display_name="x", generated_id="x_by_b"))
    assert b.insert(PackRecord(owner_id=2, display_name="x", generated_id="x_by_b"))

    fresh = _table(s3)
    assert [r.owner_id for r in fresh.select(1) + fresh.select(2)] == [1, 2]


def test_delete_of_missing_row_does_not_write():
    s3 = _FakeS3()
    table = _table(s3)
    assert table.insert(PackRecord(owner_id=1, display_name="x", generated_id="x_by_b"))
    etag = s3.get_object(Bucket="b", Key="packs.json")["ETag"]

    assert table.delete(1, "nope_by_b") is False
    assert s3.get_object(Bucket="b", Key="packs.json")["ETag"] == etag


def test_slow_s3_read_does_not_block_other_registry_calls():
    s3 = _FakeS3()
    registry = PackRegistry(_table(s3), bot_username="b")
    registry.register_if_absent(2, "two")

    in_read = threading.Event()
    release = threading.Event()

    def stall() -> None:
        in_read.set()
        release.wait(5)

    s3.after_read = stall
    slow = threading.Thread(target=registry.list_packs, args=(1,))
    slow.start()
    assert in_read.wait(5)

    other = []
    fast = threading.Thread(target=lambda: other.append(registry.list_packs(2)))
    fast.start()
    fast.join(2)
    finished = not fast.is_alive()

    release.set()
    slow.join(5)
    fast.join(5)
    assert finished
    assert other == [["two_by_b"]]


def test_from_env_missing_vars_raises(monkeypatch):
    for name in ("STATE_BUCKET", "STATE_KEY", "FERNET_KEY"):
        monkeypatch.delenv(name, raising=False)

    mod = importlib.import_module("state.s3_store")
    with pytest.raises(RuntimeError):
        mod.S3PackTable.from_env()
