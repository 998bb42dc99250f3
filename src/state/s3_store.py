from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple
from uuid import uuid4

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from .models import PackRecord, PackTableSnapshot


logger = logging.getLogger(__name__)

# Environment variable names for convenience configuration
ENV_BUCKET = "STATE_BUCKET"
ENV_KEY = "STATE_KEY"
ENV_FERNET_KEY = "FERNET_KEY"

DEFAULT_KEY = "packs.json"
MAX_WRITE_ATTEMPTS = 5


class OptimisticLockError(Exception):
    """Raised when an ETag precondition fails during a conditional write."""


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a urlsafe base64-encoded 32-byte key."""
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


def _dump_snapshot_json(snapshot: PackTableSnapshot) -> bytes:
    # Deterministic JSON: stable key order, no extra whitespace
    return json.dumps(snapshot.model_dump(), separators=(",", ":"), sort_keys=True).encode("utf-8")


def _load_snapshot_json(data: bytes) -> PackTableSnapshot:
    raw = json.loads(data.decode("utf-8"))
    return PackTableSnapshot.model_validate(raw)


@dataclass
class S3ObjectRef:
    bucket: str
    key: str


class S3PackTable:
    """
    Pack table stored as one Fernet-encrypted JSON object in S3.

    - Nothing is cached: every select reads the object, and every mutation
      reads it, applies the change and writes it back with a compare-and-swap
      on the ETag it read (If-Match for an existing object, If-None-Match
      for the first write). No in-process lock is held around S3 calls.
    - When another writer got there first (`OptimisticLockError`), the
      mutation is replayed on a fresh read, up to MAX_WRITE_ATTEMPTS times.
    - A no-op (inserting an existing row, deleting a missing one) is decided
      on the fresh read.

    Environment variables (optional, see `from_env`)
    - `STATE_BUCKET`: S3 bucket
    - `STATE_KEY`:    S3 key (default "packs.json")
    - `FERNET_KEY`:   urlsafe base64-encoded key for Fernet
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        key: str = DEFAULT_KEY,
        fernet_key: str | bytes,
        region_name: Optional[str] = None,
    ) -> None:
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._obj = S3ObjectRef(bucket=bucket, key=key)
        self._fernet = _to_fernet(fernet_key)

    # -------- Construction helpers --------
    @classmethod
    def from_env(cls) -> "S3PackTable":
        bucket = os.environ.get(ENV_BUCKET)
        key = os.environ.get(ENV_KEY) or DEFAULT_KEY
        fkey = os.environ.get(ENV_FERNET_KEY)
        if not bucket or not fkey:
            missing = [name for name, val in [(ENV_BUCKET, bucket), (ENV_FERNET_KEY, fkey)] if not val]
            raise RuntimeError(f"Missing required environment variables for S3 pack table: {', '.join(missing)}")
        return cls(bucket=bucket, key=key, fernet_key=fkey)

    # -------- PackTable --------
    def insert(self, record: PackRecord) -> bool:
        def apply(snapshot: PackTableSnapshot) -> Optional[PackTableSnapshot]:
            if any(r.key == record.key for r in snapshot.records):
                return None
            return PackTableSnapshot(records=[*snapshot.records, record])

        return self._mutate(apply)

    def select(self, owner_id: int) -> List[PackRecord]:
        snapshot, _etag = self.read()
        return [r for r in snapshot.records if r.owner_id == owner_id]

    def delete(self, owner_id: int, generated_id: str) -> bool:
        def apply(snapshot: PackTableSnapshot) -> Optional[PackTableSnapshot]:
            kept = [r for r in snapshot.records if r.key != (owner_id, generated_id)]
            if len(kept) == len(snapshot.records):
                return None
            return PackTableSnapshot(records=kept)

        return self._mutate(apply)

    # -------- Core operations --------
    def read(self) -> Tuple[PackTableSnapshot, Optional[str]]:
        """Read and decrypt the snapshot from S3.

        Returns: (snapshot, etag)
        - If the object does not exist, returns (PackTableSnapshot.empty(), None).
        Raises:
        - ValueError if decryption fails or content is invalid JSON.
        - botocore.exceptions.ClientError for other S3 issues.
        """
        try:
            resp = self._s3.get_object(Bucket=self._obj.bucket, Key=self._obj.key)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return (PackTableSnapshot.empty(), None)
            raise

        body = resp["Body"].read()
        etag = resp.get("ETag")
        try:
            decrypted = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise ValueError("Failed to decrypt pack table: invalid Fernet token") from ex

        try:
            snapshot = _load_snapshot_json(decrypted)
        except Exception as ex:
            raise ValueError("Failed to parse decrypted pack table JSON") from ex

        return (snapshot, etag)

    def write(
        self, snapshot: PackTableSnapshot, *, if_match: Optional[str] = None, create_only: bool = False
    ) -> str:
        """Encrypt and write the snapshot to S3; returns the new ETag.

        With `if_match`, the write lands only if the destination's current
        ETag equals `if_match`. With `create_only`, it lands only if the
        destination does not exist yet. Otherwise OptimisticLockError is raised.
        S3 PutObject has no If-Match, so the body goes to a temporary key and
        is then copied over the destination with an If-Match precondition.
        """
        ciphertext = self._fernet.encrypt(_dump_snapshot_json(snapshot))

        if if_match is None:
            extra = {"IfNoneMatch": "*"} if create_only else {}
            try:
                resp = self._s3.put_object(
                    Bucket=self._obj.bucket,
                    Key=self._obj.key,
                    Body=ciphertext,
                    ContentType="application/octet-stream",
                    **extra,
                )
            except ClientError as e:
                if _is_precondition_failure(e):
                    raise OptimisticLockError(f"s3://{self._obj.bucket}/{self._obj.key} was created concurrently") from e
                raise
            return str(resp.get("ETag"))

        temp_key = f"{self._obj.key}.tmp-{uuid4().hex}"
        self._s3.put_object(
            Bucket=self._obj.bucket,
            Key=temp_key,
            Body=ciphertext,
            ContentType="application/octet-stream",
        )
        try:
            resp = self._s3.copy_object(
                Bucket=self._obj.bucket,
                Key=self._obj.key,
                CopySource={"Bucket": self._obj.bucket, "Key": temp_key},
                IfMatch=if_match,
                MetadataDirective="COPY",
            )
        except ClientError as e:
            if _is_precondition_failure(e):
                raise OptimisticLockError(f"ETag mismatch for s3://{self._obj.bucket}/{self._obj.key}") from e
            raise
        finally:
            try:
                self._s3.delete_object(Bucket=self._obj.bucket, Key=temp_key)
            except ClientError:
                logger.warning("Failed to delete temporary object %s", temp_key)

        return str(resp.get("ETag"))

    # -------- Internal --------
    def _mutate(self, apply: Callable[[PackTableSnapshot], Optional[PackTableSnapshot]]) -> bool:
        """Apply `apply` to a fresh snapshot and persist it; False if it was a no-op."""
        for _ in range(MAX_WRITE_ATTEMPTS):
            snapshot, etag = self.read()
            updated = apply(snapshot)
            if updated is None:
                return False
            try:
                self.write(updated, if_match=etag, create_only=etag is None)
            except OptimisticLockError:
                logger.info("Pack table changed underneath us; retrying on a fresh read")
                continue
            return True
        raise OptimisticLockError(f"Gave up writing s3://{self._obj.bucket}/{self._obj.key} after retries")


def _is_precondition_failure(error: ClientError) -> bool:
    # 409 ConditionalRequestConflict: a competing conditional write is in progress
    code = error.response.get("Error", {}).get("Code")
    return code in ("PreconditionFailed", "412", "ConditionalRequestConflict", "409")


__all__ = ["OptimisticLockError", "S3PackTable"]
