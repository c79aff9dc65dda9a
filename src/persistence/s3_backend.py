from __future__ import annotations

from typing import List, Optional

import boto3
from botocore.exceptions import ClientError
from cryptography.fernet import Fernet, InvalidToken

from common.config import Settings

from .errors import DeserializationError


DEFAULT_KEY_PREFIX = "satspay/"


def _to_fernet(key: str | bytes) -> Fernet:
    """Construct a Fernet instance from a user-provided key.

    The key must be a URL-safe base64-encoded 32-byte key (str or bytes),
    as returned by `cryptography.fernet.Fernet.generate_key()`.
    """
    if isinstance(key, str):
        key_bytes = key.encode("utf-8")
    else:
        key_bytes = key
    return Fernet(key_bytes)


class S3Backend:
    """
    Durable backend keeping one S3 object per key, encrypted at rest using Fernet.

    Layout
    - Durable key `k` lives at `s3://{bucket}/{prefix}{k}`.
    - `get()` returns None for a missing object.
    - `keys()` lists every object under the prefix (paginated).

    Configuration comes from `common.config.Settings` (`s3_bucket`, `s3_prefix`,
    `fernet_key`, `aws_region`) through `from_settings()` or `from_env()`.
    """

    def __init__(
        self,
        *,
        s3: Optional[object] = None,
        bucket: str,
        fernet_key: str | bytes,
        prefix: str = DEFAULT_KEY_PREFIX,
        region_name: Optional[str] = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self._s3 = s3 or boto3.client("s3", region_name=region_name)
        self._bucket = bucket
        self._prefix = prefix
        self._fernet = _to_fernet(fernet_key)

    # -------- Construction helpers --------
    @classmethod
    def from_settings(cls, settings: Settings) -> "S3Backend":
        settings.require_s3()
        return cls(
            bucket=settings.s3_bucket,
            fernet_key=settings.fernet_key,
            prefix=settings.s3_prefix,
            region_name=settings.aws_region,
        )

    @classmethod
    def from_env(cls) -> "S3Backend":
        return cls.from_settings(Settings.from_env())

    def _object_key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    # -------- Backend contract --------
    def get(self, key: str) -> Optional[str]:
        """Read and decrypt one record.

        Raises:
        - DeserializationError if the object cannot be decrypted.
        - botocore.exceptions.ClientError for S3 issues other than a missing object.
        """
        try:
            resp = self._s3.get_object(Bucket=self._bucket, Key=self._object_key(key))
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code")
            if code in ("NoSuchKey", "404"):
                return None
            raise

        body = resp["Body"].read()
        try:
            plaintext = self._fernet.decrypt(body)
        except InvalidToken as ex:
            raise DeserializationError(f"Failed to decrypt record {key!r}: invalid Fernet token") from ex
        return plaintext.decode("utf-8")

    def set(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("S3Backend stores strings only")
        ciphertext = self._fernet.encrypt(value.encode("utf-8"))
        self._s3.put_object(
            Bucket=self._bucket,
            Key=self._object_key(key),
            Body=ciphertext,
            ContentType="application/octet-stream",
        )

    def remove(self, key: str) -> None:
        self._s3.delete_object(Bucket=self._bucket, Key=self._object_key(key))

    def keys(self) -> List[str]:
        paginator = self._s3.get_paginator("list_objects_v2")
        out: List[str] = []
        for page in paginator.paginate(Bucket=self._bucket, Prefix=self._prefix):
            for obj in page.get("Contents", []) or []:
                name = obj.get("Key", "")
                if name.startswith(self._prefix):
                    out.append(name[len(self._prefix):])
        return out


__all__ = ["S3Backend"]
