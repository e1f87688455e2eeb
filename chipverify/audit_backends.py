"""
Write-once mirrors for the scan audit trail.

The registry table is the system of record. A mirror keeps a second,
tamper-evident copy that even the service role cannot rewrite.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from .config import Settings
from .models import ScanEvent
from .util import canonicalize


class ScanEventMirror:
    def write_event(self, event: ScanEvent) -> None:
        raise NotImplementedError


class S3ObjectLockMirror(ScanEventMirror):
    """
    One object per scan event in a bucket with S3 Object Lock enabled,
    written in COMPLIANCE mode so it cannot be deleted before retention ends.
    See https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """

    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF", client=None):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = int(retention_days)
        self.legal_hold = legal_hold
        self._s3 = client

    @property
    def s3(self):
        if self._s3 is None:
            try:
                import boto3
            except ImportError as e:
                raise RuntimeError("S3 mirroring needs boto3: pip install '.[aws]'") from e
            self._s3 = boto3.client("s3")
        return self._s3

    def object_key(self, event: ScanEvent) -> str:
        # <prefix><day>/<timestamp>-<state>-<id>.json, so a day lists in order
        day = event.created_at[:10]
        return f"{self.prefix}{day}/{event.created_at}-{event.state.value}-{event.id}.json"

    def retain_until(self) -> datetime:
        return datetime.now(timezone.utc) + timedelta(days=self.retention_days)

    def write_event(self, event: ScanEvent) -> None:
        self.s3.put_object(
            Bucket=self.bucket,
            Key=self.object_key(event),
            Body=canonicalize(event.model_dump(mode="json")),
            ContentType="application/json",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=self.retain_until(),
            ObjectLockLegalHoldStatus=self.legal_hold,
        )


def get_audit_mirror(settings: Settings) -> Optional[ScanEventMirror]:
    """Mirror selected by AUDIT_MIRROR; None when scans live only in the registry."""
    if settings.audit_mirror != "s3_object_lock":
        return None
    return S3ObjectLockMirror(
        bucket=settings.s3_bucket,
        prefix=settings.s3_prefix,
        retention_days=settings.s3_retention_days,
        legal_hold=settings.s3_legal_hold,
    )
