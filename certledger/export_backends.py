from datetime import datetime, timedelta, timezone
from pathlib import Path

from . import config


class ExportBackend:
    def put(self, name: str, data: bytes) -> str:
        """Store one package and return where it went."""
        raise NotImplementedError


class LocalDirectoryBackend(ExportBackend):
    """Writes packages to a local directory. Refuses to overwrite."""

    def __init__(self, directory: str):
        self.directory = Path(directory)

    def put(self, name: str, data: bytes) -> str:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / name
        # "xb": an existing package is never replaced.
        with open(path, "xb") as f:
            f.write(data)
        return str(path)


class S3ObjectLockBackend(ExportBackend):
    """Writes each package as an immutable object to an S3 bucket with Object Lock.
    Requires bucket with Object Lock enabled.
    Docs: https://docs.aws.amazon.com/AmazonS3/latest/userguide/object-lock.html
    """
    def __init__(self, bucket: str, prefix: str, retention_days: int, legal_hold: str = "OFF"):
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + "/"
        self.retention_days = retention_days
        self.legal_hold = legal_hold

    def put(self, name: str, data: bytes) -> str:
        try:
            import boto3
        except ImportError as e:
            raise RuntimeError("boto3 required for S3 Object Lock export. Install certledger[s3]") from e

        s3 = boto3.client("s3")
        key = f"{self.prefix}{name}"
        retain_until = datetime.now(timezone.utc) + timedelta(days=int(self.retention_days))
        s3.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType="application/zip",
            ObjectLockMode="COMPLIANCE",
            ObjectLockRetainUntilDate=retain_until,
            ObjectLockLegalHoldStatus=self.legal_hold
        )
        return f"s3://{self.bucket}/{key}"


def get_export_backend() -> ExportBackend:
    if config.AUDIT_EXPORT_BACKEND == "s3_object_lock":
        if not config.S3_BUCKET:
            raise ValueError("S3_BUCKET required for s3_object_lock export backend")
        return S3ObjectLockBackend(
            bucket=config.S3_BUCKET,
            prefix=config.S3_PREFIX,
            retention_days=config.S3_RETENTION_DAYS,
            legal_hold=config.S3_LEGAL_HOLD,
        )
    return LocalDirectoryBackend(config.AUDIT_EXPORT_DIR)
