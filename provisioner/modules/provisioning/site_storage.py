import boto3
from botocore.exceptions import ClientError
from pathlib import Path
from provisioner.config.settings import settings
import logging

logger = logging.getLogger(__name__)


class S3SiteStorage:
    """Stores generated tenant site files in the sites bucket."""

    def __init__(self):
        if not all([settings.aws_access_key_id, settings.aws_secret_access_key, settings.sites_bucket_name]):
            raise ValueError("AWS S3 credentials and sites bucket name must be configured")

        self.s3_client = boto3.client(
            's3',
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
            region_name=settings.aws_region
        )
        self.bucket_name = settings.sites_bucket_name

    def upload_file(self, file_content: bytes, key: str, content_type: str = "application/json") -> str:
        """Upload a site file and return its s3:// location"""
        try:
            self.s3_client.put_object(Bucket=self.bucket_name, Key=key, Body=file_content, ContentType=content_type)
        except ClientError as e:
            logger.error(f"Upload of site file {key} to bucket {self.bucket_name} failed: {str(e)}")
            raise
        return f"s3://{self.bucket_name}/{key}"


class LocalSiteStorage:
    """Writes generated site files under a local directory (development)."""

    def __init__(self, base_dir: str):
        self.base_dir = Path(base_dir)

    def upload_file(self, file_content: bytes, key: str, content_type: str = "application/json") -> str:
        target = self.base_dir / key
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(file_content)
        return str(target)


def get_site_storage():
    """S3 when a sites bucket is configured, local directory otherwise."""
    if settings.sites_bucket_name:
        return S3SiteStorage()
    return LocalSiteStorage(settings.sites_output_dir)
