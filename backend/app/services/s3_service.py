# app/services/s3_service.py

from datetime import datetime

import boto3
from botocore.exceptions import ClientError
from typing import Optional, List, Dict, Any

from app.core.config import settings
from app.core.logger import logger


class S3Service:
    """
    Blob storage for source documents (the ``legal-training`` bucket by default).
    """

    def __init__(self):
        self._client = None
        self.bucket = settings.LEGAL_TRAINING_BUCKET

    @property
    def s3_client(self):
        if self._client is None:
            kwargs: Dict[str, Any] = {"region_name": settings.AWS_REGION}
            if settings.AWS_ACCESS_KEY_ID and settings.AWS_SECRET_ACCESS_KEY:
                kwargs["aws_access_key_id"] = settings.AWS_ACCESS_KEY_ID
                kwargs["aws_secret_access_key"] = settings.AWS_SECRET_ACCESS_KEY
            if settings.S3_ENDPOINT_URL:
                kwargs["endpoint_url"] = settings.S3_ENDPOINT_URL
            self._client = boto3.client("s3", **kwargs)
        return self._client

    def upload_bytes(
        self,
        s3_key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        bucket: Optional[str] = None,
    ) -> str:
        """
        Store *data* under *s3_key* and return the key.
        """
        try:
            self.s3_client.put_object(
                Bucket=bucket or self.bucket,
                Key=s3_key,
                Body=data,
                ContentType=content_type,
            )
            logger.info("Uploaded %d bytes to s3://%s/%s", len(data), bucket or self.bucket, s3_key)
            return s3_key

        except ClientError as e:
            logger.error("Failed to upload %s: %s", s3_key, e)
            raise

    def download_bytes(self, s3_key: str, bucket: Optional[str] = None) -> bytes:
        """
        Fetch the object body for *s3_key*.
        """
        try:
            obj = self.s3_client.get_object(Bucket=bucket or self.bucket, Key=s3_key)
            body = obj["Body"].read()
            logger.info("Downloaded s3://%s/%s (%d bytes)", bucket or self.bucket, s3_key, len(body))
            return body

        except ClientError as e:
            logger.error("Failed to download %s: %s", s3_key, e)
            raise

    def list_files(self, prefix: str = "", bucket: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """
        List stored objects under *prefix* (newest first, at most *limit*).
        """
        try:
            response = self.s3_client.list_objects_v2(
                Bucket=bucket or self.bucket,
                Prefix=prefix,
                MaxKeys=limit,
            )
        except ClientError as e:
            logger.error("Failed to list s3://%s/%s: %s", bucket or self.bucket, prefix, e)
            raise

        items = [
            {
                "file_path": obj["Key"],
                "size": obj.get("Size"),
                "last_modified": obj.get("LastModified"),
            }
            for obj in response.get("Contents", [])
            if not obj["Key"].endswith("/")
        ]
        items.sort(key=lambda item: item["last_modified"] or datetime.min, reverse=True)
        return items

    def generate_download_url(
        self,
        s3_key: str,
        bucket: Optional[str] = None,
        expires_in: int = 3600
    ) -> str:
        """
        Generate pre-signed URL for GET operation (download).
        """
        try:
            url = self.s3_client.generate_presigned_url(
                'get_object',
                Params={
                    'Bucket': bucket or self.bucket,
                    'Key': s3_key
                },
                ExpiresIn=expires_in
            )
            return url

        except ClientError as e:
            logger.error("Failed to generate download URL for %s: %s", s3_key, e)
            raise

    def generate_download_urls(
        self,
        s3_keys: List[str],
        bucket: Optional[str] = None,
        expires_in: int = 3600,
    ) -> Dict[str, Optional[str]]:
        """
        Signed URLs for several keys; a key that cannot be signed maps to None.
        """
        urls: Dict[str, Optional[str]] = {}
        for key in s3_keys:
            try:
                urls[key] = self.generate_download_url(key, bucket=bucket, expires_in=expires_in)
            except ClientError:
                urls[key] = None
        return urls


# Singleton
s3_service = S3Service()
