# config.py
import os
from typing import Optional

import boto3
import redis
from botocore.config import Config
from dotenv import load_dotenv
from pydantic import BaseModel

from resumable_uploader.models.upload_models import (
    CHUNK_SIZE,
    MAX_SOURCE_SIZE,
    UploadConfig,
)
from resumable_uploader.services.s3_session_client import S3MultipartSessionClient
from resumable_uploader.services.session_client import HttpUploadSessionClient


class Settings(BaseModel):
    api_url: str = "http://localhost:3000/api"
    auth_token: Optional[str] = None
    transport: str = "http"
    chunk_size: int = CHUNK_SIZE
    max_source_size: int = MAX_SOURCE_SIZE
    content_type_prefix: Optional[str] = "video/"
    request_timeout: float = 60.0

    aws_access_key: Optional[str] = None
    aws_secret_key: Optional[str] = None
    aws_region: str = "us-east-1"
    bucket_name: Optional[str] = None

    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = ""
    checkpoint_ttl_days: int = 7

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Read settings from the process environment and any .env file"""
        load_dotenv()
        values = {
            "api_url": os.getenv("UPLOAD_API_URL"),
            "auth_token": os.getenv("UPLOAD_AUTH_TOKEN"),
            "transport": os.getenv("UPLOAD_TRANSPORT"),
            "chunk_size": os.getenv("UPLOAD_CHUNK_SIZE"),
            "max_source_size": os.getenv("UPLOAD_MAX_SOURCE_SIZE"),
            "request_timeout": os.getenv("UPLOAD_REQUEST_TIMEOUT"),
            "aws_access_key": os.getenv("AWS_ACCESS_KEY"),
            "aws_secret_key": os.getenv("AWS_SECRET_KEY"),
            "aws_region": os.getenv("AWS_REGION"),
            "bucket_name": os.getenv("BUCKET_NAME"),
            "redis_host": os.getenv("REDIS_HOST"),
            "redis_port": os.getenv("REDIS_PORT"),
            "redis_password": os.getenv("REDIS_PASSWORD"),
            "checkpoint_ttl_days": os.getenv("CHECKPOINT_TTL_DAYS"),
            "log_level": os.getenv("LOG_LEVEL"),
        }
        return cls(**{k: v for k, v in values.items() if v is not None})

    def upload_config(self) -> UploadConfig:
        return UploadConfig(
            chunk_size=self.chunk_size,
            max_source_size=self.max_source_size,
            content_type_prefix=self.content_type_prefix,
        )


def build_redis_client(settings: Settings):
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        decode_responses=False,
        socket_connect_timeout=5,
        health_check_interval=30,
        db=0,
    )


def build_s3_client(settings: Settings):
    return boto3.client(
        "s3",
        region_name=settings.aws_region,
        aws_access_key_id=settings.aws_access_key,
        aws_secret_access_key=settings.aws_secret_key,
        config=Config(signature_version="s3v4"),
    )


def build_session_client(settings: Settings, redis_client=None):
    """Pick the transport adapter named by ``settings.transport``"""
    if settings.transport == "s3":
        return S3MultipartSessionClient(
            s3_client=build_s3_client(settings),
            bucket_name=settings.bucket_name,
            redis_client=redis_client or build_redis_client(settings),
            record_ttl_days=settings.checkpoint_ttl_days,
        )
    if settings.transport == "http":
        return HttpUploadSessionClient(
            base_url=settings.api_url,
            auth_token=settings.auth_token,
            timeout=settings.request_timeout,
        )
    raise ValueError(f"Unknown upload transport: {settings.transport}")
