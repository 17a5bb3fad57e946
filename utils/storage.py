import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError
from functools import lru_cache
from pathlib import Path
from typing import Optional
from config.settings import settings
from core.errors import ExecutionError, InfrastructureError
import logging
import os
import shutil
import tempfile

logger = logging.getLogger(__name__)

S3_PREFIX = "s3://"


def s3_enabled() -> bool:
    return bool(settings.s3_bucket)


@lru_cache(maxsize=1)
def get_s3_client():
    return boto3.client(
        's3',
        endpoint_url=settings.s3_endpoint,
        region_name=settings.s3_region,
        aws_access_key_id=settings.s3_access_key,
        aws_secret_access_key=settings.s3_secret_key,
        config=Config(signature_version='s3v4', s3={'addressing_style': 'path'})
    )


def upload_artifact(local_path: str, object_name: str) -> str:
    try:
        get_s3_client().upload_file(local_path, settings.s3_bucket, object_name)
    except (BotoCoreError, ClientError) as e:
        raise InfrastructureError(f"S3 upload failed: {e}") from e
    return s3_ref(object_name)


def download_artifact(ref: str) -> str:
    bucket, key = _split_ref(ref)
    local_path = os.path.join(tempfile.gettempdir(), os.path.basename(key))
    try:
        get_s3_client().download_file(bucket, key, local_path)
    except ClientError as e:
        raise ExecutionError(f"Input not found in storage: {key}") from e
    except BotoCoreError as e:
        raise InfrastructureError(f"S3 download failed: {e}") from e
    return local_path


def resolve_input(input_ref: str) -> str:
    """Local filesystem path for a job's input reference."""
    if input_ref.startswith(S3_PREFIX):
        return download_artifact(input_ref)
    return input_ref


def job_output_dir(kind: str, job_id: str, root: str = None) -> str:
    path = Path(root or settings.storage_dir) / "outputs" / kind / job_id
    path.mkdir(parents=True, exist_ok=True)
    return str(path)


def verify_output_artifact(path: str) -> int:
    """Post-condition after a successful encoder run: the output exists and
    is non-empty. Returns its size in bytes."""
    if not os.path.isfile(path):
        raise ExecutionError(f"Encoder reported success but produced no output: {path}")
    size = os.path.getsize(path)
    if size == 0:
        raise ExecutionError(f"Encoder produced an empty output file: {path}")
    return size


def remove_artifact(ref: Optional[str]):
    """Delete a local file/directory or S3 object. Missing artifacts are ignored."""
    if not ref:
        return
    if ref.startswith(S3_PREFIX):
        bucket, key = _split_ref(ref)
        try:
            get_s3_client().delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise InfrastructureError(f"S3 delete failed: {e}") from e
        return
    try:
        if os.path.isdir(ref):
            shutil.rmtree(ref)
        elif os.path.exists(ref):
            os.remove(ref)
    except OSError as e:
        logger.warning("Could not remove artifact %s: %s", ref, e)


def _split_ref(ref: str):
    bucket, _, key = ref[len(S3_PREFIX):].partition("/")
    return bucket, key


def s3_ref(object_name: str) -> str:
    return f"{S3_PREFIX}{settings.s3_bucket}/{object_name}"
