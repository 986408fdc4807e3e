"""GitHub token resolution from secret references.

``ORGSYNC_GITHUB_TOKEN`` may hold the token itself or a reference:

  aws-secret://NAME[#json_key]   AWS Secrets Manager (needs the ``aws`` extra)
  gcp-secret://NAME              GCP Secret Manager, project from GCP_PROJECT_ID
  gcp-secret://projects/P/secrets/S/versions/V
  file:///path/to/token          first line of a mounted secret file
"""

from __future__ import annotations

import json
import logging
import os
from typing import Callable

logger = logging.getLogger("orgsync.secrets")


def _from_aws(ref: str) -> str:
    import boto3

    secret_id, _, field_name = ref.partition("#")
    sm = boto3.client("secretsmanager", region_name=os.environ.get("AWS_REGION", "us-east-1"))
    logger.debug("Reading token from AWS secret %s", secret_id)
    payload = sm.get_secret_value(SecretId=secret_id)["SecretString"]
    if not field_name:
        return payload
    try:
        return str(json.loads(payload)[field_name])
    except (ValueError, KeyError) as exc:
        raise ValueError(f"AWS secret {secret_id} has no JSON field {field_name!r}") from exc


def _gcp_version_name(ref: str) -> str:
    if ref.startswith("projects/"):
        return ref
    project = os.environ.get("GCP_PROJECT_ID", "")
    if not project:
        raise ValueError("GCP_PROJECT_ID must be set to resolve a short gcp-secret:// reference")
    return f"projects/{project}/secrets/{ref}/versions/latest"


def _from_gcp(ref: str) -> str:
    version = _gcp_version_name(ref)

    from google.cloud import secretmanager

    logger.debug("Reading token from GCP secret %s", version)
    response = secretmanager.SecretManagerServiceClient().access_secret_version(request={"name": version})
    return response.payload.data.decode("UTF-8")


def _from_file(ref: str) -> str:
    with open(ref, "r", encoding="utf-8") as fh:
        token = fh.readline().strip()
    if not token:
        raise ValueError(f"token file {ref} is empty")
    return token


_RESOLVERS: dict[str, Callable[[str], str]] = {
    "aws-secret://": _from_aws,
    "gcp-secret://": _from_gcp,
    "file://": _from_file,
}


def resolve_secret(value: str) -> str:
    """Return the plaintext for ``value``; values without a known prefix pass through."""
    for prefix, resolver in _RESOLVERS.items():
        if value.startswith(prefix):
            return resolver(value[len(prefix):])
    return value
