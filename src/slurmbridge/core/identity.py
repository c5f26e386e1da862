# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Job identity, idempotency keys and workload naming.

The workload name is a pure function of the idempotency key, so a retried
create can only ever hit the object the first attempt made.
"""

import hashlib
import json
import re

from slurmbridge.core.models import SubmissionDescriptor

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "slurmbridge"
IDEMPOTENCY_KEY_LABEL = "slurmbridge.io/idempotency-key"
JOB_NAME_LABEL = "slurmbridge.io/job-name"
SPEC_HASH_ANNOTATION = "slurmbridge.io/spec-hash"
USER_ANNOTATION = "slurmbridge.io/submitted-by"

KEY_LENGTH = 16
NAME_SUFFIX_LENGTH = 10
MAX_NAME_LENGTH = 63
MAX_LABEL_VALUE_LENGTH = 63

_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9-]+")
_INVALID_LABEL_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def idempotency_key(descriptor: SubmissionDescriptor) -> str:
    """Deterministic key for a submission, derived from its identity only."""
    payload = json.dumps(list(descriptor.identity), separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()[:KEY_LENGTH]


def sanitize_name(value: str) -> str:
    """Lowercase DNS-1123 label fragment (may be empty)."""
    name = _INVALID_NAME_CHARS.sub("-", value.lower())
    return re.sub(r"-{2,}", "-", name).strip("-")


def sanitize_label_value(value: str) -> str:
    """Kubernetes label value: <= 63 chars, alphanumeric at both ends."""
    label = _INVALID_LABEL_CHARS.sub("-", value)[:MAX_LABEL_VALUE_LENGTH]
    return label.strip("-._")


def workload_name(job_name: str, key: str) -> str:
    """Object name ``<job-name>-<key prefix>``, at most 63 characters."""
    suffix = key[:NAME_SUFFIX_LENGTH]
    base = sanitize_name(job_name)[: MAX_NAME_LENGTH - NAME_SUFFIX_LENGTH - 1].rstrip("-")
    if not base or not base[0].isalpha():
        base = f"job-{base}".rstrip("-")[: MAX_NAME_LENGTH - NAME_SUFFIX_LENGTH - 1].rstrip("-")
    return f"{base}-{suffix}"
