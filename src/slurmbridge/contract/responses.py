# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""Response models for the hook and accounting contracts."""

from pydantic import BaseModel

from slurmbridge.contract.enums import HookAction


class HookVerdict(BaseModel):
    """What the submit plugin should do with the job.

    ``script`` is only set when the batch script must be replaced by the
    polling stub; ``None`` means leave the job unchanged.
    """

    action: HookAction
    message: str | None = None
    script: str | None = None
    idempotency_key: str | None = None
    workload: str | None = None


class AccountingResponse(BaseModel):
    """Response model for accounting updates."""

    job_id: str
    phase: str
