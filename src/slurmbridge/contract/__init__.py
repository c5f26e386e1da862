# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Shared wire contract for the submission hook and the accounting API.

This package defines the Pydantic models and enums exchanged with the
scheduler. It has zero internal imports outside the package, only pydantic.

Usage (hook):
    from slurmbridge.contract import SubmissionPayload, HookVerdict, HookAction

Usage (accounting server):
    from slurmbridge.contract import AccountingPayload, AccountingResponse
"""

from slurmbridge.contract.enums import TERMINAL_PHASES, HookAction, JobPhase, ObservedPhase
from slurmbridge.contract.requests import AccountingPayload, SubmissionPayload
from slurmbridge.contract.responses import AccountingResponse, HookVerdict

__all__ = [
    "TERMINAL_PHASES",
    "HookAction",
    "JobPhase",
    "ObservedPhase",
    "AccountingPayload",
    "SubmissionPayload",
    "AccountingResponse",
    "HookVerdict",
]
