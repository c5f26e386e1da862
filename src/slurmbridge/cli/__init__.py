# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
CLI modules for slurmbridge.

Available commands (see cli.main):
- serve: Run the bridge daemon
- gate: Submission hook entry point
- dry-run: Show a decision without enqueueing
- cancel: Request cancellation of a delegated job
"""
