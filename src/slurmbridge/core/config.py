#!/usr/bin/env python3
# SPDX-FileCopyrightText: Copyright (c) 2025 NVIDIA CORPORATION & AFFILIATES. All rights reserved.
# SPDX-License-Identifier: Apache-2.0

"""
Config loading and resolution with slurmbridge.yaml integration.

This module provides:
- load_config(): Load YAML config, apply site defaults, return typed BridgeConfig
- load_site_config(): Site-wide defaults from slurmbridge.yaml
- resolve_config_with_defaults(): Merge site defaults into a user config dict
"""

import copy
import logging
from pathlib import Path
from typing import Any

import yaml

from .schema import BridgeConfig, SiteConfig

logger = logging.getLogger(__name__)

SITE_CONFIG_NAME = "slurmbridge.yaml"
SYSTEM_SITE_CONFIG = Path("/etc/slurmbridge") / SITE_CONFIG_NAME


def load_site_config() -> dict[str, Any] | None:
    """
    Load site configuration from slurmbridge.yaml if it exists.

    Searches for slurmbridge.yaml in:
    1. Current working directory
    2. Parent directories up to 2 levels
    3. /etc/slurmbridge/

    Returns None if file doesn't exist (graceful degradation).
    """
    search_paths = [
        Path.cwd() / SITE_CONFIG_NAME,
        Path.cwd().parent / SITE_CONFIG_NAME,
        Path.cwd().parent.parent / SITE_CONFIG_NAME,
        SYSTEM_SITE_CONFIG,
    ]

    site_config_path = None
    for path in search_paths:
        if path.exists():
            site_config_path = path
            break

    if not site_config_path:
        logger.debug("No %s found - using config as-is", SITE_CONFIG_NAME)
        return None

    try:
        with open(site_config_path) as f:
            raw_config = yaml.safe_load(f) or {}

        schema = SiteConfig.Schema()
        validated = schema.load(raw_config)
        logger.debug("Loaded site config from %s", site_config_path)

        return schema.dump(validated)
    except Exception as e:
        logger.warning("Failed to load or validate %s: %s", site_config_path, e)
        return None


def resolve_config_with_defaults(user_config: dict[str, Any], site_config: dict[str, Any] | None) -> dict[str, Any]:
    """
    Resolve user config by applying site defaults.

    This applies:
    1. Default namespace and default image for the translator
    2. Image aliases (user aliases win over site aliases)
    3. Spool directory and accounting endpoint

    Args:
        user_config: User's YAML config as dict
        site_config: Site defaults from slurmbridge.yaml (or None)

    Returns:
        Resolved config dict with all defaults applied
    """
    config = copy.deepcopy(user_config)

    if site_config is None:
        return config

    translator = config.setdefault("translator", {})
    if "default_namespace" not in translator and site_config.get("default_namespace"):
        translator["default_namespace"] = site_config["default_namespace"]
        logger.debug("Applied default namespace: %s", translator["default_namespace"])

    if "default_image" not in translator and site_config.get("default_image"):
        translator["default_image"] = site_config["default_image"]
        logger.debug("Applied default image: %s", translator["default_image"])

    site_images = site_config.get("images")
    if site_images:
        images = dict(site_images)
        images.update(translator.get("images") or {})
        translator["images"] = images

    spool = config.setdefault("spool", {})
    if "path" not in spool and site_config.get("spool_dir"):
        spool["path"] = site_config["spool_dir"]
        logger.debug("Applied spool dir: %s", spool["path"])

    accounting = config.setdefault("accounting", {})
    if "endpoint" not in accounting and site_config.get("accounting_endpoint"):
        accounting["endpoint"] = site_config["accounting_endpoint"]

    return config


def load_config(path: Path | str) -> BridgeConfig:
    """
    Load and validate YAML config, applying site defaults.

    Returns a fully typed, frozen BridgeConfig dataclass ready for use.

    Args:
        path: Path to the YAML configuration file

    Returns:
        BridgeConfig frozen dataclass

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config validation fails
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        user_config = yaml.safe_load(f) or {}

    site_config = load_site_config()
    resolved_config = resolve_config_with_defaults(user_config, site_config)

    try:
        schema = BridgeConfig.Schema()
        config = schema.load(resolved_config)
        assert isinstance(config, BridgeConfig)
        logger.info("Loaded config: %s", config.name)
        return config
    except Exception as e:
        raise ValueError(f"Invalid config in {path}: {e}") from e
