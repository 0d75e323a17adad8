from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

SideEffectPolicy = Literal["mandatory", "best_effort"]


class CrmConfig(BaseModel):
    """External CRM webhook settings."""

    webhook_url: Optional[str] = None
    timeout_ms: Optional[int] = 30000


class SyncConfig(BaseModel):
    """Downstream sync channel. Disabled when ``url`` is unset."""

    url: Optional[str] = None
    timeout_ms: Optional[int] = 30000


class SideEffectPolicies(BaseModel):
    """Whether a failing side channel aborts a dispatch or is only logged."""

    contact: SideEffectPolicy = "mandatory"
    sync: SideEffectPolicy = "mandatory"
    mirror: SideEffectPolicy = "best_effort"


class HttpConfig(BaseModel):
    default_timeout_ms: Optional[int] = None


class LeadflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    crm: CrmConfig = Field(default_factory=CrmConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    policies: SideEffectPolicies = Field(default_factory=SideEffectPolicies)
    http: HttpConfig = Field(default_factory=HttpConfig)


def load_config(path: Optional[str] = None) -> LeadflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to LEADFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEADFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LeadflowConfig(**data)
    else:
        config = LeadflowConfig()

    env_db_url = os.getenv("LEADFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_webhook = os.getenv("LEADFLOW_CRM_WEBHOOK_URL")
    if env_webhook:
        config.crm.webhook_url = env_webhook
    env_sync = os.getenv("LEADFLOW_SYNC_URL")
    if env_sync:
        config.sync.url = env_sync
    return config
