"""
Workflow configuration and remote gateway as request dependencies.

Tests override get_commerce_gateway with an in-memory fake and
get_workflow_config with zero poll delays.
"""
from functools import lru_cache

from fastapi import Depends

from app.core.config import WorkflowConfig, settings
from app.domain.services.commerce.gateway import CommerceGateway, build_commerce_gateway


@lru_cache
def _default_workflow_config() -> WorkflowConfig:
    return WorkflowConfig.from_settings(settings)


def get_workflow_config() -> WorkflowConfig:
    return _default_workflow_config()


def get_commerce_gateway(
    config: WorkflowConfig = Depends(get_workflow_config),
) -> CommerceGateway:
    return build_commerce_gateway(config)
