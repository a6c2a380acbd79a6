from __future__ import annotations

from fastapi import APIRouter, Path, Request, status

from src.compliance.schemas.agent_config import AgentConfigurationOut, AgentConfigurationUpdate
from src.compliance.schemas.common import ErrorResponse
from src.compliance.services import agent_config_service

router = APIRouter(prefix="/api/businesses/{business_id}/agents/compliance-monitoring", tags=["Agent Configuration"])


@router.get(
    "",
    response_model=AgentConfigurationOut,
    responses={404: {"model": ErrorResponse}},
    summary="Get compliance agent configuration",
    operation_id="get_compliance_agent_configuration",
)
async def get_configuration(
    request: Request, business_id: str = Path(..., description="Business id.")
) -> AgentConfigurationOut:
    return await agent_config_service.get_configuration(request, business_id)


@router.put(
    "",
    response_model=AgentConfigurationOut,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Create or update compliance agent configuration",
    description="Partial upsert; the business's scheduled job is resynchronized afterwards.",
    operation_id="put_compliance_agent_configuration",
)
async def put_configuration(
    request: Request,
    payload: AgentConfigurationUpdate,
    business_id: str = Path(..., description="Business id."),
) -> AgentConfigurationOut:
    return await agent_config_service.upsert_configuration(request, business_id, payload)


@router.put(
    "/enable",
    response_model=AgentConfigurationOut,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
    summary="Enable compliance monitoring",
    operation_id="enable_compliance_agent",
)
async def enable_agent(request: Request, business_id: str = Path(..., description="Business id.")) -> AgentConfigurationOut:
    return await agent_config_service.enable_agent(request, business_id)


@router.put(
    "/disable",
    response_model=AgentConfigurationOut,
    responses={404: {"model": ErrorResponse}},
    summary="Disable compliance monitoring",
    operation_id="disable_compliance_agent",
)
async def disable_agent(request: Request, business_id: str = Path(..., description="Business id.")) -> AgentConfigurationOut:
    return await agent_config_service.disable_agent(request, business_id)


@router.delete(
    "",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
    summary="Delete compliance agent configuration",
    description="Remove the configuration and stop the business's scheduled job.",
    operation_id="delete_compliance_agent_configuration",
)
async def delete_configuration(request: Request, business_id: str = Path(..., description="Business id.")) -> None:
    await agent_config_service.delete_configuration(request, business_id)
    return None
