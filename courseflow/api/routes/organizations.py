"""Organization settings and pause control API routes."""

from fastapi import APIRouter

from courseflow.api.deps import OrganizationStoreDep
from courseflow.core.logging import get_logger
from courseflow.models.subject import OrganizationSettings
from courseflow.schemas.common import APIResponse
from courseflow.schemas.organization import OrganizationSettingsUpdate

logger = get_logger(__name__)

router = APIRouter(prefix="/organizations", tags=["organizations"])


@router.get("/{organization_id}/settings", response_model=APIResponse[OrganizationSettings])
async def get_organization_settings(
    organization_id: str,
    store: OrganizationStoreDep,
) -> APIResponse[OrganizationSettings]:
    return APIResponse(data=await store.get(organization_id))


@router.put("/{organization_id}/settings", response_model=APIResponse[OrganizationSettings])
async def replace_settings(
    organization_id: str,
    data: OrganizationSettingsUpdate,
    store: OrganizationStoreDep,
) -> APIResponse[OrganizationSettings]:
    """Replace timezone and pause flag.

    A new timezone applies to records resolved from now on.
    """
    settings = OrganizationSettings(organization_id=organization_id, **data.model_dump())
    return APIResponse(data=await store.save(settings))


@router.post("/{organization_id}/pause", response_model=APIResponse[OrganizationSettings])
async def pause_organization(
    organization_id: str,
    store: OrganizationStoreDep,
) -> APIResponse[OrganizationSettings]:
    """Hold every dispatch of the organization; records stay scheduled."""
    settings = await store.set_paused(organization_id, True)
    logger.info("Organization paused", organization_id=organization_id)
    return APIResponse(data=settings)


@router.post("/{organization_id}/resume", response_model=APIResponse[OrganizationSettings])
async def resume_organization(
    organization_id: str,
    store: OrganizationStoreDep,
) -> APIResponse[OrganizationSettings]:
    """Resume dispatching; held records fire on the next tick."""
    settings = await store.set_paused(organization_id, False)
    logger.info("Organization resumed", organization_id=organization_id)
    return APIResponse(data=settings)
