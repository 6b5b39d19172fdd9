"""Message template API routes."""

from fastapi import APIRouter

from courseflow.api.deps import TemplateStoreDep
from courseflow.core.exceptions import NotFoundError
from courseflow.models.template import MessageTemplate
from courseflow.schemas.common import APIResponse
from courseflow.schemas.organization import TemplateUpsert

router = APIRouter(prefix="/templates", tags=["templates"])


@router.put("/{template_id}", response_model=APIResponse[MessageTemplate])
async def put_template(
    template_id: str,
    data: TemplateUpsert,
    store: TemplateStoreDep,
) -> APIResponse[MessageTemplate]:
    """Create or replace a template."""
    template = MessageTemplate(template_id=template_id, **data.model_dump())
    return APIResponse(data=await store.save(template))


@router.get("/{template_id}", response_model=APIResponse[MessageTemplate])
async def get_template(
    template_id: str,
    store: TemplateStoreDep,
) -> APIResponse[MessageTemplate]:
    template = await store.get(template_id)
    if not template:
        raise NotFoundError("Template", template_id)
    return APIResponse(data=template)


@router.delete("/{template_id}", response_model=APIResponse)
async def delete_template(
    template_id: str,
    store: TemplateStoreDep,
) -> APIResponse:
    """Delete a template. Actions still pointing at it fail permanently."""
    if not await store.delete(template_id):
        raise NotFoundError("Template", template_id)
    return APIResponse(message=f"Template {template_id} deleted")
