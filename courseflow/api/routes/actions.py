"""Flow action management API routes."""

from fastapi import APIRouter, Query

from courseflow.api.deps import ActionStoreDep, PaginationDep, PlannerDep, TemplateStoreDep
from courseflow.core.exceptions import ConfigurationError, ConflictError, NotFoundError
from courseflow.engine.planner import Planner, new_action_id
from courseflow.models.action import (
    ActionMetadata,
    ChannelType,
    FlowAction,
    ScopeType,
)
from courseflow.schemas.action import (
    ActionCreate,
    ActionCreateResponse,
    ActionResponse,
    ActionStatusResponse,
    ActionStatusUpdate,
    ActionUpdate,
)
from courseflow.schemas.common import APIResponse, PaginatedResponse
from courseflow.storage.action_store import ActionStore
from courseflow.storage.template_store import TemplateStore

router = APIRouter(prefix="/actions", tags=["actions"])

TEMPLATED_CHANNELS = frozenset({ChannelType.EMAIL, ChannelType.NOTIFICATION, ChannelType.REMINDER})


def to_response(action: FlowAction) -> ActionResponse:
    return ActionResponse.model_validate({**action.model_dump(), "channel_type": action.channel_type})


async def configuration_errors(action: FlowAction, templates: TemplateStore) -> list[str]:
    """Problems that would make every execution of the action fail permanently."""
    errors = []
    if action.channel_type in TEMPLATED_CHANNELS:
        template = await templates.get(action.destination)
        if template is None:
            errors.append(f"Template {action.destination} not found")
        elif not template.is_active:
            errors.append(f"Template {action.destination} is inactive")
        elif template.organization_id and template.organization_id != action.organization_id:
            errors.append(f"Template {action.destination} belongs to another organization")
    return errors


async def _ensure_configured(action: FlowAction, templates: TemplateStore) -> None:
    errors = await configuration_errors(action, templates)
    if errors:
        raise ConfigurationError("; ".join(errors))


async def _load(store: ActionStore, action_id: str) -> FlowAction:
    action = await store.get(action_id)
    if not action:
        raise NotFoundError("Flow action", action_id)
    return action


async def _save_edit(
    existing: FlowAction,
    updated: FlowAction,
    store: ActionStore,
    planner: Planner,
) -> FlowAction:
    """Persist an edit and bring the action's records in line with it."""
    result = await store.update(existing.action_id, updated)
    if result is None:
        raise NotFoundError("Flow action", existing.action_id)

    if existing.is_active and not result.is_active:
        result, _ = await planner.deactivate_action(result.action_id)
    elif result.is_active:
        await planner.plan_action(result)
    return result


@router.post("", response_model=APIResponse[ActionCreateResponse])
async def create_action(
    data: ActionCreate,
    store: ActionStoreDep,
    templates: TemplateStoreDep,
    planner: PlannerDep,
) -> APIResponse[ActionCreateResponse]:
    """Create a new flow action and plan it for the scope's current subjects."""
    action = FlowAction(
        action_id=new_action_id(),
        organization_id=data.organization_id,
        scope=data.scope,
        title=data.title,
        channel=data.channel,
        recipient_role=data.recipient_role,
        trigger=data.trigger,
        execution_order=data.execution_order,
        is_active=data.is_active,
        retry_policy=data.retry_policy,
        metadata=ActionMetadata(created_by=data.created_by),
    )
    await _ensure_configured(action, templates)

    created = await store.create(action)
    records = await planner.plan_action(created)

    return APIResponse(
        data=ActionCreateResponse(
            action_id=created.action_id,
            sequence=created.sequence,
            records_planned=len(records),
            created_at=created.metadata.created_at,
        )
    )


@router.get("", response_model=PaginatedResponse[ActionResponse])
async def list_actions(
    store: ActionStoreDep,
    pagination: PaginationDep,
    organization_id: str | None = Query(default=None, description="Filter by organization"),
    scope_type: ScopeType | None = Query(default=None, description="Filter by scope type"),
    scope_id: str | None = Query(default=None, description="Filter by scope id"),
    is_active: bool | None = Query(default=None, description="Filter by active status"),
    channel_type: ChannelType | None = Query(default=None, description="Filter by channel type"),
) -> PaginatedResponse[ActionResponse]:
    """List flow actions in execution order with optional filtering."""
    if organization_id:
        actions = await store.list_by_organization(organization_id)
    else:
        actions = await store.list_all()

    if scope_type is not None:
        actions = [a for a in actions if a.scope.scope_type == scope_type]
    if scope_id:
        actions = [a for a in actions if a.scope.scope_id == scope_id]
    if is_active is not None:
        actions = [a for a in actions if a.is_active == is_active]
    if channel_type is not None:
        actions = [a for a in actions if a.channel_type == channel_type]

    return PaginatedResponse(
        data=[to_response(a) for a in pagination.slice(actions)],
        total=len(actions),
        page=pagination.page,
        page_size=pagination.page_size,
    )


@router.get("/{action_id}", response_model=APIResponse[ActionResponse])
async def get_action(
    action_id: str,
    store: ActionStoreDep,
) -> APIResponse[ActionResponse]:
    """Get a single flow action by ID."""
    action = await _load(store, action_id)
    return APIResponse(data=to_response(action))


@router.put("/{action_id}", response_model=APIResponse[ActionResponse])
async def replace_action(
    action_id: str,
    data: ActionCreate,
    store: ActionStoreDep,
    templates: TemplateStoreDep,
    planner: PlannerDep,
) -> APIResponse[ActionResponse]:
    """Replace an existing flow action.

    Scheduled executions that have not run yet are re-resolved against the
    new trigger.
    """
    existing = await _load(store, action_id)
    if data.scope != existing.scope or data.organization_id != existing.organization_id:
        raise ConflictError("Scope and organization of a flow action cannot change")

    replacement = FlowAction(
        action_id=action_id,
        organization_id=existing.organization_id,
        scope=existing.scope,
        title=data.title,
        channel=data.channel,
        recipient_role=data.recipient_role,
        trigger=data.trigger,
        execution_order=data.execution_order,
        is_active=data.is_active,
        retry_policy=data.retry_policy,
        metadata=existing.metadata.model_copy(),
    )
    await _ensure_configured(replacement, templates)

    result = await _save_edit(existing, replacement, store, planner)
    return APIResponse(data=to_response(result))


@router.patch("/{action_id}", response_model=APIResponse[ActionResponse])
async def update_action(
    action_id: str,
    data: ActionUpdate,
    store: ActionStoreDep,
    templates: TemplateStoreDep,
    planner: PlannerDep,
) -> APIResponse[ActionResponse]:
    """Partially update an existing flow action."""
    existing = await _load(store, action_id)

    updated_dict = existing.model_dump()
    updated_dict.update(data.model_dump(exclude_unset=True))
    updated = FlowAction.model_validate(updated_dict)
    await _ensure_configured(updated, templates)

    result = await _save_edit(existing, updated, store, planner)
    return APIResponse(data=to_response(result))


@router.delete("/{action_id}", response_model=APIResponse)
async def delete_action(
    action_id: str,
    planner: PlannerDep,
    force: bool = Query(default=False, description="Also delete execution history"),
) -> APIResponse:
    """Delete a flow action.

    Actions with execution history are deactivated instead unless ``force``
    is set.
    """
    deleted = await planner.delete_action(action_id, force=force)
    if deleted:
        return APIResponse(message=f"Flow action {action_id} deleted")
    return APIResponse(message=f"Flow action {action_id} has executions and was deactivated")


@router.patch("/{action_id}/status", response_model=APIResponse[ActionStatusResponse])
async def update_action_status(
    action_id: str,
    data: ActionStatusUpdate,
    planner: PlannerDep,
) -> APIResponse[ActionStatusResponse]:
    """Activate or deactivate a flow action.

    Deactivation skips every execution that has not started running.
    """
    if data.is_active:
        action = await planner.activate_action(action_id)
        skipped = 0
    else:
        action, skipped = await planner.deactivate_action(action_id)

    return APIResponse(data=ActionStatusResponse(action=to_response(action), records_skipped=skipped))

