"""Trigger preview and validation API routes."""

from fastapi import APIRouter
from pydantic import ValidationError

from courseflow.api.deps import (
    ActionStoreDep,
    LedgerDep,
    OrganizationStoreDep,
    SubjectStoreDep,
    TemplateStoreDep,
)
from courseflow.api.routes.actions import configuration_errors
from courseflow.core.exceptions import NotFoundError
from courseflow.engine.planner import new_action_id
from courseflow.engine.resolver import load_timezone, reference_for, resolve_trigger
from courseflow.models.action import FlowAction
from courseflow.models.execution import make_record_id
from courseflow.schemas.action import ActionCreate
from courseflow.schemas.common import APIResponse
from courseflow.schemas.preview import (
    PreviewRequest,
    PreviewResponse,
    PreviewResult,
    ValidateRequest,
    ValidateResponse,
)

router = APIRouter(prefix="/actions", tags=["actions"])


@router.post("/validate", response_model=APIResponse[ValidateResponse])
async def validate_action(
    data: ValidateRequest,
    templates: TemplateStoreDep,
) -> APIResponse[ValidateResponse]:
    """Validate an action definition without saving it.

    Returns schema errors first; configuration errors (missing templates)
    are only checked for schema-valid definitions.
    """
    try:
        draft = ActionCreate.model_validate(data.action)
    except ValidationError as e:
        errors = [
            f"{'.'.join(str(part) for part in err['loc']) or 'action'}: {err['msg']}"
            for err in e.errors(include_url=False)
        ]
        return APIResponse(data=ValidateResponse(valid=False, errors=errors))

    action = FlowAction(
        action_id=new_action_id(),
        **draft.model_dump(exclude={"created_by"}),
    )
    errors = await configuration_errors(action, templates)
    return APIResponse(data=ValidateResponse(valid=not errors, errors=errors))


@router.post("/{action_id}/preview", response_model=APIResponse[PreviewResponse])
async def preview_action(
    action_id: str,
    data: PreviewRequest,
    store: ActionStoreDep,
    subjects: SubjectStoreDep,
    organizations: OrganizationStoreDep,
    ledger: LedgerDep,
) -> APIResponse[PreviewResponse]:
    """Dry-run trigger resolution.

    Nothing is written to the ledger.
    """
    action = await store.get(action_id)
    if not action:
        raise NotFoundError("Flow action", action_id)

    settings = await organizations.get(action.organization_id)
    tz = load_timezone(settings.timezone)

    results: list[PreviewResult] = []
    if data.reference is not None:
        fire_at = resolve_trigger(data.reference, action.trigger, tz)
        results.append(PreviewResult(reference=data.reference, fire_at=fire_at, resolved=fire_at is not None))
    else:
        if data.subject_ids is not None:
            candidates = [await subjects.get(s) for s in data.subject_ids]
            candidates = [s for s in candidates if s is not None]
        else:
            candidates = await subjects.list_by_scope(action.scope)

        for subject in candidates:
            reference = reference_for(subject, action.trigger)
            fire_at = resolve_trigger(reference, action.trigger, tz)
            record = await ledger.get(make_record_id(action.action_id, subject.subject_id))
            results.append(
                PreviewResult(
                    subject_id=subject.subject_id,
                    reference=reference,
                    fire_at=fire_at,
                    resolved=fire_at is not None,
                    status=record.status.value if record else None,
                )
            )

    return APIResponse(
        data=PreviewResponse(action_id=action_id, timezone=settings.timezone, results=results)
    )
