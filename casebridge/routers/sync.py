"""Sync router - reconciliation polls and dual-write mutations."""

from dataclasses import asdict
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from casebridge.acl import CREATE, UPDATE
from casebridge.core.deps import get_db, get_legacy_client, get_office
from casebridge.core.rate_limit import WRITE_LIMIT, limiter
from casebridge.db.enums import POLLED_ENTITY_TYPES, EntityType
from casebridge.db.models import Constituent, Office
from casebridge.schemas.sync import (
    CaseCreate,
    CaseUpdate,
    ConstituentCreate,
    ConstituentUpdate,
    PollCancelRead,
    PollCancelRequest,
    PollRequest,
    PollResultRead,
    SyncOutcomeRead,
)
from casebridge.services import reconciliation_service, reference_data_service, sync_service
from casebridge.services.legacy_client import LegacyApiClient, LegacyApiError

router = APIRouter(tags=["Sync"])

_OUTCOME_STATUS_CODES = {"committed": 200, "queued": 202, "rejected": 422}


def _respond(response: Response, outcome: sync_service.SyncOutcome) -> dict:
    body = sync_service.describe_outcome(outcome)
    response.status_code = _OUTCOME_STATUS_CODES[body["status"]]
    return body


@router.post("/poll", response_model=list[PollResultRead])
@limiter.limit(WRITE_LIMIT)
async def poll(
    request: Request,
    data: PollRequest | None = None,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
):
    """Run a reconciliation cycle now instead of waiting for the poller."""
    data = data or PollRequest()
    entity_types = [e for e in POLLED_ENTITY_TYPES if not data.entity_types or e in data.entity_types]
    results = []
    try:
        for entity_type in entity_types:
            result = await reconciliation_service.poll_entity(
                db, office.id, entity_type.value, client=client, full=data.full
            )
            results.append(asdict(result))
    except LegacyApiError as exc:
        raise HTTPException(status_code=502, detail=f"Legacy API error: {exc}")
    return results


@router.post("/cancel", response_model=PollCancelRead)
@limiter.limit(WRITE_LIMIT)
async def cancel_poll(
    request: Request,
    data: PollCancelRequest,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
):
    """Stop a running poll after the page it is on. The watermark keeps what was ingested."""
    if data.entity_type not in POLLED_ENTITY_TYPES:
        raise HTTPException(status_code=422, detail=f"{data.entity_type.value} is not polled")
    cancelled = reconciliation_service.request_cancel(db, office.id, data.entity_type.value)
    return {"entity_type": data.entity_type.value, "cancel_requested": cancelled}


@router.get("/watermarks")
def watermarks(db: Session = Depends(get_db), office: Office = Depends(get_office)):
    return reconciliation_service.watermark_status(db, office.id)


@router.post("/reference-data")
@limiter.limit(WRITE_LIMIT)
async def refresh_reference_data(
    request: Request,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
) -> dict[str, int]:
    try:
        return await reference_data_service.sync_reference_data(db, office.id, client=client)
    except LegacyApiError as exc:
        raise HTTPException(status_code=502, detail=f"Legacy API error: {exc}")


@router.post("/constituents", response_model=SyncOutcomeRead)
@limiter.limit(WRITE_LIMIT)
async def create_constituent(
    request: Request,
    response: Response,
    data: ConstituentCreate,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
):
    outcome = await sync_service.create_constituent(
        db,
        office.id,
        client=client,
        first_name=data.first_name,
        last_name=data.last_name,
        title=data.title,
        organisation_type=data.organisation_type,
    )
    body = _respond(response, outcome)
    if data.email and not isinstance(outcome, sync_service.Rejected):
        # The contact detail follows its constituent, queued if the parent is
        detail = await sync_service.add_contact_detail(
            db, office.id, outcome.entity_id, client=client, contact_type="email", value=data.email
        )
        body["contact_detail"] = sync_service.describe_outcome(detail)
    return body


@router.patch("/constituents/{constituent_id}", response_model=SyncOutcomeRead)
@limiter.limit(WRITE_LIMIT)
async def update_constituent(
    request: Request,
    response: Response,
    constituent_id: UUID,
    data: ConstituentUpdate,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
):
    values = data.model_dump(exclude_unset=True)
    if not values:
        raise HTTPException(status_code=422, detail="No fields to update")
    try:
        outcome = await sync_service.commit(
            db,
            office.id,
            sync_service.EntityChange(EntityType.CONSTITUENT.value, UPDATE, values, entity_id=constituent_id),
            client=client,
        )
    except sync_service.EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Constituent not found")
    return _respond(response, outcome)


@router.post("/cases", response_model=SyncOutcomeRead)
@limiter.limit(WRITE_LIMIT)
async def create_case(
    request: Request,
    response: Response,
    data: CaseCreate,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
):
    constituent = db.get(Constituent, data.constituent_id)
    if constituent is None or constituent.office_id != office.id or constituent.deleted_at is not None:
        raise HTTPException(status_code=404, detail="Constituent not found")
    outcome = await sync_service.commit(
        db,
        office.id,
        sync_service.EntityChange(EntityType.CASE.value, CREATE, data.model_dump()),
        client=client,
    )
    return _respond(response, outcome)


@router.patch("/cases/{case_id}", response_model=SyncOutcomeRead)
@limiter.limit(WRITE_LIMIT)
async def update_case(
    request: Request,
    response: Response,
    case_id: UUID,
    data: CaseUpdate,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
):
    values = data.model_dump(exclude_unset=True)
    if not values:
        raise HTTPException(status_code=422, detail="No fields to update")
    try:
        outcome = await sync_service.commit(
            db,
            office.id,
            sync_service.EntityChange(EntityType.CASE.value, UPDATE, values, entity_id=case_id),
            client=client,
        )
    except sync_service.EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Case not found")
    return _respond(response, outcome)


@router.post("/messages/{message_id}/actioned", response_model=SyncOutcomeRead)
@limiter.limit(WRITE_LIMIT)
async def mark_actioned(
    request: Request,
    response: Response,
    message_id: UUID,
    db: Session = Depends(get_db),
    office: Office = Depends(get_office),
    client: LegacyApiClient = Depends(get_legacy_client),
):
    try:
        outcome = await sync_service.mark_message_actioned(db, office.id, message_id, client=client)
    except sync_service.EntityNotFoundError:
        raise HTTPException(status_code=404, detail="Message not found")
    return _respond(response, outcome)
