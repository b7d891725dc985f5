"""
Vaccination record endpoints, always scoped to one profile.
"""

from __future__ import annotations

from pydantic import Field

from kinvault.api.pipeline import ApiResponse, AuthorizedRequest, create_handler
from kinvault.api.schemas import EmptyBody, RequestSchema
from kinvault.auth.errors import ErrorCode, GuardError
from kinvault.auth.policies import require_profile_role
from kinvault.core.models import AuditAction, Role, Vaccine
from kinvault.core.utils import utc_now


class CreateVaccineBody(RequestSchema):
    vaccine_name: str = Field(min_length=1)
    date: str | None = None
    notes: str | None = None


class UpdateVaccineBody(RequestSchema):
    vaccine_name: str | None = Field(default=None, min_length=1)
    date: str | None = None
    notes: str | None = None


async def _load_vaccine(req: AuthorizedRequest) -> Vaccine:
    """The addressed record, if it belongs to the gated profile."""
    vaccine_id = req.path_params.get("vaccine_id")
    if not vaccine_id:
        raise GuardError(ErrorCode.BAD_REQUEST, "Missing vaccineId")

    vaccine = await req.storage.vaccines.get(vaccine_id)
    if vaccine is None or vaccine.profile_id != req.outcome.profile_id:
        raise GuardError(ErrorCode.NOT_FOUND, "Vaccine record not found")
    return vaccine


async def drop_share_links(storage, vaccine_id: str) -> int:
    """Delete every public link to a vaccine record; returns how many."""
    links = await storage.share_links.list_by_vaccine(vaccine_id)
    for link in links:
        await storage.share_links.delete(link.token)
    return len(links)


async def _list_vaccines(req: AuthorizedRequest) -> ApiResponse:
    records = await req.storage.vaccines.list_by_profile(req.outcome.profile_id)
    records.sort(key=lambda v: (v.date or "", v.created_at))
    return ApiResponse.json([v.to_item() for v in records])


async def _create_vaccine(req: AuthorizedRequest) -> ApiResponse:
    body: CreateVaccineBody = req.body
    vaccine = Vaccine(profile_id=req.outcome.profile_id, **body.model_dump(exclude_none=True))
    await req.storage.vaccines.put(vaccine)

    req.audit(
        AuditAction.CREATE_VACCINE,
        vaccine.profile_id,
        {
            "actorEmail": req.user.email,
            "vaccineId": vaccine.vaccine_id,
            "vaccineName": vaccine.vaccine_name,
        },
    )
    return ApiResponse.json(vaccine, 201)


async def _update_vaccine(req: AuthorizedRequest) -> ApiResponse:
    body: UpdateVaccineBody = req.body
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise GuardError(ErrorCode.BAD_REQUEST, "No fields to update")

    vaccine = await _load_vaccine(req)
    updated = vaccine.model_copy(update={**changes, "updated_at": utc_now()})
    await req.storage.vaccines.put(updated)

    req.audit(
        AuditAction.UPDATE_VACCINE,
        updated.profile_id,
        {"actorEmail": req.user.email, "vaccineId": updated.vaccine_id, "fields": sorted(changes)},
    )
    return ApiResponse.json(updated)


async def _delete_vaccine(req: AuthorizedRequest) -> ApiResponse:
    vaccine = await _load_vaccine(req)
    await drop_share_links(req.storage, vaccine.vaccine_id)
    await req.storage.vaccines.delete(vaccine.vaccine_id)

    req.audit(
        AuditAction.DELETE_VACCINE,
        vaccine.profile_id,
        {
            "actorEmail": req.user.email,
            "vaccineId": vaccine.vaccine_id,
            "vaccineName": vaccine.vaccine_name,
        },
    )
    return ApiResponse.no_content()


list_vaccines = create_handler(
    handler=_list_vaccines,
    schema=EmptyBody,
    access=require_profile_role(Role.VIEWER),
)

create_vaccine = create_handler(
    handler=_create_vaccine,
    schema=CreateVaccineBody,
    access=require_profile_role(Role.OWNER),
)

update_vaccine = create_handler(
    handler=_update_vaccine,
    schema=UpdateVaccineBody,
    access=require_profile_role(Role.OWNER),
)

delete_vaccine = create_handler(
    handler=_delete_vaccine,
    schema=EmptyBody,
    access=require_profile_role(Role.OWNER),
)
