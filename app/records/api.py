from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy import select

from app.records.container import RecordServiceContainer, get_record_service_container
from app.records.errors import Forbidden, NotFound, RecordError, error_response
from app.records.models import Attachment
from app.records.schemas import (
    CheckForDuplicatesRequest,
    ExportRequest,
    ExportResponse,
    LinkRequest,
    RestoreDeletedRequest,
)
from app.records.select import SearchParams
from app.records.service import RecordService

router = APIRouter(prefix="/api/v1", tags=["records"])


def _service(container: RecordServiceContainer, entity_type: str) -> RecordService:
    service = container.get(entity_type)
    if not container.entity_manager.metadata.get(["scopes", service.entity_type, "api"], False):
        raise NotFound(f"Entity type '{entity_type}' is not available.")
    return service


def _failed(request: Request, exc: HTTPException, operation: str) -> JSONResponse:
    details = exc.detail
    if isinstance(exc, RecordError) and exc.body is not None:
        details = exc.body
    return error_response(
        request,
        status_code=exc.status_code,
        code=f"record_{operation}_failed",
        message=str(exc.detail),
        details=details,
    )


@router.get("/Attachment/{attachment_id}/download", response_model=None)
def download_attachment(
    request: Request,
    attachment_id: str,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> Response:
    try:
        session = container.entity_manager.session
        attachment = session.scalar(
            select(Attachment).where(Attachment.id == attachment_id, Attachment.deleted_at.is_(None))
        )
        if attachment is None:
            raise NotFound("Attachment not found.")
        if not container.acl.is_admin() and attachment.created_by_id != container.acl.user_id:
            raise Forbidden("No access to the attachment.")

        contents = attachment.contents
        if contents is None and attachment.source_id:
            contents = session.scalar(select(Attachment.contents).where(Attachment.id == attachment.source_id))
        return Response(
            content=contents or b"",
            media_type=attachment.type or "application/octet-stream",
            headers={"Content-Disposition": f'attachment; filename="{attachment.name or attachment.id}"'},
        )
    except HTTPException as exc:
        return _failed(request, exc, "download")


@router.get("/{entity_type}", response_model=None)
def list_records(
    request: Request,
    entity_type: str,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        service = _service(container, entity_type)
        search_params = SearchParams.from_raw(dict(request.query_params))
        collection = service.find(search_params)
        return collection.to_api_output(service.prepare_search_params_select(search_params).select)
    except HTTPException as exc:
        return _failed(request, exc, "list")


@router.post("/{entity_type}", response_model=None, status_code=status.HTTP_201_CREATED)
def create_record(
    request: Request,
    entity_type: str,
    data: dict[str, Any] = Body(...),
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        return _service(container, entity_type).create(data).get_value_map()
    except HTTPException as exc:
        return _failed(request, exc, "create")


@router.post("/{entity_type}/action/restoreDeleted", response_model=None)
def restore_deleted(
    request: Request,
    entity_type: str,
    dto: RestoreDeletedRequest,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        _service(container, entity_type).restore_deleted(dto.id)
        return {"status": "restored"}
    except HTTPException as exc:
        return _failed(request, exc, "restore_deleted")


@router.post("/{entity_type}/action/export", response_model=ExportResponse)
def export_records(
    request: Request,
    entity_type: str,
    dto: ExportRequest,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> ExportResponse | JSONResponse:
    try:
        attachment_id = _service(container, entity_type).export(dto.model_dump())
        return ExportResponse(id=attachment_id)
    except HTTPException as exc:
        return _failed(request, exc, "export")


@router.get("/{entity_type}/action/getDuplicateAttributes", response_model=None)
def get_duplicate_attributes(
    request: Request,
    entity_type: str,
    id: str = Query(default=""),
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        return _service(container, entity_type).get_duplicate_attributes(id)
    except HTTPException as exc:
        return _failed(request, exc, "get_duplicate_attributes")


@router.post("/{entity_type}/action/checkForDuplicates", response_model=None)
def check_for_duplicates(
    request: Request,
    entity_type: str,
    dto: CheckForDuplicatesRequest,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        duplicates = _service(container, entity_type).check_for_duplicates(dto.attributes, dto.id)
        return {"total": len(duplicates), "list": duplicates}
    except HTTPException as exc:
        return _failed(request, exc, "check_for_duplicates")


@router.get("/{entity_type}/{record_id}", response_model=None)
def read_record(
    request: Request,
    entity_type: str,
    record_id: str,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        return _service(container, entity_type).read(record_id).get_value_map()
    except HTTPException as exc:
        return _failed(request, exc, "read")


@router.api_route("/{entity_type}/{record_id}", methods=["PUT", "PATCH"], response_model=None)
def update_record(
    request: Request,
    entity_type: str,
    record_id: str,
    data: dict[str, Any] = Body(...),
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        return _service(container, entity_type).update(record_id, data).get_value_map()
    except HTTPException as exc:
        return _failed(request, exc, "update")


@router.delete("/{entity_type}/{record_id}", response_model=None)
def delete_record(
    request: Request,
    entity_type: str,
    record_id: str,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        _service(container, entity_type).delete(record_id)
        return {"status": "deleted"}
    except HTTPException as exc:
        return _failed(request, exc, "delete")


@router.put("/{entity_type}/{record_id}/subscription", response_model=None)
def follow_record(
    request: Request,
    entity_type: str,
    record_id: str,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        _service(container, entity_type).follow(record_id)
        return {"status": "followed"}
    except HTTPException as exc:
        return _failed(request, exc, "follow")


@router.delete("/{entity_type}/{record_id}/subscription", response_model=None)
def unfollow_record(
    request: Request,
    entity_type: str,
    record_id: str,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        _service(container, entity_type).unfollow(record_id)
        return {"status": "unfollowed"}
    except HTTPException as exc:
        return _failed(request, exc, "unfollow")


@router.get("/{entity_type}/{record_id}/{link}", response_model=None)
def list_linked_records(
    request: Request,
    entity_type: str,
    record_id: str,
    link: str,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        search_params = SearchParams.from_raw(dict(request.query_params))
        service = _service(container, entity_type)
        collection = service.find_linked(record_id, link, search_params)
        return collection.to_api_output(service.prepare_link_search_params(search_params, link).select)
    except HTTPException as exc:
        return _failed(request, exc, "list_linked")


@router.post("/{entity_type}/{record_id}/{link}", response_model=None)
def link_records(
    request: Request,
    entity_type: str,
    record_id: str,
    link: str,
    dto: LinkRequest,
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        service = _service(container, entity_type)
        if dto.mass_relate:
            return {"result": service.mass_link(record_id, link, dto.where, dto.select_data)}

        foreign_ids = dto.foreign_ids()
        if not foreign_ids:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No foreign id passed")
        for foreign_id in foreign_ids:
            service.link(record_id, link, foreign_id)
        return {"result": True}
    except HTTPException as exc:
        return _failed(request, exc, "link")


@router.delete("/{entity_type}/{record_id}/{link}", response_model=None)
def unlink_records(
    request: Request,
    entity_type: str,
    record_id: str,
    link: str,
    id: str | None = Query(default=None),
    dto: LinkRequest | None = Body(default=None),
    container: RecordServiceContainer = Depends(get_record_service_container),
) -> dict[str, Any] | JSONResponse:
    try:
        service = _service(container, entity_type)
        foreign_ids = dto.foreign_ids() if dto is not None else []
        if id and id not in foreign_ids:
            foreign_ids.append(id)
        if not foreign_ids:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No foreign id passed")
        for foreign_id in foreign_ids:
            service.unlink(record_id, link, foreign_id)
        return {"result": True}
    except HTTPException as exc:
        return _failed(request, exc, "unlink")
