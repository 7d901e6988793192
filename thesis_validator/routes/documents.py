from __future__ import annotations

import base64
import hashlib

from fastapi import APIRouter, File, Form, Query, Request, UploadFile
from starlette.concurrency import run_in_threadpool

from thesis_validator.document_parser import detect_format
from thesis_validator.errors import ValidationFailed
from thesis_validator.pipelines.documents import MAX_DOCUMENT_BYTES
from thesis_validator.routes._deps import (
    authorize,
    delete_work_item,
    get_work_item,
    list_work_items,
    ok,
    submit_work_item,
    work_item_stats,
)

router = APIRouter(prefix="/api/v1/engagements/{engagement_id}", tags=["documents"])

KIND = "document"
STATUS_PATTERN = "^(pending|running|completed|failed)$"


def _summary(item_dict: dict) -> dict:
    # The raw upload stays in the stored parameters; responses only carry its metadata.
    params = dict(item_dict.get("parameters") or {})
    params.pop("content_base64", None)
    return {**item_dict, "parameters": params}


@router.post("/documents")
async def upload_document(
    engagement_id: str,
    request: Request,
    file: UploadFile = File(...),
    hypothesis_ids: str = Form(default=""),
    source_title: str | None = Form(default=None),
    max_evidence: int = Form(default=25, ge=1, le=200),
):
    subject = await run_in_threadpool(authorize, request, engagement_id, minimum="editor")
    file_bytes = await file.read()
    if not file_bytes:
        raise ValidationFailed("uploaded file is empty")
    if len(file_bytes) > MAX_DOCUMENT_BYTES:
        raise ValidationFailed("uploaded file exceeds the 10 MB limit", code="DOC_TOO_LARGE")
    filename = file.filename or "upload.bin"
    parameters = {
        "filename": filename,
        "content_base64": base64.b64encode(file_bytes).decode("ascii"),
        "mime_type": file.content_type,
        "size_bytes": len(file_bytes),
        "format": detect_format(filename, file.content_type),
        "hypothesis_ids": [x.strip() for x in hypothesis_ids.split(",") if x.strip()],
        "source_title": source_title,
        "max_evidence": max_evidence,
    }
    response = await run_in_threadpool(
        submit_work_item,
        request,
        engagement_id=engagement_id,
        kind=KIND,
        parameters=parameters,
        present=_summary,
        subject=subject,
    )
    response.headers["x-content-sha256"] = hashlib.sha256(file_bytes).hexdigest()
    return response


@router.get("/documents")
def list_documents(
    engagement_id: str,
    request: Request,
    status: str | None = Query(default=None, pattern=STATUS_PATTERN),
    limit: int = Query(default=50, ge=1, le=200),
):
    body = list_work_items(request, engagement_id=engagement_id, kind=KIND, status=status, limit=limit)
    body["data"]["items"] = [_summary(x) for x in body["data"]["items"]]
    return body


@router.get("/documents/stats")
def document_stats(engagement_id: str, request: Request):
    return work_item_stats(request, engagement_id=engagement_id, kind=KIND)


@router.get("/documents/{document_id}")
def get_document(engagement_id: str, document_id: str, request: Request):
    item = get_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=document_id)
    return ok(request, _summary(item.to_dict()))


@router.delete("/documents/{document_id}")
def delete_document(engagement_id: str, document_id: str, request: Request):
    return delete_work_item(request, engagement_id=engagement_id, kind=KIND, item_id=document_id)
