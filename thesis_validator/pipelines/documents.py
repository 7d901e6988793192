from __future__ import annotations

import base64
import binascii
import hashlib
import re
import uuid
from typing import Any

from thesis_validator.document_parser import DOCUMENT_FORMATS, detect_format, extract_text, split_chunks
from thesis_validator.errors import PipelineFailure
from thesis_validator.models import utcnow_iso
from thesis_validator.pipelines.base import PipelineContext, PipelineSpec

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024

_CLAIM_TERMS = (
    "revenue",
    "margin",
    "growth",
    "market",
    "share",
    "customer",
    "churn",
    "pricing",
    "competitor",
    "demand",
    "ebitda",
    "retention",
    "risk",
)
_NEGATIVE_TERMS = ("decline", "decrease", "loss", "churn", "headwind", "weak", "risk", "fall", "shrink", "pressure")
_POSITIVE_TERMS = ("growth", "increase", "strong", "expand", "gain", "improve", "record", "accelerat")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

PARAMETERS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["filename", "content_base64"],
    "properties": {
        "filename": {"type": "string", "minLength": 1},
        "content_base64": {"type": "string"},
        "mime_type": {"type": ["string", "null"]},
        "size_bytes": {"type": "integer", "minimum": 0},
        "format": {"type": "string", "enum": list(DOCUMENT_FORMATS)},
        "hypothesis_ids": {"type": "array", "items": {"type": "string"}},
        "source_title": {"type": ["string", "null"]},
        "max_evidence": {"type": "integer", "minimum": 1, "maximum": 200},
    },
    "additionalProperties": False,
}

RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["format", "char_count", "chunk_count", "evidence_created", "evidence_ids"],
    "properties": {
        "format": {"type": "string", "enum": list(DOCUMENT_FORMATS)},
        "content_sha256": {"type": "string"},
        "char_count": {"type": "integer", "minimum": 0},
        "chunk_count": {"type": "integer", "minimum": 0},
        "candidates_found": {"type": "integer", "minimum": 0},
        "evidence_created": {"type": "integer", "minimum": 0},
        "duplicates_skipped": {"type": "integer", "minimum": 0},
        "evidence_ids": {"type": "array", "items": {"type": "string"}},
    },
}


def _content_hash(text: str) -> str:
    normalized = " ".join(text.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def _sentiment(sentence: str) -> str:
    lower = sentence.lower()
    if any(term in lower for term in _NEGATIVE_TERMS):
        return "contradicting"
    if any(term in lower for term in _POSITIVE_TERMS):
        return "supporting"
    return "neutral"


def extract_candidates(text: str, *, limit: int) -> list[dict[str, Any]]:
    candidates: list[dict[str, Any]] = []
    seen: set[str] = set()
    for chunk in split_chunks(text):
        for sentence in _SENTENCE_SPLIT.split(chunk.text.replace("\n", " ")):
            sentence = sentence.strip()
            if not 40 <= len(sentence) <= 600:
                continue
            lower = sentence.lower()
            has_figure = bool(re.search(r"\d", sentence))
            if not has_figure and not any(term in lower for term in _CLAIM_TERMS):
                continue
            digest = _content_hash(sentence)
            if digest in seen:
                continue
            seen.add(digest)
            candidates.append(
                {
                    "content": sentence,
                    "content_hash": digest,
                    "sentiment": _sentiment(sentence),
                    "credibility": 0.7 if has_figure else 0.6,
                    "chunk_index": chunk.index,
                }
            )
            if len(candidates) >= limit:
                return candidates
    return candidates


def run(ctx: PipelineContext) -> dict[str, Any]:
    params = ctx.parameters
    filename = str(params["filename"])

    ctx.emit(f"parsing {filename}", stage="parse")
    try:
        file_bytes = base64.b64decode(str(params["content_base64"]), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise PipelineFailure(f"document payload is not valid base64: {exc}", code="DOC_PAYLOAD_INVALID") from exc
    if len(file_bytes) > MAX_DOCUMENT_BYTES:
        raise PipelineFailure("document exceeds the 10 MB limit", code="DOC_TOO_LARGE")
    fmt = str(params.get("format") or detect_format(filename, params.get("mime_type")))
    content_sha256 = hashlib.sha256(file_bytes).hexdigest()
    ctx.emit(f"detected {fmt} document ({len(file_bytes)} bytes)", stage="parse", data={"format": fmt})

    ctx.emit("extracting text", stage="extract_text")
    text = extract_text(file_bytes, fmt=fmt)
    if not text.strip():
        raise PipelineFailure(f"no extractable text in {filename}", code="DOC_EMPTY")
    chunks = split_chunks(text)
    ctx.emit(
        f"extracted {len(text)} characters in {len(chunks)} chunks",
        stage="extract_text",
        data={"char_count": len(text), "chunk_count": len(chunks)},
    )

    ctx.emit("extracting evidence candidates", stage="extract_evidence")
    candidates = extract_candidates(text, limit=int(params.get("max_evidence", 25)))
    ctx.emit(f"found {len(candidates)} evidence candidates", stage="extract_evidence")

    ctx.emit("persisting evidence", stage="persist_evidence")
    hypothesis_ids = [str(x) for x in params.get("hypothesis_ids") or []]
    credibility_bonus = 0.05 if fmt in {"pdf", "docx"} else 0.0
    evidence_ids: list[str] = []
    duplicates = 0
    for candidate in candidates:
        stored = ctx.resources.evidence.add_evidence(
            evidence={
                "id": f"ev_{uuid.uuid4().hex[:12]}",
                "engagement_id": ctx.engagement_id,
                "content": candidate["content"],
                "content_hash": candidate["content_hash"],
                "source_type": "document",
                "source_title": params.get("source_title") or filename,
                "credibility": round(min(0.9, candidate["credibility"] + credibility_bonus), 2),
                "sentiment": candidate["sentiment"],
                "document_id": ctx.item.id,
                "created_at": utcnow_iso(),
            },
            hypothesis_ids=hypothesis_ids,
        )
        if stored is None:
            duplicates += 1
        else:
            evidence_ids.append(str(stored["id"]))
    ctx.emit(
        f"persisted {len(evidence_ids)} evidence items, skipped {duplicates} duplicates",
        stage="persist_evidence",
    )

    return {
        "format": fmt,
        "content_sha256": content_sha256,
        "char_count": len(text),
        "chunk_count": len(chunks),
        "candidates_found": len(candidates),
        "evidence_created": len(evidence_ids),
        "duplicates_skipped": duplicates,
        "evidence_ids": evidence_ids,
    }


SPEC = PipelineSpec(
    kind="document",
    description="Parse an uploaded document and turn its claims into evidence.",
    parameters_schema=PARAMETERS_SCHEMA,
    result_schema=RESULT_SCHEMA,
    stages=("parse", "extract_text", "extract_evidence", "persist_evidence", "done"),
    run=run,
)
