from __future__ import annotations

import hashlib
import re
import uuid
from typing import Any

from thesis_validator.models import utcnow_iso
from thesis_validator.pipelines.base import PipelineContext, PipelineSpec

INSIGHT_TYPES: tuple[str, ...] = (
    "key_point",
    "data_point",
    "market_insight",
    "competitive_intel",
    "risk_factor",
    "opportunity",
    "contradiction",
    "validation",
    "caveat",
    "recommendation",
)

# First match wins; key_point is the fallback for substantive statements.
_INSIGHT_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("contradiction", ("contrary to", "actually", "not true", "disagree", "contradict", "misconception")),
    ("risk_factor", ("risk", "concern", "threat", "headwind", "worr", "exposure")),
    ("opportunity", ("opportunity", "upside", "untapped", "whitespace", "could expand")),
    ("competitive_intel", ("competitor", "rival", "incumbent", "market leader", "switching")),
    ("recommendation", ("recommend", "should ", "suggest", "advise")),
    ("caveat", ("however", "although", "depends on", "caveat", "unless")),
    ("validation", ("confirm", "consistent with", "agree", "validate", "in line with")),
    ("market_insight", ("market", "industry", "demand", "customers", "segment", "trend")),
)
_FIGURE = re.compile(r"\d+(?:[.,]\d+)?\s*(?:%|percent|x\b|m\b|bn\b|million|billion)|\$\s?\d")
_ACTION_PHRASES = ("follow up", "follow-up", "send over", "we will", "we'll", "next step", "share the", "circle back")
_SPEAKER_TURN = re.compile(r"^\s*(?:\[[^\]]*\]\s*)?([A-Z][\w .'-]{0,40}?)\s*:\s*(.+)$")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_MIN_INSIGHT_CHARS = 30

PARAMETERS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["transcripts"],
    "properties": {
        "transcripts": {
            "type": "array",
            "minItems": 1,
            "maxItems": 50,
            "items": {
                "type": "object",
                "required": ["text"],
                "properties": {
                    "text": {"type": "string", "minLength": 1},
                    "filename": {"type": ["string", "null"]},
                    "call_date": {"type": ["string", "null"]},
                    "interviewee_name": {"type": ["string", "null"]},
                    "interviewee_title": {"type": ["string", "null"]},
                    "speaker_labels": {"type": "object", "additionalProperties": {"type": "string"}},
                },
                "additionalProperties": False,
            },
        },
        "focus_areas": {"type": "array", "items": {"type": "string"}},
        "hypothesis_ids": {"type": "array", "items": {"type": "string"}},
    },
    "additionalProperties": False,
}

RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["transcripts_processed", "duplicates_skipped", "calls", "insight_counts", "action_item_count"],
    "properties": {
        "transcripts_processed": {"type": "integer", "minimum": 0},
        "duplicates_skipped": {"type": "integer", "minimum": 0},
        "calls": {"type": "array"},
        "insight_counts": {
            "type": "object",
            "properties": {t: {"type": "integer", "minimum": 0} for t in INSIGHT_TYPES},
        },
        "action_item_count": {"type": "integer", "minimum": 0},
        "evidence_created": {"type": "integer", "minimum": 0},
    },
}


def transcript_hash(text: str) -> str:
    normalized = " ".join(text.lower().split())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def parse_turns(text: str, speaker_labels: dict[str, str] | None = None) -> list[dict[str, str]]:
    """Split a transcript into speaker turns; unlabelled lines continue the previous turn."""
    labels = speaker_labels or {}
    turns: list[dict[str, str]] = []
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _SPEAKER_TURN.match(line)
        if match:
            speaker = match.group(1).strip()
            turns.append({"speaker": labels.get(speaker, speaker), "text": match.group(2).strip()})
        elif turns:
            turns[-1]["text"] = f"{turns[-1]['text']} {line}"
        else:
            turns.append({"speaker": "unknown", "text": line})
    return turns


def classify_statement(sentence: str) -> str:
    lower = sentence.lower()
    for insight_type, terms in _INSIGHT_RULES:
        if any(term in lower for term in terms):
            return insight_type
    if _FIGURE.search(lower):
        return "data_point"
    return "key_point"


def extract_insights(turns: list[dict[str, str]], *, focus_areas: list[str]) -> list[dict[str, Any]]:
    focus = [f.lower() for f in focus_areas if f.strip()]
    insights: list[dict[str, Any]] = []
    for turn in turns:
        for sentence in _SENTENCE_SPLIT.split(turn["text"]):
            sentence = sentence.strip()
            if len(sentence) < _MIN_INSIGHT_CHARS or sentence.endswith("?"):
                continue
            lower = sentence.lower()
            insight_type = classify_statement(sentence)
            # Figures inside a generic market statement are more useful as data points.
            if insight_type == "market_insight" and _FIGURE.search(lower):
                insight_type = "data_point"
            matched_focus = [f for f in focus if f in lower]
            insights.append(
                {
                    "type": insight_type,
                    "content": sentence,
                    "speaker": turn["speaker"],
                    "focus_areas": matched_focus,
                    "confidence": 0.8 if matched_focus else 0.6,
                }
            )
    return insights


def extract_action_items(turns: list[dict[str, str]]) -> list[dict[str, str]]:
    items: list[dict[str, str]] = []
    for turn in turns:
        for sentence in _SENTENCE_SPLIT.split(turn["text"]):
            lower = sentence.lower()
            if any(phrase in lower for phrase in _ACTION_PHRASES):
                items.append({"owner": turn["speaker"], "description": sentence.strip()})
    return items


def _evidence_sentiment(insight_type: str) -> str:
    if insight_type in {"risk_factor", "contradiction", "caveat"}:
        return "contradicting"
    if insight_type in {"validation", "opportunity"}:
        return "supporting"
    return "neutral"


def run(ctx: PipelineContext) -> dict[str, Any]:
    params = ctx.parameters
    transcripts = list(params.get("transcripts") or [])
    focus_areas = [str(f) for f in params.get("focus_areas") or []]
    hypothesis_ids = [str(h) for h in params.get("hypothesis_ids") or []]
    total = len(transcripts)

    insight_counts = {t: 0 for t in INSIGHT_TYPES}
    calls: list[dict[str, Any]] = []
    duplicates = 0
    action_item_count = 0
    evidence_created = 0

    for idx, transcript in enumerate(transcripts, start=1):
        label = transcript.get("filename") or transcript.get("interviewee_name") or f"transcript {idx}"
        text = str(transcript["text"])
        digest = transcript_hash(text)

        ctx.emit(f"parsing {label} ({idx}/{total})", stage="parse", data={"index": idx})
        turns = parse_turns(text, transcript.get("speaker_labels"))

        insights = extract_insights(turns, focus_areas=focus_areas)
        ctx.emit(f"extracted {len(insights)} insights from {label}", stage="extract_insights")

        action_items = extract_action_items(turns)
        call = ctx.resources.expert_calls.create_if_new(
            call={
                "id": f"ec_{uuid.uuid4().hex[:12]}",
                "engagement_id": ctx.engagement_id,
                "batch_id": ctx.item.id,
                "transcript_hash": digest,
                "interviewee_name": transcript.get("interviewee_name"),
                "interviewee_title": transcript.get("interviewee_title"),
                "call_date": transcript.get("call_date"),
                "insights": insights,
                "action_items": action_items,
                "created_at": utcnow_iso(),
            }
        )
        if call is None:
            duplicates += 1
            ctx.emit(f"skipped duplicate transcript {label}", stage="attach_action_items")
            continue
        ctx.emit(f"attached {len(action_items)} action items to {label}", stage="attach_action_items")

        for insight in insights:
            insight_counts[insight["type"]] += 1
            if insight["type"] == "key_point":
                continue
            stored = ctx.resources.evidence.add_evidence(
                evidence={
                    "id": f"ev_{uuid.uuid4().hex[:12]}",
                    "engagement_id": ctx.engagement_id,
                    "content": insight["content"],
                    "content_hash": transcript_hash(insight["content"]),
                    "source_type": "expert",
                    "source_title": transcript.get("interviewee_name") or label,
                    "credibility": insight["confidence"],
                    "sentiment": _evidence_sentiment(insight["type"]),
                    "document_id": None,
                    "created_at": utcnow_iso(),
                },
                hypothesis_ids=hypothesis_ids,
            )
            if stored is not None:
                evidence_created += 1
        action_item_count += len(action_items)
        calls.append(
            {
                "call_id": call["id"],
                "label": label,
                "turns": len(turns),
                "insights": len(insights),
                "action_items": len(action_items),
            }
        )

    ctx.emit(
        f"processed {len(calls)} transcripts, skipped {duplicates} duplicates",
        stage="aggregate",
        data={"insight_counts": dict(insight_counts)},
    )
    return {
        "transcripts_processed": len(calls),
        "duplicates_skipped": duplicates,
        "calls": calls,
        "insight_counts": insight_counts,
        "action_item_count": action_item_count,
        "evidence_created": evidence_created,
    }


SPEC = PipelineSpec(
    kind="expert_call_batch",
    description="Extract typed insights and action items from expert call transcripts.",
    parameters_schema=PARAMETERS_SCHEMA,
    result_schema=RESULT_SCHEMA,
    stages=("parse", "extract_insights", "attach_action_items", "aggregate", "done"),
    run=run,
)
