from __future__ import annotations

from typing import Any

from thesis_validator.pipelines.base import PipelineContext, PipelineSpec

DEPTHS: tuple[str, ...] = ("quick", "standard", "deep")
VERDICTS: tuple[str, ...] = ("validated", "refuted", "inconclusive")
VALIDATED_THRESHOLD = 0.7
REFUTED_THRESHOLD = 0.3

_SEVERITY_WEIGHT = {"low": 0.05, "medium": 0.1, "high": 0.2}
_SENTIMENT_SIGN = {"supporting": 1.0, "neutral": 0.0, "contradicting": -1.0}

PARAMETERS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["thesis"],
    "properties": {
        "thesis": {"type": "string", "minLength": 10, "maxLength": 5000},
        "depth": {"type": "string", "enum": list(DEPTHS)},
        "focus_areas": {"type": "array", "items": {"type": "string"}},
        "include_comparables": {"type": "boolean"},
        "max_sources": {"type": "integer", "minimum": 1, "maximum": 100},
    },
    "additionalProperties": False,
}

RESULT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["verdict", "confidence", "key_findings", "risks", "recommendations"],
    "properties": {
        "verdict": {"type": "string", "enum": list(VERDICTS)},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
        "summary": {"type": "string"},
        "key_findings": {"type": "array", "items": {"type": "string"}},
        "risks": {"type": "array", "items": {"type": "string"}},
        "opportunities": {"type": "array", "items": {"type": "string"}},
        "recommendations": {"type": "array", "items": {"type": "string"}},
        "evidence_considered": {"type": "integer", "minimum": 0},
        "hypotheses_scored": {"type": "array"},
        "metrics": {"type": "object"},
    },
}


def verdict_for(confidence: float) -> str:
    if confidence >= VALIDATED_THRESHOLD:
        return "validated"
    if confidence <= REFUTED_THRESHOLD:
        return "refuted"
    return "inconclusive"


def score_hypothesis(hypothesis: dict[str, Any], evidence: list[dict[str, Any]]) -> float:
    """Blend the stated confidence with credibility-weighted evidence sentiment."""
    prior = hypothesis.get("confidence")
    prior_value = float(prior) if prior is not None else 0.5
    if not evidence:
        return round(prior_value, 4)
    weight = sum(float(e.get("credibility") or 0.5) for e in evidence)
    signal = sum(float(e.get("credibility") or 0.5) * _SENTIMENT_SIGN.get(str(e.get("sentiment")), 0.0) for e in evidence)
    evidence_value = 0.5 + 0.5 * (signal / weight if weight else 0.0)
    return round(max(0.0, min(1.0, 0.4 * prior_value + 0.6 * evidence_value)), 4)


def run(ctx: PipelineContext) -> dict[str, Any]:
    params = ctx.parameters
    depth = str(params.get("depth", "standard"))
    max_sources = int(params.get("max_sources", 20))
    focus_areas = [str(f).lower() for f in params.get("focus_areas") or []]
    evidence_repo = ctx.resources.evidence

    ctx.set_progress(5, message="gathering evidence", stage="gather_evidence")
    evidence = evidence_repo.list_evidence(engagement_id=ctx.engagement_id)
    if focus_areas:
        focused = [e for e in evidence if any(f in str(e["content"]).lower() for f in focus_areas)]
        rest = [e for e in evidence if e not in focused]
        evidence = focused + rest
    evidence = sorted(evidence, key=lambda e: -float(e.get("credibility") or 0.0))[:max_sources]
    evidence_by_id = {str(e["id"]): e for e in evidence}
    ctx.emit(
        f"considering {len(evidence)} evidence items at {depth} depth",
        stage="gather_evidence",
        data={"evidence_count": len(evidence)},
    )

    ctx.set_progress(25, message="scoring hypotheses", stage="score_hypotheses")
    hypotheses = evidence_repo.list_hypotheses(engagement_id=ctx.engagement_id)
    linked: dict[str, list[dict[str, Any]]] = {}
    for evidence_id, hypothesis_id in evidence_repo.list_links(engagement_id=ctx.engagement_id):
        if evidence_id in evidence_by_id:
            linked.setdefault(hypothesis_id, []).append(evidence_by_id[evidence_id])
    scored: list[dict[str, Any]] = []
    for idx, hypothesis in enumerate(hypotheses, start=1):
        support = linked.get(str(hypothesis["id"]), [])
        scored.append(
            {
                "hypothesis_id": hypothesis["id"],
                "statement": hypothesis["statement"],
                "score": score_hypothesis(hypothesis, support),
                "evidence_count": len(support),
            }
        )
        ctx.set_progress(
            25 + (45 * idx) // len(hypotheses),
            message=f"scored hypothesis {idx}/{len(hypotheses)}",
            stage="score_hypotheses",
        )

    ctx.set_progress(80, message="weighing contradictions", stage="weigh_contradictions")
    contradictions = ctx.resources.contradictions.list(engagement_id=ctx.engagement_id)
    open_items = [c for c in contradictions if c["status"] in {"unresolved", "critical"}]
    penalty = sum(_SEVERITY_WEIGHT.get(str(c["severity"]), 0.1) * (2 if c["status"] == "critical" else 1) for c in open_items)
    penalty = min(0.4, penalty)

    ctx.set_progress(90, message="drawing conclusions", stage="conclude")
    if scored:
        base = sum(s["score"] for s in scored) / len(scored)
    else:
        signal = [_SENTIMENT_SIGN.get(str(e.get("sentiment")), 0.0) for e in evidence]
        base = 0.5 + 0.5 * (sum(signal) / len(signal)) if signal else 0.5
    confidence = round(max(0.0, min(1.0, base - penalty)), 4)
    verdict = verdict_for(confidence)

    ranked = sorted(scored, key=lambda s: s["score"], reverse=True)
    key_findings = [f"{s['statement']} scores {s['score']:.2f} on {s['evidence_count']} evidence items" for s in ranked[:5]]
    if not key_findings:
        key_findings = [f"{len(evidence)} evidence items reviewed without linked hypotheses"]
    risks = [f"{c['severity']} contradiction: {c['description']}" for c in open_items[:5]]
    risks += [f"weak support for {s['statement']}" for s in ranked if s["score"] < 0.4][:3]
    opportunities = [
        str(e["content"]) for e in evidence if e.get("sentiment") == "supporting"
    ][:3]
    recommendations: list[str] = []
    if open_items:
        recommendations.append(f"resolve {len(open_items)} open contradictions before investment committee")
    uncovered = [s for s in scored if s["evidence_count"] == 0]
    if uncovered:
        recommendations.append(f"gather evidence for {len(uncovered)} hypotheses with no support")
    if len({e.get("source_type") for e in evidence}) < 3:
        recommendations.append("broaden source diversity with expert calls and filings")
    if params.get("include_comparables"):
        recommendations.append("benchmark the thesis against comparable transactions")
    if depth == "quick" and verdict == "inconclusive":
        recommendations.append("rerun at standard or deep depth")

    ctx.set_progress(95, message="recording metrics", stage="record_metrics")
    recorded = ctx.resources.metrics.calculate_and_record(ctx.engagement_id, source="research_run")

    summary = (
        f"Thesis {verdict} with confidence {confidence:.2f} after reviewing "
        f"{len(evidence)} evidence items, {len(scored)} hypotheses and {len(open_items)} open contradictions."
    )
    return {
        "verdict": verdict,
        "confidence": confidence,
        "summary": summary,
        "key_findings": key_findings,
        "risks": risks,
        "opportunities": opportunities,
        "recommendations": recommendations,
        "evidence_considered": len(evidence),
        "hypotheses_scored": scored,
        "metrics": {metric_type: row["value"] for metric_type, row in recorded.items()},
    }


SPEC = PipelineSpec(
    kind="research_run",
    description="Investigate a thesis across the engagement's evidence and reach a verdict.",
    parameters_schema=PARAMETERS_SCHEMA,
    result_schema=RESULT_SCHEMA,
    stages=("gather_evidence", "score_hypotheses", "weigh_contradictions", "conclude", "record_metrics", "done"),
    run=run,
)
