"""
Compass: a career change navigator.

    intake (default)   collects seeker_name, current_role, target_industry;
                       pre-transfer writes seeker_profile
    self_assessment    record_assessment tool merges one dimension per call
                       into assessment_state; post-transfer scores readiness
                       and writes assessment_results
    transition_plan    one-shot Compass Report built from both records
    coach              ongoing Q&A with the knowledge base
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import math

import structlog

from crewflow.domain.context.context_store import ContextScope, ScopedContext
from crewflow.domain.crew.capabilities import (
    ContextBuilder, ContextParams, DefaultContextBuilder, PostTransferRule, PreTransferRule, TransferOutcome
)
from crewflow.domain.models.crew import CrewDefinition, KnowledgeBaseConfig, ToolDefinition
from crewflow.domain.models.fields import FieldDefinition, is_empty_value

logger = structlog.get_logger(__name__)

DIMENSIONS = ["transferable_skills", "gaps", "motivation"]

DIMENSION_LABELS = {
    "transferable_skills": "Transferable Skills",
    "gaps": "Skill Gaps",
    "motivation": "Motivation & Goals"
}

DIMENSION_PROMPTS = {
    "transferable_skills": "What skills, experiences, or strengths from your current role could carry over to your new direction?",
    "gaps": "What skills, credentials, or experience would you need to acquire for this transition?",
    "motivation": "Why do you want to make this change, and what would success look like to you?"
}

INTAKE_FIELDS = (
    FieldDefinition(name="seeker_name", description="The user's first name or preferred name"),
    FieldDefinition(
        name="current_role",
        description="What they do now: job title, profession, or general situation (e.g. 'teacher')"
    ),
    FieldDefinition(
        name="target_industry",
        description="The industry or field they want to move into, e.g. tech, finance, healthcare"
    ),
)


def readiness(scores: Dict[str, float]) -> Dict[str, Any]:
    """Average of the dimension scores, rounded half up to one decimal, and its level"""

    values = [float(v) for v in scores.values()]
    average = sum(values) / len(values) if values else 5.0
    score = math.floor(average * 10 + 0.5) / 10

    if score >= 7.5:
        level = "strong"
    elif score >= 5:
        level = "moderate"
    else:
        level = "challenging"
    return {"readiness_score": score, "readiness_level": level}


async def _profile(context: ScopedContext, fields: Dict[str, Any]) -> Dict[str, Any]:
    profile = await context.read(ContextScope.USER, "seeker_profile") or {}
    return {
        "seeker_name": profile.get("seeker_name") or fields.get("seeker_name"),
        "current_role": profile.get("current_role") or fields.get("current_role"),
        "target_industry": profile.get("target_industry") or fields.get("target_industry")
    }


class IntakeComplete(PreTransferRule):
    """Save the seeker profile once all three intake fields are known"""

    async def should_transfer(self, collected_fields: Dict[str, Any], context: ScopedContext) -> TransferOutcome:
        if any(is_empty_value(collected_fields.get(f.name)) for f in INTAKE_FIELDS):
            return False

        await context.write(ContextScope.USER, "seeker_profile", {
            "seeker_name": collected_fields["seeker_name"],
            "current_role": collected_fields["current_role"],
            "target_industry": collected_fields["target_industry"],
            "profiled_at": datetime.now(timezone.utc).isoformat()
        })
        logger.info("Seeker profile saved", seeker=collected_fields["seeker_name"])
        return True


class IntakeContext(ContextBuilder):

    async def build(self, params: ContextParams, context: ScopedContext) -> Dict[str, Any]:
        base = await DefaultContextBuilder().build(params, context)
        fields = params.collected_fields
        missing = [f for f in INTAKE_FIELDS if is_empty_value(fields.get(f.name))]
        return {
            **base,
            "role": "Welcome and profile collection",
            "fields_already_collected": [f"{f.name}: {fields[f.name]}" for f in INTAKE_FIELDS if f not in missing],
            "fields_still_needed": [f"{f.name}: {f.description}" for f in missing],
            "instruction": (
                f"Still need: {', '.join(f.name for f in missing)}. Ask naturally, one at a time."
                if missing else "All fields collected. System will transition automatically."
            )
        }


async def record_assessment(args: Dict[str, Any], ctx) -> Dict[str, Any]:
    """Tool handler: store one assessed dimension"""

    dimension = args.get("dimension")
    if dimension not in DIMENSIONS:
        raise ValueError(f"Unknown dimension: {dimension}")
    score = float(args["strength_score"])
    if not 1 <= score <= 10:
        raise ValueError("strength_score must be between 1 and 10")

    state = await ctx.context.merge(ContextScope.USER, "assessment_state", {
        dimension: {"score": score, "findings": args.get("findings", "")}
    })
    logger.info("Assessment dimension recorded", dimension=dimension, score=score)

    remaining = [d for d in DIMENSIONS if d not in state]
    if not remaining:
        return {"status": "all_complete", "message": "All 3 dimensions recorded. The assessment is complete."}
    return {
        "status": "recorded",
        "next_dimension": remaining[0],
        "next_question": DIMENSION_PROMPTS[remaining[0]],
        "remaining_count": len(remaining)
    }


class AssessmentComplete(PostTransferRule):
    """Score readiness once every dimension has been recorded"""

    async def should_transfer(
        self,
        collected_fields: Dict[str, Any],
        context: ScopedContext,
        response: str
    ) -> TransferOutcome:
        state = await context.read(ContextScope.USER, "assessment_state") or {}
        if any(d not in state for d in DIMENSIONS):
            return False

        scores = {d: state[d]["score"] for d in DIMENSIONS}
        result = readiness(scores)
        await context.write(ContextScope.USER, "assessment_results", {
            "completed": True,
            "dimensions": {d: state[d].get("findings", "") for d in DIMENSIONS},
            "scores": scores,
            **result,
            "completed_at": datetime.now(timezone.utc).isoformat()
        })
        logger.info("Assessment complete", **result)
        return True


class AssessmentContext(ContextBuilder):

    async def build(self, params: ContextParams, context: ScopedContext) -> Dict[str, Any]:
        base = await DefaultContextBuilder().build(params, context)
        state = await context.read(ContextScope.USER, "assessment_state") or {}
        remaining = [d for d in DIMENSIONS if d not in state]
        current: Optional[str] = remaining[0] if remaining else None

        return {
            **base,
            **(await _profile(context, params.collected_fields)),
            "role": "Career self-assessment guide",
            "current_dimension": current,
            "current_dimension_label": DIMENSION_LABELS.get(current) if current else None,
            "current_dimension_question": DIMENSION_PROMPTS.get(current) if current else None,
            "completed_dimensions": [
                {"name": d, "label": DIMENSION_LABELS[d], "score": state[d]["score"]}
                for d in DIMENSIONS if d in state
            ],
            "remaining_count": len(remaining),
            "instruction": (
                f'Explore the "{DIMENSION_LABELS[current]}" dimension. After the user responds, call record_assessment.'
                if current else "All dimensions recorded. Wrap up warmly, the Compass Report is on its way."
            )
        }


class ReportContext(ContextBuilder):
    """Profile and assessment results for the report and the coach"""

    def __init__(self, role: str, instruction: str):
        self.role = role
        self.instruction = instruction

    async def build(self, params: ContextParams, context: ScopedContext) -> Dict[str, Any]:
        base = await DefaultContextBuilder().build(params, context)
        profile = await _profile(context, params.collected_fields)
        results = await context.read(ContextScope.USER, "assessment_results")

        assessment = None
        if results:
            assessment = {
                **results.get("dimensions", {}),
                "scores": results.get("scores"),
                "readiness_score": results.get("readiness_score"),
                "readiness_level": results.get("readiness_level")
            }

        return {
            **base,
            **profile,
            "role": self.role,
            "assessment": assessment,
            "instruction": self.instruction
        }


RECORD_ASSESSMENT = ToolDefinition(
    name="record_assessment",
    description="Record the self-assessment for one dimension. Call after the user has shared their thoughts.",
    parameters={
        "type": "object",
        "properties": {
            "dimension": {"type": "string", "enum": DIMENSIONS},
            "findings": {"type": "string", "description": "A 2-3 sentence summary of what the user shared"},
            "strength_score": {"type": "number", "minimum": 1, "maximum": 10}
        },
        "required": ["dimension", "findings", "strength_score"]
    },
    handler=record_assessment
)


def get_crews() -> List[CrewDefinition]:
    return [
        CrewDefinition(
            name="intake",
            display_name="Compass - Navigator",
            description="Welcome and initial profile collection",
            is_default=True,
            fields_to_collect=INTAKE_FIELDS,
            transition_to="self_assessment",
            guidance=(
                "You are Compass, a warm, sharp career change navigator. Introduce Compass and collect "
                "the user's name, their current role, and the direction they want to move toward. "
                "Ask for one thing at a time, 2-3 sentences per message, no advice yet."
            ),
            model="gpt-5-chat-latest",
            max_tokens=512,
            pre_transfer=IntakeComplete(),
            context_builder=IntakeContext()
        ),
        CrewDefinition(
            name="self_assessment",
            display_name="Self Assessment",
            description="Structured 3-dimension career change self-assessment",
            transition_to="transition_plan",
            guidance=(
                "You are Compass, conducting a focused career change self-assessment. Work through "
                "transferable skills, skill gaps and motivation one at a time (see current_dimension). "
                "When you have enough, call record_assessment with a short summary and an honest 1-10 "
                "strength score. Never mention scores to the user."
            ),
            model="gpt-5-chat-latest",
            max_tokens=1024,
            tools=(RECORD_ASSESSMENT,),
            post_transfer=AssessmentComplete(),
            context_builder=AssessmentContext()
        ),
        CrewDefinition(
            name="transition_plan",
            display_name="Compass Report",
            description="Delivers the personalized career transition plan",
            one_shot=True,
            transition_to="coach",
            guidance=(
                "You are Compass, delivering the personalized Compass Report: strengths, gaps with 2-3 "
                "concrete next steps, a readiness check matching readiness_level, and why the move makes "
                "sense. End with an invitation to keep asking questions."
            ),
            model="gpt-5-chat-latest",
            max_tokens=2048,
            context_builder=ReportContext(
                role="Compass Report delivery",
                instruction="Deliver the full Compass Report in one message using the assessment data."
            )
        ),
        CrewDefinition(
            name="coach",
            display_name="Career Coach",
            description="Personalized career coaching with knowledge base access",
            guidance=(
                "You are Compass, now the user's ongoing career coach. Personalize every answer to their "
                "role, target industry and assessment; use the knowledge base for specifics."
            ),
            model="gpt-5-chat-latest",
            max_tokens=2048,
            knowledge_base=KnowledgeBaseConfig(enabled=True, sources=["Compass Career KB"]),
            context_builder=ReportContext(
                role="Personalized career coach with knowledge base access",
                instruction="Use the knowledge base and the profile; never ask for what you already know."
            )
        ),
    ]
