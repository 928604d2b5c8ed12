#!/usr/bin/env python3
# assessment_agent.py
"""
Fitness assessment agent: one StudentRecord in, one structured assessment out.

- Formats the student's measurements as a short free-text prompt.
- The system prompt names the two reference standards the model must compare against.
- Uses the OpenAI Agents SDK with a pydantic output_type so the reply is a JSON
  object matching AssessmentPayload; anything else is an AssessmentError.
- The SDK call is blocking, so the async entry point runs it in a worker thread.

Environment:
  OPENAI_API_KEY must be available (the same way your Agents SDK expects it).
  FITNESS_MODEL optionally overrides the default model.
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, List, Optional

# --- OpenAI Agents SDK ---
from agents import Agent, Runner  # type: ignore
from pydantic import BaseModel, Field, ValidationError

from fitness_data import StudentRecord

DEFAULT_MODEL = "gpt-5-mini"
CREDENTIAL_ENV = "OPENAI_API_KEY"


class AssessmentError(RuntimeError):
    """The assessment service returned nothing usable for a student."""


class MissingCredentialError(RuntimeError):
    """No API key configured; analysis cannot start."""


# ===================== Schema =====================

class AssessmentPayload(BaseModel):
    """What the model must return."""

    summary: str = Field(description="Professional summary of the student's physical condition.")
    bmi_category: str = Field(description="BMI status, e.g. normal, overweight.")
    fitness_level: str = Field(description="Overall level: excellent, good, pass or fail.")
    comparison_macau: str = Field(description="Estimated percentile against the 2020 Macau fitness report.")
    comparison_china: str = Field(description="Grade under the 2014 national student physical health standard.")
    ranking_score: float = Field(ge=0, le=100, description="Composite score from 0 to 100.")
    exercise_suggestions: List[str] = Field(description="Exercise prescription.")
    nutrition_suggestions: List[str] = Field(description="Dietary advice.")
    strengths: List[str]
    weaknesses: List[str]


class AssessmentResult(AssessmentPayload):
    """An AssessmentPayload tied to the StudentRecord.id it was produced for."""

    model_config = {"frozen": True}

    student_id: str


# ===================== Agent =====================

SYSTEM_PROMPT = """
You are a senior dietitian and exercise scientist assessing school students' physical fitness.
Base the assessment on:
1. The 2014 Chinese National Student Physical Health Standard
2. The 2020 Macau physical fitness monitoring report

Rules:
- Be fast and precise; judge each measurement against the student's age and gender norms.
- Reply with a JSON object only, including the assessment summary, exercise prescription,
  dietary advice and a composite ranking_score between 0 and 100.
- Missing measurements are recorded as 0; say so instead of guessing.
""".strip()


def require_credential() -> str:
    key = os.environ.get(CREDENTIAL_ENV, "").strip()
    if not key:
        raise MissingCredentialError(
            f"{CREDENTIAL_ENV} is not set. Add it to your environment or .env file before running analysis."
        )
    return key


def make_assessment_agent(model: Optional[str] = None) -> Agent:
    return Agent(
        name="FitnessAssessor",
        instructions=SYSTEM_PROMPT,
        model=model or os.environ.get("FITNESS_MODEL") or DEFAULT_MODEL,
        output_type=AssessmentPayload,
    )


def _fmt(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def build_student_prompt(student: StudentRecord) -> str:
    return (
        f"{student.name}, {student.gender_label}, {_fmt(student.age)} years old, {student.grade}\n"
        f"Height: {_fmt(student.height)} cm, Weight: {_fmt(student.weight)} kg, BMI: {_fmt(student.bmi)}\n"
        f"Grip strength: {_fmt(student.handgrip)} kg, Sit-and-reach: {_fmt(student.sit_and_reach)} cm, "
        f"Standing long jump: {_fmt(student.standing_long_jump)} cm, "
        f"15m shuttle run: {_fmt(student.shuttle_run)}"
    )


def parse_assessment(output: Any, student_id: str) -> AssessmentResult:
    """
    Validate whatever the agent returned (model instance, dict or JSON text)
    against the fixed schema and attach the student back-reference.
    """
    if output is None or (isinstance(output, str) and not output.strip()):
        raise AssessmentError("Empty response")
    try:
        if isinstance(output, AssessmentPayload):
            payload = output
        elif isinstance(output, str):
            payload = AssessmentPayload.model_validate_json(output)
        else:
            payload = AssessmentPayload.model_validate(output)
    except ValidationError as e:
        raise AssessmentError(f"Response does not match the assessment schema: {e}") from e
    data = payload.model_dump()
    data["student_id"] = student_id
    return AssessmentResult(**data)


def _call_agent_in_thread(agent: Agent, user_prompt: str) -> Any:
    """
    Run Runner.run_sync from a worker thread or sync path where no loop exists.
    Ensures a loop is set in the current thread (needed on Windows).
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    result = Runner.run_sync(agent, user_prompt)
    return result.final_output


class AssessmentClient:
    """Callable used by BatchAnalyzer: `await client(record)` -> AssessmentResult."""

    def __init__(self, agent: Optional[Agent] = None, *, model: Optional[str] = None) -> None:
        self.agent = agent or make_assessment_agent(model)

    async def __call__(self, student: StudentRecord) -> AssessmentResult:
        output = await asyncio.to_thread(_call_agent_in_thread, self.agent, build_student_prompt(student))
        return parse_assessment(output, student.id)
