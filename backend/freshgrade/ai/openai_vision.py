"""OpenAI Vision grading client."""

from __future__ import annotations

import base64
import copy
import json
import logging
import math
import os
import time
from typing import Any, Protocol

import httpx
from pydantic import ValidationError as PydanticValidationError

from freshgrade.errors import OracleError
from freshgrade.schemas import CriterionScore, GradingResult, Rubric
from freshgrade.settings import settings

logger = logging.getLogger(__name__)

_PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
_JPEG_SIGNATURE = b"\xff\xd8\xff"

# Sums closer than this are treated as equal to the reported total.
_TOTAL_TOLERANCE = 1e-6


class SchemaBuildError(Exception):
    pass


class VisionGrader(Protocol):
    def grade(self, submission_image: bytes, solution_image: bytes, rubric: Rubric) -> GradingResult:
        """Score a submission image against a solution image and rubric."""


def _base_grading_schema() -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "criterionScores": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "id": {"type": "string"},
                        "earned": {"type": "number"},
                        "comment": {"type": "string"},
                    },
                },
            },
            "total": {"type": "number"},
            "overall": {"type": "string"},
        },
    }


def _ensure_strict_schema_node(node: object) -> None:
    if isinstance(node, list):
        for item in node:
            _ensure_strict_schema_node(item)
        return

    if not isinstance(node, dict):
        return

    if node.get("type") == "object":
        properties = node.get("properties")
        if not isinstance(properties, dict):
            properties = {}
            node["properties"] = properties
        node["additionalProperties"] = False
        node["required"] = list(properties.keys())

    properties = node.get("properties")
    if isinstance(properties, dict):
        for value in properties.values():
            _ensure_strict_schema_node(value)

    items = node.get("items")
    if items is not None:
        _ensure_strict_schema_node(items)


def validate_schema_strictness(schema: dict[str, Any]) -> None:
    def _walk(node: object, path: str) -> None:
        if isinstance(node, list):
            for idx, item in enumerate(node):
                _walk(item, f"{path}[{idx}]")
            return

        if not isinstance(node, dict):
            return

        if node.get("type") == "object":
            if node.get("additionalProperties") is not False:
                raise SchemaBuildError(f"Object at {path} missing additionalProperties=false")
            if not isinstance(node.get("required"), list):
                raise SchemaBuildError(f"Object at {path} missing required list")

        for key, value in node.items():
            _walk(value, f"{path}.{key}")

    _walk(schema, "schema")


def build_grading_response_schema() -> dict[str, Any]:
    schema = copy.deepcopy(_base_grading_schema())
    _ensure_strict_schema_node(schema)
    validate_schema_strictness(schema)
    return schema


def build_grading_prompt(rubric: Rubric) -> str:
    """Return the instruction block; identical rubrics always produce identical text."""
    lines = [
        "You are an expert grader. Grade the student submission image using the provided solution image and rubric criteria.",
        "For each criterion, provide the earned points and a brief comment.",
        "Rubric criteria:",
    ]
    for criterion in rubric.criteria:
        lines.append(f"- id: {criterion.id}, description: {criterion.description}, maxPoints: {_format_points(criterion.max_points)}")
    lines.extend(
        [
            "Respond ONLY with a single JSON object in the following format:",
            '{ "criterionScores":[{"id":"...", "earned":#, "comment":""}], "total":#, "overall":"" }',
            "Use only the criterion ids listed above. earned must be between 0 and that criterion's maxPoints.",
            "Do not include any extra text.",
        ]
    )
    return "\n".join(lines)


def _format_points(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


def _image_mime_type(image_bytes: bytes) -> str:
    if image_bytes.startswith(_JPEG_SIGNATURE):
        return "image/jpeg"
    return "image/png"


def _image_data_url(image_bytes: bytes) -> str:
    encoded = base64.b64encode(image_bytes).decode("utf-8")
    return f"data:{_image_mime_type(image_bytes)};base64,{encoded}"


def build_grading_request(
    model: str,
    prompt: str,
    submission_image: bytes,
    solution_image: bytes,
    schema: dict[str, object],
    max_output_tokens: int = 512,
) -> dict[str, object]:
    return {
        "model": model,
        "input": [
            {"role": "system", "content": [{"type": "input_text", "text": prompt}]},
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": "Submission image:"},
                    {"type": "input_image", "image_url": _image_data_url(submission_image)},
                    {"type": "input_text", "text": "Solution image:"},
                    {"type": "input_image", "image_url": _image_data_url(solution_image)},
                ],
            },
        ],
        "max_output_tokens": max_output_tokens,
        "text": {
            "format": {
                "type": "json_schema",
                "name": "grading_result",
                "strict": True,
                "schema": schema,
            }
        },
    }


def parse_grading_response(raw_text: str | None, rubric: Rubric) -> GradingResult:
    """Validate oracle output against the rubric.

    Unknown, duplicate or out-of-range criterion scores reject the whole response.
    A total that disagrees with the sum of earned points is kept as reported and
    recorded in ``GradingResult.warnings``.
    """
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise OracleError("Oracle response content is missing or empty")

    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise OracleError("Failed to parse oracle response as JSON", body=raw_text[:2000]) from exc

    problem = _shape_problem(payload)
    if problem:
        raise OracleError(f"Oracle response does not match GradingResult: {problem}", body=raw_text[:2000])

    try:
        result = GradingResult.model_validate(payload)
    except PydanticValidationError as exc:
        raise OracleError(f"Oracle response does not match GradingResult: {exc.error_count()} error(s)", body=raw_text[:2000]) from exc

    _check_criterion_scores(result.criterion_scores, rubric)

    earned_sum = result.earned_sum
    if not math.isclose(result.total, earned_sum, abs_tol=_TOTAL_TOLERANCE):
        warning = f"Reported total {result.total} does not equal sum of earned points {earned_sum}"
        result.warnings.append(warning)
        logger.warning(
            "grade/oracle total mismatch",
            extra={"stage": "validate_output", "reported_total": result.total, "earned_sum": earned_sum},
        )
    return result


def _is_number(value: object) -> bool:
    if not isinstance(value, (int, float)) or isinstance(value, bool):
        return False
    try:
        return math.isfinite(value)
    except OverflowError:
        return False


def _shape_problem(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return "expected a single JSON object"
    scores = payload.get("criterionScores")
    if not isinstance(scores, list):
        return "criterionScores missing or not an array"
    if not _is_number(payload.get("total")):
        return "total missing or not a number"
    if not isinstance(payload.get("overall"), str):
        return "overall missing or not a string"
    for idx, score in enumerate(scores):
        if not isinstance(score, dict):
            return f"criterionScores[{idx}] is not an object"
        if not isinstance(score.get("id"), str):
            return f"criterionScores[{idx}].id missing or not a string"
        if not _is_number(score.get("earned")):
            return f"criterionScores[{idx}].earned missing or not a number"
        if not isinstance(score.get("comment", ""), str):
            return f"criterionScores[{idx}].comment is not a string"
    return None


def _check_criterion_scores(scores: list[CriterionScore], rubric: Rubric) -> None:
    max_points = rubric.max_points_by_id
    seen: set[str] = set()
    for score in scores:
        if score.id not in max_points:
            raise OracleError(f"Invalid criterion id in oracle response: {score.id}")
        if score.id in seen:
            raise OracleError(f"Duplicate criterion id in oracle response: {score.id}")
        seen.add(score.id)
        if score.earned < 0 or score.earned > max_points[score.id]:
            raise OracleError(
                f"Earned points {score.earned} for criterion {score.id} outside 0..{_format_points(max_points[score.id])}"
            )


class OpenAIVisionGrader:
    def __init__(
        self,
        model: str | None = None,
        timeout_seconds: float | None = None,
        max_output_tokens: int | None = None,
        client: Any | None = None,
    ) -> None:
        self.model = model or settings.openai_model
        self._max_output_tokens = max_output_tokens or settings.openai_max_output_tokens
        if client is not None:
            self._client = client
            return

        api_key = os.getenv("OPENAI_API_KEY", "").strip()
        if not api_key:
            raise RuntimeError("OPENAI_API_KEY is not set")

        from openai import OpenAI

        self._client = OpenAI(api_key=api_key, timeout=timeout_seconds or settings.openai_timeout_seconds, max_retries=0)

    def _call_openai(self, request_payload: dict[str, object]) -> str | None:
        try:
            response = self._client.responses.create(**request_payload)
        except Exception as exc:
            status_code = getattr(exc, "status_code", None)
            if isinstance(exc, (httpx.TimeoutException, TimeoutError)) or type(exc).__name__ == "APITimeoutError":
                status_code = 504
            response_obj = getattr(exc, "response", None)
            body_text = ""
            if response_obj is not None:
                body_text = getattr(response_obj, "text", "") or ""
            if not body_text:
                body_text = str(exc)
            raise OracleError(f"OpenAI request failed: {exc}", status_code=status_code, body=body_text[:2000]) from exc
        return getattr(response, "output_text", None)

    def grade(self, submission_image: bytes, solution_image: bytes, rubric: Rubric) -> GradingResult:
        request_payload = build_grading_request(
            model=self.model,
            prompt=build_grading_prompt(rubric),
            submission_image=submission_image,
            solution_image=solution_image,
            schema=build_grading_response_schema(),
            max_output_tokens=self._max_output_tokens,
        )
        started = time.perf_counter()
        raw_text = self._call_openai(request_payload)
        logger.info(
            "grade/oracle call timing",
            extra={
                "stage": "call_openai",
                "model": self.model,
                "payload_size_bytes": len(submission_image) + len(solution_image),
                "openai_ms": int((time.perf_counter() - started) * 1000),
            },
        )
        return parse_grading_response(raw_text, rubric)


class MockVisionGrader:
    """Awards full marks on every criterion without calling out."""

    model = "mock"

    def grade(self, submission_image: bytes, solution_image: bytes, rubric: Rubric) -> GradingResult:
        _ = (submission_image, solution_image)
        payload = {
            "criterionScores": [
                {"id": criterion.id, "earned": criterion.max_points, "comment": "Matches the solution."}
                for criterion in rubric.criteria
            ],
            "total": sum(criterion.max_points for criterion in rubric.criteria),
            "overall": "Mock grading: full marks awarded.",
        }
        return parse_grading_response(json.dumps(payload), rubric)


def get_vision_grader() -> VisionGrader:
    if os.getenv("OPENAI_MOCK", "").strip() == "1":
        return MockVisionGrader()
    return OpenAIVisionGrader()
