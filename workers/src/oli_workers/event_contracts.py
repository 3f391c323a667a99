"""Raw event contracts: Pydantic validation per event kind.

Every kind accepted at ingestion registers a payload model here. Validation
returns a tagged result instead of raising, so callers branch on data:

    result = validate_payload("weight", payload)
    if not result.ok:
        return reject(result.issues)

Kinds registered but not projected by the normalizer (file, lab_result) are
still validated and stored; they just never become canonical events.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .utils import is_day_key, normalize_timezone_name, parse_iso_datetime

SOURCE_TYPES = ("wearable", "mobile_app", "manual", "lab", "device", "import")
UNCERTAINTY_STATES = ("measured", "estimated", "inferred", "unknown")

_payload_schemas: dict[str, type[BaseModel]] = {}


def payload_schema(kind: str) -> Callable[[type[BaseModel]], type[BaseModel]]:
    """Register a payload model for a raw event kind."""

    def decorator(model: type[BaseModel]) -> type[BaseModel]:
        if kind in _payload_schemas:
            raise ValueError(f"Duplicate payload schema for kind={kind!r}")
        _payload_schemas[kind] = model
        return model

    return decorator


def registered_kinds() -> list[str]:
    return sorted(_payload_schemas)


def get_payload_schema(kind: str) -> type[BaseModel] | None:
    return _payload_schemas.get(kind)


# ---------------------------------------------------------------------------
# Tagged validation result
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ValidationIssue:
    path: str
    message: str
    code: str

    def as_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message, "code": self.code}


@dataclass(frozen=True)
class ValidPayload:
    kind: str
    payload: dict[str, Any]
    ok: Literal[True] = True


@dataclass(frozen=True)
class InvalidPayload:
    kind: str
    issues: tuple[ValidationIssue, ...]
    ok: Literal[False] = False


ValidationResult = ValidPayload | InvalidPayload


def issues_from_validation_error(exc: ValidationError, prefix: str) -> tuple[ValidationIssue, ...]:
    issues = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        path = f"{prefix}.{loc}" if loc else prefix
        issues.append(ValidationIssue(path=path, message=err.get("msg", "invalid"), code=err.get("type", "invalid")))
    return tuple(issues)


def validate_payload(kind: str, payload: Any) -> ValidationResult:
    """Validate payload against the schema registered for kind."""
    model = _payload_schemas.get(kind)
    if model is None:
        return InvalidPayload(
            kind=kind,
            issues=(
                ValidationIssue(
                    path="kind",
                    message=f"Unsupported kind {kind!r}. Expected one of {registered_kinds()}",
                    code="unsupported_kind",
                ),
            ),
        )
    if not isinstance(payload, dict):
        return InvalidPayload(
            kind=kind,
            issues=(ValidationIssue(path="payload", message="payload must be an object", code="dict_type"),),
        )
    try:
        parsed = model.model_validate(payload)
    except ValidationError as exc:
        return InvalidPayload(kind=kind, issues=issues_from_validation_error(exc, "payload"))
    return ValidPayload(kind=kind, payload=parsed.model_dump(mode="json", exclude_none=True))


# ---------------------------------------------------------------------------
# Shared field shapes
# ---------------------------------------------------------------------------


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    day: str
    timezone: str

    @field_validator("day")
    @classmethod
    def day_is_ymd(cls, v: str) -> str:
        if not is_day_key(v):
            raise ValueError("day must be YYYY-MM-DD")
        return v

    @field_validator("timezone")
    @classmethod
    def timezone_is_iana(cls, v: str) -> str:
        normalized = normalize_timezone_name(v)
        if normalized is None:
            raise ValueError(f"unknown timezone {v!r}")
        return normalized


class _WindowPayload(_Payload):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def is_instant(cls, v: str) -> str:
        if parse_iso_datetime(v) is None:
            raise ValueError("expected ISO-8601 datetime")
        return v

    @model_validator(mode="after")
    def end_not_before_start(self) -> "_WindowPayload":
        if parse_iso_datetime(self.end) < parse_iso_datetime(self.start):
            raise ValueError("end must not be before start")
        return self


class _PointPayload(_Payload):
    time: str

    @field_validator("time")
    @classmethod
    def is_instant(cls, v: str) -> str:
        if parse_iso_datetime(v) is None:
            raise ValueError("expected ISO-8601 datetime")
        return v


# ---------------------------------------------------------------------------
# Projected kinds
# ---------------------------------------------------------------------------


@payload_schema("sleep")
class SleepPayload(_WindowPayload):
    total_minutes: float = Field(ge=0, le=24 * 60)
    efficiency: float | None = Field(default=None, ge=0, le=1)
    latency_minutes: float | None = Field(default=None, ge=0)
    awakenings: int | None = Field(default=None, ge=0)
    is_main_sleep: bool


@payload_schema("steps")
class StepsPayload(_WindowPayload):
    steps: int = Field(ge=0)
    distance_km: float | None = Field(default=None, ge=0)
    move_minutes: float | None = Field(default=None, ge=0)


@payload_schema("workout")
class WorkoutPayload(_WindowPayload):
    sport: str
    intensity: Literal["easy", "moderate", "hard"] | None = None
    duration_minutes: float = Field(ge=0)
    training_load: float | None = Field(default=None, ge=0)

    @field_validator("sport")
    @classmethod
    def sport_not_empty(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("sport must not be empty")
        return v


class StrengthSet(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reps: int = Field(ge=0)
    load_kg: float | None = Field(default=None, ge=0)
    rpe: float | None = Field(default=None, ge=0, le=10)


class StrengthExercise(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    sets: list[StrengthSet]

    @field_validator("name")
    @classmethod
    def name_not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be empty")
        return v

    @field_validator("sets")
    @classmethod
    def sets_not_empty(cls, v: list[StrengthSet]) -> list[StrengthSet]:
        if not v:
            raise ValueError("sets must not be empty")
        return v


@payload_schema("strength_workout")
class StrengthWorkoutPayload(_WindowPayload):
    exercises: list[StrengthExercise]

    @field_validator("exercises")
    @classmethod
    def exercises_not_empty(cls, v: list[StrengthExercise]) -> list[StrengthExercise]:
        if not v:
            raise ValueError("exercises must not be empty")
        return v


@payload_schema("nutrition")
class NutritionPayload(_PointPayload):
    total_kcal: float = Field(ge=0)
    protein_g: float | None = Field(default=None, ge=0)
    carbs_g: float | None = Field(default=None, ge=0)
    fat_g: float | None = Field(default=None, ge=0)


@payload_schema("recovery")
class RecoveryPayload(_PointPayload):
    readiness_score: float | None = Field(default=None, ge=0, le=100)
    resting_heart_rate: float | None = Field(default=None, gt=0, lt=250)

    @model_validator(mode="after")
    def has_signal(self) -> "RecoveryPayload":
        if self.readiness_score is None and self.resting_heart_rate is None:
            raise ValueError("one of readiness_score or resting_heart_rate is required")
        return self


@payload_schema("weight")
class WeightPayload(_PointPayload):
    weight_kg: float = Field(gt=0, lt=500)
    body_fat_percent: float | None = Field(default=None, ge=0, le=100)


@payload_schema("hrv")
class HrvPayload(_PointPayload):
    rmssd_ms: float | None = Field(default=None, ge=0)
    sdnn_ms: float | None = Field(default=None, ge=0)
    measurement_type: Literal["nightly", "spot"] | None = None


# ---------------------------------------------------------------------------
# Stored-only kinds (not projected into canonical events)
# ---------------------------------------------------------------------------


@payload_schema("file")
class FilePayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    storage_path: str
    sha256: str
    mime_type: str
    size_bytes: int = Field(ge=0)

    @field_validator("sha256")
    @classmethod
    def sha256_hex(cls, v: str) -> str:
        v = v.strip().lower()
        if len(v) != 64 or any(c not in "0123456789abcdef" for c in v):
            raise ValueError("sha256 must be 64 hex characters")
        return v


class Biomarker(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    value: float
    unit: str


@payload_schema("lab_result")
class LabResultPayload(_PointPayload):
    biomarkers: list[Biomarker]


# ---------------------------------------------------------------------------
# Ingestion envelope
# ---------------------------------------------------------------------------


class IngestRequest(BaseModel):
    """Body accepted at the ingestion boundary (POST /ingest)."""

    model_config = ConfigDict(extra="forbid")

    provider: str
    kind: str
    observed_at: str
    source_id: str = "manual"
    source_type: Literal["wearable", "mobile_app", "manual", "lab", "device", "import"] = "manual"
    payload: dict[str, Any]
    uncertainty_state: Literal["measured", "estimated", "inferred", "unknown"] | None = None

    @field_validator("provider", "kind", "source_id")
    @classmethod
    def not_empty(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("observed_at")
    @classmethod
    def observed_at_is_instant(cls, v: str) -> str:
        if parse_iso_datetime(v) is None:
            raise ValueError("expected ISO-8601 datetime")
        return v


def validate_ingest_request(body: Any) -> tuple[IngestRequest | None, tuple[ValidationIssue, ...]]:
    """Validate envelope then payload. Returns (request, ()) or (None, issues)."""
    try:
        request = IngestRequest.model_validate(body)
    except ValidationError as exc:
        return None, issues_from_validation_error(exc, "body")

    result = validate_payload(request.kind, request.payload)
    if not result.ok:
        return None, result.issues
    return request.model_copy(update={"payload": result.payload}), ()
