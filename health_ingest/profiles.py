"""Importer profiles: declarative file signatures and field mappings.

Profiles are stored as JSON with camelCase keys; the models accept either
spelling. Transforms are a closed, tagged set of variants selected by
their ``type`` key.
"""
from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .models import VendorType


class _ProfileModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --------------------------- Transforms ---------------------------

class DirectTransform(_ProfileModel):
    type: Literal["direct"] = "direct"


class TimestampTransform(_ProfileModel):
    type: Literal["timestamp"] = "timestamp"
    format: str = "iso8601"  # unix_seconds | unix_millis | iso8601


class DurationTransform(_ProfileModel):
    type: Literal["duration"] = "duration"
    from_unit: Literal["seconds", "minutes", "hours"] = "seconds"
    to_unit: Literal["seconds", "minutes", "hours"] = "seconds"


class MultiplyTransform(_ProfileModel):
    type: Literal["multiply"] = "multiply"
    factor: float


class DivideTransform(_ProfileModel):
    type: Literal["divide"] = "divide"
    divisor: float


class MapTransform(_ProfileModel):
    type: Literal["map"] = "map"
    mapping: dict[str, Any]


class RegexTransform(_ProfileModel):
    type: Literal["regex"] = "regex"
    pattern: str
    group: int = 1


class JsonPathTransform(_ProfileModel):
    type: Literal["jsonpath"] = "jsonpath"
    path: str


class ComputeTransform(_ProfileModel):
    type: Literal["compute"] = "compute"
    formula: str


class CoalesceTransform(_ProfileModel):
    type: Literal["coalesce"] = "coalesce"
    sources: list[str]


FieldTransform = Annotated[
    Union[
        DirectTransform,
        TimestampTransform,
        DurationTransform,
        MultiplyTransform,
        DivideTransform,
        MapTransform,
        RegexTransform,
        JsonPathTransform,
        ComputeTransform,
        CoalesceTransform,
    ],
    Field(discriminator="type"),
]


# --------------------------- Profile ---------------------------

class FieldMapping(_ProfileModel):
    target: str
    source: str
    transform: Optional[FieldTransform] = None
    required: bool = False
    default_value: Any = None


class TableMapping(_ProfileModel):
    target_table: Literal["sleep_sessions", "workout_sessions", "daily_metrics", "time_series", "annotations"]
    source_type: Literal["json", "csv"] = "json"
    source_path: Optional[str] = None
    field_mappings: list[FieldMapping] = Field(default_factory=list)
    filter: Optional[str] = None


class FilePattern(_ProfileModel):
    file_type: Literal["json", "csv", "xml", "zip"]
    json_signature: Optional[str] = None
    csv_required_headers: Optional[list[str]] = None
    file_name_pattern: Optional[str] = None


class ImporterProfile(_ProfileModel):
    id: str
    vendor: VendorType
    name: str
    version: str = "1.0.0"
    description: str = ""
    file_patterns: list[FilePattern] = Field(default_factory=list)
    mappings: list[TableMapping] = Field(default_factory=list)
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))
    is_built_in: bool = False


def load_profile(path: str | Path) -> ImporterProfile:
    """Read a profile from a JSON file. Raises ``pydantic.ValidationError`` on bad shape."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return ImporterProfile.model_validate(raw)


# --------------------------- Built-ins ---------------------------

EIGHT_SLEEP_PROFILE = ImporterProfile(
    id="eight_sleep_v1",
    vendor=VendorType.EIGHT_SLEEP,
    name="Eight Sleep Export",
    description="Sleep sessions from the Eight Sleep JSON export",
    is_built_in=True,
    file_patterns=[
        FilePattern(file_type="json", json_signature="$.sessions[*].stages[*].stage"),
        FilePattern(file_type="json", json_signature="$[*].stages[*].stage"),
    ],
    mappings=[
        TableMapping(
            target_table="sleep_sessions",
            source_type="json",
            source_path="$.sessions[*]",
            field_mappings=[
                FieldMapping(target="startedAt", source="ts", transform=TimestampTransform(format="unix_seconds")),
                FieldMapping(
                    target="durationSeconds",
                    source="stages",
                    transform=ComputeTransform(formula="sum(stages[*].duration)"),
                ),
            ],
        )
    ],
)

ORANGETHEORY_PROFILE = ImporterProfile(
    id="orangetheory_v1",
    vendor=VendorType.ORANGETHEORY,
    name="Orangetheory Fitness Export",
    description="Workouts from an Orangetheory CSV export",
    is_built_in=True,
    file_patterns=[
        FilePattern(file_type="csv", csv_required_headers=["splat"]),
        FilePattern(file_type="csv", file_name_pattern=r"(?i)orangetheory|otf"),
    ],
    mappings=[
        TableMapping(
            target_table="workout_sessions",
            source_type="csv",
            field_mappings=[
                FieldMapping(target="date", source="date"),
                FieldMapping(target="workoutSubtype", source="class_type"),
                FieldMapping(target="calories", source="calories"),
                FieldMapping(target="splatPoints", source="splat_points"),
                FieldMapping(target="avgHeartRate", source="avg_hr"),
                FieldMapping(target="maxHeartRate", source="max_hr"),
            ],
        )
    ],
)

APPLE_HEALTH_PROFILE = ImporterProfile(
    id="apple_health_builtin",
    vendor=VendorType.APPLE_HEALTH,
    name="Apple Health Export",
    description="Apple Health export.xml",
    version="1.0",
    is_built_in=True,
    file_patterns=[FilePattern(file_type="xml", file_name_pattern=r"export\.xml$")],
)

BUILTIN_PROFILES: dict[str, ImporterProfile] = {
    p.vendor.value: p for p in (EIGHT_SLEEP_PROFILE, ORANGETHEORY_PROFILE, APPLE_HEALTH_PROFILE)
}
