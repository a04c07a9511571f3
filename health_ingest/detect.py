"""Content sniffing: which file type and which vendor is this upload?

Detection looks at the bytes first and at the file name last; a name-only
hint never yields more than ``low`` confidence.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog

from .config import get_settings
from .models import Confidence, FileType, ImportFile, VendorType
from .profiles import FilePattern, ImporterProfile
from .sources.apple_health import is_pre_parsed
from .sources.eight_sleep import extract_raw_sessions, is_dashboard_format

logger = structlog.get_logger()

SNIFF_BYTES = 64 * 1024

APPLE_XML_TOKENS = ("<!DOCTYPE HealthData", "<HealthData", "HKQuantityTypeIdentifier")
ZIP_MAGIC = b"PK"

_PATH_SPLIT = re.compile(r"\.|\[(\d+|\*)\]")


@dataclass
class DetectionResult:
    file_type: FileType
    suggested_vendor: VendorType
    confidence: Confidence
    manifest: dict[str, Any] = field(default_factory=dict)
    matched_profile: Optional[ImporterProfile] = None


# --------------------------- JSON ---------------------------

def is_eight_sleep_export(data: Any) -> bool:
    sessions = extract_raw_sessions(data)
    if not sessions:
        return False
    if not isinstance(sessions[0], dict) or "ts" not in sessions[0]:
        return False
    return all(isinstance(s, dict) and isinstance(s.get("stages"), list) for s in sessions)


def is_oura_export(data: Any) -> bool:
    return isinstance(data, dict) and (isinstance(data.get("sleep"), list) or "daily_readiness" in data)


def detect_json_vendor(data: Any) -> DetectionResult:
    result = DetectionResult(FileType.JSON, VendorType.UNKNOWN, Confidence.LOW)

    if is_eight_sleep_export(data):
        sessions = extract_raw_sessions(data)
        result.suggested_vendor = VendorType.EIGHT_SLEEP
        result.confidence = Confidence.HIGH
        result.manifest = {"entry_count": len(sessions), "sample_fields": list(sessions[0].keys())}
        return result

    if is_oura_export(data):
        result.suggested_vendor = VendorType.OURA
        result.confidence = Confidence.HIGH
        return result

    if is_dashboard_format(data) and isinstance(data.get("sessions"), list):
        # Our own dashboard export is derived from Eight Sleep data.
        result.suggested_vendor = VendorType.EIGHT_SLEEP
        result.confidence = Confidence.HIGH
        result.manifest = {"entry_count": len(data["sessions"])}
        return result

    if is_pre_parsed(data):
        result.suggested_vendor = VendorType.APPLE_HEALTH
        result.confidence = Confidence.HIGH
        result.manifest = {
            "entry_count": len(data["sleepSessions"]) + len(data["workoutSessions"]),
            "sample_fields": ["sleepSessions", "workoutSessions", "dailyMetrics"],
        }
        return result

    if isinstance(data, list):
        first = data[0] if data else None
        result.suggested_vendor = VendorType.GENERIC_JSON
        result.manifest = {
            "entry_count": len(data),
            "sample_fields": list(first.keys()) if isinstance(first, dict) else [],
        }
    return result


# --------------------------- CSV ---------------------------

def looks_like_csv(text: str) -> bool:
    lines = text.split("\n")[:5]
    if len(lines) < 2:
        return False
    first = lines[0]
    return first.count(",") >= 2 or first.count("\t") >= 2


def split_header(line: str) -> list[str]:
    sep = "\t" if line.count("\t") > line.count(",") else ","
    return [h.strip().strip('"') for h in line.strip("\r").split(sep)]


def detect_csv_vendor(text: str, file_name: str) -> DetectionResult:
    lines = [line for line in text.split("\n") if line.strip()]
    header = lines[0].lower() if lines else ""
    name = file_name.lower()
    result = DetectionResult(
        FileType.CSV,
        VendorType.GENERIC_CSV,
        Confidence.LOW,
        manifest={"row_count": max(len(lines) - 1, 0), "sample_fields": split_header(lines[0]) if lines else []},
    )

    if "splat" in header or "orangetheory" in header or "class type" in header:
        result.suggested_vendor = VendorType.ORANGETHEORY
        result.confidence = Confidence.MEDIUM
    elif "orangetheory" in name or "otf" in name:
        result.suggested_vendor = VendorType.ORANGETHEORY

    if "readiness" in header and "hrv" in header:
        result.suggested_vendor = VendorType.OURA
        result.confidence = Confidence.MEDIUM

    return result


# --------------------------- Profiles ---------------------------

def json_path_values(data: Any, path: str) -> list:
    """All values reached by *path*; ``[*]`` fans out over every element."""
    current = [data]
    for segment in [s for s in _PATH_SPLIT.split(re.sub(r"^\$\.?", "", path)) if s]:
        nxt: list = []
        for node in current:
            if segment == "*":
                if isinstance(node, list):
                    nxt.extend(node)
            elif segment.isdigit():
                if isinstance(node, list) and int(segment) < len(node):
                    nxt.append(node[int(segment)])
            elif isinstance(node, dict) and segment in node:
                nxt.append(node[segment])
        current = nxt
    return [v for v in current if v is not None]


def _pattern_matches(pattern: FilePattern, file_type: FileType, file_name: str, data: Any, header: list[str]) -> Optional[bool]:
    """None when the pattern does not apply, else whether the match was structural."""
    if pattern.file_type != file_type.value:
        return None
    structural = False
    if pattern.json_signature:
        if data is None or not json_path_values(data, pattern.json_signature):
            return None
        structural = True
    if pattern.csv_required_headers:
        lowered = [h.lower() for h in header]
        if not all(any(req.lower() in h for h in lowered) for req in pattern.csv_required_headers):
            return None
        structural = True
    if pattern.file_name_pattern:
        if not re.search(pattern.file_name_pattern, file_name):
            return None
    elif not structural:
        return None
    return structural


def match_profiles(
    result: DetectionResult,
    profiles: Iterable[ImporterProfile],
    file_name: str,
    data: Any = None,
) -> DetectionResult:
    header = result.manifest.get("sample_fields") or []
    for profile in profiles:
        for pattern in profile.file_patterns:
            try:
                structural = _pattern_matches(pattern, result.file_type, file_name, data, header)
            except re.error as e:
                logger.warning("profile_pattern_invalid", profile=profile.id, error=str(e))
                continue
            if structural is None:
                continue
            result.suggested_vendor = profile.vendor
            result.confidence = Confidence.MEDIUM if structural else Confidence.LOW
            result.matched_profile = profile
            logger.info("profile_matched", profile=profile.id, structural=structural)
            return result
    return result


# --------------------------- Entry point ---------------------------

def _load_text(file: ImportFile) -> tuple[bytes, str]:
    head = file.head(SNIFF_BYTES)
    if file.content is not None or file.size <= SNIFF_BYTES:
        return head, file.read_text()
    # Large on-disk file: only JSON needs the whole payload to classify.
    if head.lstrip()[:1] in (b"{", b"["):
        if file.size <= get_settings().HARD_LIMIT_BYTES:
            return head, file.read_text()
    return head, head.decode("utf-8", errors="ignore")


def detect_file_type(
    file: ImportFile,
    profiles: Optional[Iterable[ImporterProfile]] = None,
) -> DetectionResult:
    """Classify *file*; pure apart from reading it."""
    head, text = _load_text(file)
    trimmed = text.lstrip("\ufeff").strip()
    data: Any = None
    result: Optional[DetectionResult] = None

    if trimmed[:1] in ("{", "["):
        try:
            data = json.loads(trimmed)
        except ValueError:
            data = None
        else:
            result = detect_json_vendor(data)

    if result is None and looks_like_csv(trimmed):
        result = detect_csv_vendor(trimmed, file.name)

    if result is None and trimmed.startswith("<"):
        if any(token in trimmed for token in APPLE_XML_TOKENS):
            result = DetectionResult(
                FileType.XML,
                VendorType.APPLE_HEALTH,
                Confidence.HIGH,
                manifest={"sample_fields": ["HealthData", "Record", "Workout"]},
            )
        else:
            vendor = VendorType.APPLE_HEALTH if "apple" in file.name.lower() else VendorType.UNKNOWN
            result = DetectionResult(FileType.XML, vendor, Confidence.LOW)

    if result is None and head[:2] == ZIP_MAGIC:
        result = DetectionResult(FileType.ZIP, VendorType.UNKNOWN, Confidence.LOW)

    if result is None:
        result = DetectionResult(FileType.UNKNOWN, VendorType.UNKNOWN, Confidence.LOW)

    if profiles and result.suggested_vendor in (VendorType.GENERIC_CSV, VendorType.GENERIC_JSON, VendorType.UNKNOWN):
        result = match_profiles(result, profiles, file.name, data)

    logger.info(
        "file_detected",
        file=file.name,
        file_type=result.file_type.value,
        vendor=result.suggested_vendor.value,
        confidence=result.confidence.value,
    )
    return result
