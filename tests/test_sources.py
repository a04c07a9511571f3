import pytest

from health_ingest.models import VendorType
from health_ingest.sources import ParserRegistry
from health_ingest.sources.apple_health import AppleHealthParser
from health_ingest.sources.eight_sleep import EightSleepParser
from health_ingest.sources.generic import GenericTransformer
from health_ingest.sources.orangetheory import OrangetheoryParser


def test_builtin_parsers_are_registered():
    assert isinstance(ParserRegistry.get(VendorType.EIGHT_SLEEP), EightSleepParser)
    assert isinstance(ParserRegistry.get("orangetheory"), OrangetheoryParser)
    assert isinstance(ParserRegistry.get(VendorType.APPLE_HEALTH), AppleHealthParser)
    generic = ParserRegistry.get(VendorType.GENERIC_CSV)
    assert isinstance(generic, GenericTransformer)
    assert generic.requires_profile


def test_duplicate_registration_is_rejected():
    with pytest.raises(ValueError):
        ParserRegistry.register(EightSleepParser())


def test_lookup_of_missing_vendor():
    assert ParserRegistry.get(VendorType.GARMIN) is None
    assert ParserRegistry.get("no-such-vendor") is None
    with pytest.raises(KeyError):
        ParserRegistry.get_or_raise(VendorType.FITBIT)


def test_iter_parse_steps_and_parse_agree():
    rows = [{"Date": "2024-01-15", "Splat Points": "12"}, {"Date": "2024-01-16", "Splat Points": "9"}]
    steps = OrangetheoryParser().iter_parse(rows, "src", "u1")
    assert next(steps) == (1, 2)
    assert next(steps) == (2, 2)
    with pytest.raises(StopIteration) as stop:
        next(steps)
    assert len(stop.value.value.workout_sessions) == 2

    seen = []
    result = OrangetheoryParser().parse(rows, "src", "u1", on_progress=lambda done, total: seen.append(done))
    assert seen == [1, 2]
    assert len(result.workout_sessions) == 2
