"""
Vendor parser interface and registry.

Every vendor format is handled by one :class:`VendorParser` registered in
:class:`ParserRegistry` under its vendor identifier.  Adding a vendor
means writing a parser and registering it in ``sources/__init__.py``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Generator, Optional, Protocol

from ..models import TransformResult, VendorType
from ..profiles import ImporterProfile

RowProgress = Callable[[int, int], None]

# Yields (records_done, records_total) after each row; returns the result.
ParseSteps = Generator[tuple[int, int], None, TransformResult]


class CancelFlag(Protocol):
    def is_set(self) -> bool: ...


class ImportCancelled(Exception):
    """Raised by a parser when the caller's cancel flag is set between rows or chunks."""


def check_cancel(cancel: Optional[CancelFlag]) -> None:
    if cancel is not None and cancel.is_set():
        raise ImportCancelled()


def run_steps(steps: Generator[tuple[int, int], None, Any], on_progress: Optional[RowProgress] = None) -> Any:
    """Drive *steps* to completion, forwarding every progress step."""
    while True:
        try:
            done, total = next(steps)
        except StopIteration as stop:
            return stop.value
        if on_progress:
            on_progress(done, total)


class VendorParser(ABC):
    """A parser turning one decoded payload into canonical records.

    Per-row problems become ``parse_error`` warnings; only a payload that
    cannot be interpreted at all may raise.  ``iter_parse`` yields after
    every row so an async caller can hand control back to its event loop.
    """

    vendor: VendorType

    # Parsers that need an ImporterProfile to do anything.
    requires_profile: bool = False

    @abstractmethod
    def iter_parse(
        self,
        data: Any,
        source_id: str,
        user_id: str,
        *,
        profile: Optional[ImporterProfile] = None,
        cancel: Optional[CancelFlag] = None,
    ) -> ParseSteps:
        ...

    def parse(
        self,
        data: Any,
        source_id: str,
        user_id: str,
        *,
        profile: Optional[ImporterProfile] = None,
        on_progress: Optional[RowProgress] = None,
        cancel: Optional[CancelFlag] = None,
    ) -> TransformResult:
        steps = self.iter_parse(data, source_id, user_id, profile=profile, cancel=cancel)
        return run_steps(steps, on_progress)


class ParserRegistry:
    """Process-wide registry of vendor parsers."""

    _parsers: dict[str, VendorParser] = {}

    @classmethod
    def register(cls, parser: VendorParser) -> None:
        """Register *parser* under its vendor id.

        Raises :class:`ValueError` if the vendor is already taken.
        """
        key = _key(parser.vendor)
        if key in cls._parsers:
            raise ValueError(f"Parser for '{key}' already registered")
        cls._parsers[key] = parser

    @classmethod
    def get(cls, vendor: VendorType | str) -> Optional[VendorParser]:
        return cls._parsers.get(_key(vendor))

    @classmethod
    def get_or_raise(cls, vendor: VendorType | str) -> VendorParser:
        """Raises :class:`KeyError` if no parser is registered for *vendor*."""
        key = _key(vendor)
        parser = cls._parsers.get(key)
        if parser is None:
            raise KeyError(f"No parser for '{key}'. Available: {sorted(cls._parsers)}")
        return parser

    @classmethod
    def unregister(cls, vendor: VendorType | str) -> None:
        cls._parsers.pop(_key(vendor), None)


def _key(vendor: VendorType | str) -> str:
    return vendor.value if isinstance(vendor, VendorType) else str(vendor)
