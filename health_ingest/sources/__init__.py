"""
Vendor parsers.

Importing this package registers every built-in parser with
:class:`ParserRegistry`.  New vendors are added by writing a
:class:`VendorParser` and adding a registration line below.
"""
from ..models import VendorType
from .apple_health import AppleHealthParser
from .base import ImportCancelled, ParserRegistry, VendorParser
from .eight_sleep import EightSleepParser
from .generic import GenericTransformer
from .orangetheory import OrangetheoryParser

ParserRegistry.register(EightSleepParser())
ParserRegistry.register(OrangetheoryParser())
ParserRegistry.register(AppleHealthParser())
ParserRegistry.register(GenericTransformer(VendorType.GENERIC_JSON))
ParserRegistry.register(GenericTransformer(VendorType.GENERIC_CSV))

__all__ = ["ImportCancelled", "ParserRegistry", "VendorParser"]
