"""Resource model: kinds, descriptors and the configuration parser."""
from __future__ import annotations

from .kinds import SCHEMAS, KindSchema, ResourceKind, schema_for
from .model import (
    ConnectionSpec,
    ProvisionerSpec,
    Reference,
    ResourceDescriptor,
    address_of,
    iter_references,
    load_document,
    map_references,
    parse,
    parse_reference,
    symbolize,
)

__all__ = [
    "ConnectionSpec",
    "KindSchema",
    "ProvisionerSpec",
    "Reference",
    "ResourceDescriptor",
    "ResourceKind",
    "SCHEMAS",
    "address_of",
    "iter_references",
    "load_document",
    "map_references",
    "parse",
    "parse_reference",
    "schema_for",
    "symbolize",
]
