"""Platform sources and registry."""

from .base import Source
from .json_file import JsonFileSource
from .registry import (
    SourceRegistrationError,
    create_source,
    register_source,
    registered_source_types,
)
from .x_api import XApiError, XApiSource, normalize_tweet

__all__ = [
    "JsonFileSource",
    "Source",
    "SourceRegistrationError",
    "XApiError",
    "XApiSource",
    "create_source",
    "normalize_tweet",
    "register_source",
    "registered_source_types",
]
