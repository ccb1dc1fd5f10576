# src/scdelegate/errors.py
"""
Exception taxonomy.

All errors are fatal for the whole request. Subclasses also derive from
ValueError / RuntimeError.
"""


class DElegateError(Exception):
    """Base class for all scdelegate errors."""


class ConfigurationError(DElegateError, ValueError):
    """Bad argument: unresolved column, unknown method, invalid comparison, misaligned covariates."""


class DataError(DElegateError, ValueError):
    """Malformed count data or metadata that does not line up with the cells."""


class EngineError(DElegateError, RuntimeError):
    """The statistical engine could not fit or test a comparison."""
