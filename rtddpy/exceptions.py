"""
Exceptions raised by the relocation engine.

Per-observation errors (ModelLookupError, NoDataError) are caught where the
observation is attempted. Per-event errors (InsufficientNeighbors,
InsufficientObservations, SolverFailure) are collected by the relocator into
the relocation report.
"""


class HypoDDException(Exception):
    pass


class ConfigError(HypoDDException):
    pass


class CatalogError(HypoDDException):
    pass


class InsufficientNeighbors(HypoDDException):
    pass


class InsufficientObservations(HypoDDException):
    pass


class ModelLookupError(HypoDDException):
    pass


class NoDataError(HypoDDException):
    pass


class GapError(NoDataError):
    pass


class SolverFailure(HypoDDException):
    pass


class SolverDivergence(SolverFailure):
    pass
