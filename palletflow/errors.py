from __future__ import annotations


class WarehouseError(ValueError):
    """Base for every error the fulfillment engine reports to its caller."""

    code = 'warehouse_error'


class ValidationError(WarehouseError):
    code = 'validation_error'

    def __init__(self, message: str, *, problems: list[dict] | None = None) -> None:
        super().__init__(message)
        self.problems = problems or []


class NotFoundError(WarehouseError):
    code = 'not_found'


class InvalidStateError(WarehouseError):
    code = 'invalid_state'


class NothingConfirmedError(WarehouseError):
    code = 'nothing_confirmed'


class NoEligibleDemandError(WarehouseError):
    code = 'no_eligible_demand'


class NoOpenManifestError(WarehouseError):
    code = 'no_open_manifest'


class MissingDocumentError(WarehouseError):
    code = 'missing_document'


class ConcurrencyConflictError(WarehouseError):
    code = 'concurrency_conflict'


class StoreUnavailableError(WarehouseError):
    code = 'store_unavailable'
