from __future__ import annotations


class RentalEngineError(RuntimeError):
    kind = "rental_engine_error"


class NotFoundError(RentalEngineError):
    """The entity is absent or belongs to another tenant/business unit.

    Both cases produce the same message so callers cannot discover
    records outside their scope.
    """

    kind = "not_found"

    def __init__(self, entity: str):
        super().__init__(f"{entity} not found")
        self.entity = entity


class InvalidStateError(RentalEngineError):
    kind = "invalid_state"

    def __init__(self, message: str, current_state: str | None = None):
        super().__init__(message)
        self.current_state = current_state


class InvalidInputError(RentalEngineError, ValueError):
    kind = "invalid_input"


class ConflictError(RentalEngineError):
    kind = "conflict"


class FinalizationError(InvalidStateError):
    kind = "finalization_failed"

    def __init__(
        self,
        contract_id: str,
        failed_asset_id: str,
        rolled_back_asset_ids: list[str],
        cause: Exception,
    ):
        super().__init__(
            f"Finalization of contract {contract_id} failed on asset {failed_asset_id}: {cause}. "
            f"No changes were kept; {len(rolled_back_asset_ids)} returned asset(s) were rolled back."
        )
        self.contract_id = contract_id
        self.failed_asset_id = failed_asset_id
        self.rolled_back_asset_ids = list(rolled_back_asset_ids)
        self.cause = cause
