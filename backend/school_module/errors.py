class FeeLedgerError(Exception):
    status_code = 400

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class NotFound(FeeLedgerError):
    status_code = 404


class InvalidAllocation(FeeLedgerError):
    status_code = 422


class AllocationExceedsPayment(FeeLedgerError):
    status_code = 422


class OverAllocation(FeeLedgerError):
    status_code = 422


class AllocationConflict(FeeLedgerError):
    """Another transaction changed a balance between read and write; retry the whole batch."""

    status_code = 409


class WaiveInvalidState(FeeLedgerError):
    status_code = 409


class AuditWriteFailed(FeeLedgerError):
    status_code = 500


class InvalidPayment(FeeLedgerError):
    status_code = 422


class DuplicateDue(FeeLedgerError):
    status_code = 409
